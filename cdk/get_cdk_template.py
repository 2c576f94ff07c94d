import json
import logging
import os
import shutil
import subprocess
from typing import Tuple, Union

from cdk_config import APP_NAME, ENVIRONMENT
from cdk_functions import resource_name

logger = logging.getLogger(__name__)

# Synth the CDK app to a local template file, e.g. for review before a deployment


def synthesize_cdk_stack_to_json(
    stack_name: str, environment: str = ENVIRONMENT
) -> Tuple[Union[dict, str], str]:
    cdk_executable = shutil.which("cdk")
    if not cdk_executable:
        raise FileNotFoundError(
            "The 'cdk' command was not found in your system's PATH. "
            "Please ensure AWS CDK CLI is installed and accessible."
        )

    # cdk.json lives one level above this folder
    current_script_dir = os.path.dirname(os.path.abspath(__file__))
    cdk_project_root = os.path.dirname(current_script_dir)

    command = [
        cdk_executable,
        "synth",
        stack_name,
        "--json",
        "--context",
        f"environment={environment}",
    ]
    logger.info(f"Running command: {' '.join(command)} from directory: {cdk_project_root}")

    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            cwd=cdk_project_root,
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"Error synthesizing stack '{stack_name}' (return code {e.returncode})")
        logger.error(f"STDOUT:\n{e.stdout}")
        logger.error(f"STDERR:\n{e.stderr}")
        raise

    cloudformation_template_json_str = result.stdout

    if not cloudformation_template_json_str.strip().startswith("{"):
        logger.warning("Output from 'cdk synth' is not valid JSON. Returning raw text.")
        return cloudformation_template_json_str, "str"

    return json.loads(cloudformation_template_json_str), "json"


def save_template(template: Union[dict, str], template_type: str, stack_name: str) -> str:
    if template_type == "json":
        output_filename = f"{stack_name}.template.json"
        with open(os.path.join(os.getcwd(), output_filename), "w") as f:
            json.dump(template, f, indent=2)
    else:
        output_filename = f"{stack_name}.template.txt"
        with open(os.path.join(os.getcwd(), output_filename), "w") as f:
            f.write(template)
    return os.path.join(os.getcwd(), output_filename)


if __name__ == "__main__":
    stack_to_synthesize = resource_name(APP_NAME, ENVIRONMENT, "shared-infra")

    print(f"Synthesizing stack '{stack_to_synthesize}'...")
    template, template_type = synthesize_cdk_stack_to_json(stack_to_synthesize)
    output_path = save_template(template, template_type, stack_to_synthesize)
    print(f"CloudFormation template saved to: {output_path}")
