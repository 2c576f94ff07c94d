import logging
import os
from typing import List

from dotenv import load_dotenv

# Set or retrieve configuration variables for the shared infrastructure deployment


def get_or_create_env_var(var_name: str, default_value: str, print_val: bool = False):
    """
    Get an environmental variable, and set it to a default value if it doesn't exist
    """
    # Get the environment variable if it exists
    value = os.environ.get(var_name)

    # If it doesn't exist, set the environment variable to the default value
    if value is None:
        os.environ[var_name] = default_value
        value = default_value

    if print_val is True:
        print(f"The value of {var_name} is {value}")

    return value


def convert_string_to_boolean(value: str) -> bool:
    """Convert string to boolean, handling various formats."""
    if isinstance(value, bool):
        return value
    elif value in ["True", "1", "true", "TRUE"]:
        return True
    elif value in ["False", "0", "false", "FALSE"]:
        return False
    else:
        raise ValueError(f"Invalid boolean value: {value}")


def get_env_list(value: str) -> List[str]:
    """Parses '["a", "b"]' or 'a, b' into a list of strings."""
    if isinstance(value, list):
        return value
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    value = value.replace('"', "").replace("'", "")
    # Split by comma and filter out any empty strings that might result from extra commas
    return [s.strip() for s in value.split(",") if s.strip()]


###
# LOAD CONFIG FROM ENV FILE
###

# If you have a cdk_config.env file in the config folder, you can load in deployment variables this way
CDK_CONFIG_PATH = get_or_create_env_var("CDK_CONFIG_PATH", "config/cdk_config.env")

if CDK_CONFIG_PATH:
    if os.path.exists(CDK_CONFIG_PATH):
        print(f"Loading CDK variables from config file {CDK_CONFIG_PATH}")
        load_dotenv(CDK_CONFIG_PATH)

###
# LOGGING OPTIONS
###

LOGGING = convert_string_to_boolean(get_or_create_env_var("LOGGING", "True"))

if LOGGING:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
    )

###
# AWS OPTIONS
###
AWS_ACCOUNT_ID = get_or_create_env_var(
    "AWS_ACCOUNT_ID", os.environ.get("CDK_DEFAULT_ACCOUNT", "")
)
AWS_REGION = get_or_create_env_var(
    "AWS_REGION", os.environ.get("CDK_DEFAULT_REGION") or "us-east-1"
)

###
# CDK OPTIONS
###
APP_NAME = get_or_create_env_var("APP_NAME", "word-collect")
ENVIRONMENT = get_or_create_env_var("ENVIRONMENT", "dev")
CONTEXT_FILE = get_or_create_env_var("CONTEXT_FILE", "cdk.context.json")
RUN_RESOURCE_CHECK = convert_string_to_boolean(
    get_or_create_env_var("RUN_RESOURCE_CHECK", "False")
)

### DNS
DOMAIN_NAME = get_or_create_env_var("DOMAIN_NAME", "wordcollect.haydenturek.com")

### VPC
VPC_MAX_AZS = int(get_or_create_env_var("VPC_MAX_AZS", "2"))
VPC_NAT_GATEWAYS = int(get_or_create_env_var("VPC_NAT_GATEWAYS", "1"))
VPC_SUBNET_CIDR_MASK = int(get_or_create_env_var("VPC_SUBNET_CIDR_MASK", "24"))

### ECS
CONTAINER_PORT = int(get_or_create_env_var("CONTAINER_PORT", "80"))
CONTAINER_INSIGHTS = convert_string_to_boolean(
    get_or_create_env_var("CONTAINER_INSIGHTS", "True")
)

### CloudWatch
LOG_RETENTION_DAYS = int(get_or_create_env_var("LOG_RETENTION_DAYS", "30"))

### S3
NONCURRENT_VERSION_EXPIRATION_DAYS = int(
    get_or_create_env_var("NONCURRENT_VERSION_EXPIRATION_DAYS", "30")
)

### GITHUB OIDC
GITHUB_ORG = get_or_create_env_var("GITHUB_ORG", APP_NAME)
GITHUB_REPO_FILTER = get_or_create_env_var("GITHUB_REPO_FILTER", "*")
GITHUB_OIDC_PROVIDER_HOST = get_or_create_env_var(
    "GITHUB_OIDC_PROVIDER_HOST", "token.actions.githubusercontent.com"
)
CREATE_GITHUB_OIDC_PROVIDER = convert_string_to_boolean(
    get_or_create_env_var("CREATE_GITHUB_OIDC_PROVIDER", "False")
)

# IAM
DEPLOY_ROLE_ACTIONS = get_env_list(
    get_or_create_env_var(
        "DEPLOY_ROLE_ACTIONS",
        '["cloudformation:*", "ec2:*", "ecs:*", "elasticloadbalancing:*", "iam:*", "logs:*", "s3:*", "secretsmanager:*", "ssm:*"]',
    )
)
POLICY_FILE_LOCATIONS = get_env_list(
    get_or_create_env_var("POLICY_FILE_LOCATIONS", "")
)  # e.g. '["config/extra_deploy_permissions.json"]'

###
# OUTPUT FILES
###
SERVICE_CONFIG_FOLDER = get_or_create_env_var("SERVICE_CONFIG_FOLDER", "config")
