import logging
import os

from aws_cdk import App, Environment
from cdk_config import (
    APP_NAME,
    AWS_ACCOUNT_ID,
    AWS_REGION,
    CONTEXT_FILE,
    DOMAIN_NAME,
    ENVIRONMENT,
    RUN_RESOURCE_CHECK,
)
from cdk_functions import load_context_from_file, resource_name
from cdk_stack import SharedInfrastructureStack
from check_resources import check_and_set_context

logger = logging.getLogger(__name__)

# Initialize the CDK app
app = App()

# Get environment from context or fall back to the configured default
environment = app.node.try_get_context("environment") or ENVIRONMENT

# Optionally query the account first so that retained resources are imported rather than recreated
if RUN_RESOURCE_CHECK:
    logger.info("Running pre-check script to generate application context...")
    try:
        check_and_set_context(
            app_name=APP_NAME,
            environment=environment,
            domain_name=DOMAIN_NAME,
            context_file=CONTEXT_FILE,
        )
    except Exception as e:
        raise RuntimeError(f"Failed to generate context via check_and_set_context(): {e}")

if os.path.exists(CONTEXT_FILE):
    load_context_from_file(app, CONTEXT_FILE)

SharedInfrastructureStack(
    app,
    resource_name(APP_NAME, environment, "shared-infra"),
    app_name=APP_NAME,
    environment=environment,
    domain_name=DOMAIN_NAME,
    env=Environment(account=AWS_ACCOUNT_ID or None, region=AWS_REGION),
    description=f"Shared infrastructure for {APP_NAME} {environment} environment",
)

# Synthesize the CloudFormation template
app.synth()
