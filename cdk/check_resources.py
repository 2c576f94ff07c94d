import json
import logging
import os
from typing import Any, Dict

import boto3
import pandas as pd
from cdk_config import (
    APP_NAME,
    CONTEXT_FILE,
    DOMAIN_NAME,
    ENVIRONMENT,
    GITHUB_OIDC_PROVIDER_HOST,
)
from cdk_functions import (
    alb_name,
    check_alb_exists,
    check_event_bus_exists,
    check_for_existing_role,
    check_hosted_zone_exists,
    check_log_group_exists,
    check_oidc_provider_exists,
    check_s3_bucket_exists,
    check_stack_exists,
    get_stack_resources,
    github_oidc_provider_arn,
    resource_name,
)

logger = logging.getLogger(__name__)

# Check for the existence of elements in your AWS environment to see if it's necessary to create new versions of the same.
# Only retained resources and the account-wide OIDC provider are imported by the stack; the other
# named resources are reported, because a fresh stack would fail on the name clash.

# Resource type of the provider created by iam.OpenIdConnectProvider
OIDC_PROVIDER_RESOURCE_TYPE = "Custom::AWSCDKOpenIdConnectProvider"

NAMED_ROLE_SUFFIXES = [
    "task-execution-role",
    "service-role",
    "shared-data-role",
    "github-actions-role",
]


def check_and_set_context(
    app_name: str = APP_NAME,
    environment: str = ENVIRONMENT,
    domain_name: str = DOMAIN_NAME,
    context_file: str = CONTEXT_FILE,
) -> Dict[str, Any]:
    context_data: Dict[str, Any] = {}
    findings = []

    stack_name = resource_name(app_name, environment, "shared-infra")
    stack_exists = check_stack_exists(stack_name)
    findings.append(("stack", stack_name, stack_exists))

    # --- Retained resources that survive stack deletion ---
    bucket_name = resource_name(app_name, environment, "shared-data")
    bucket_exists, _ = check_s3_bucket_exists(bucket_name)
    findings.append(("s3 bucket", bucket_name, bucket_exists))

    log_group_name = f"/{app_name}/{environment}/shared-logs"
    log_group_exists, _ = check_log_group_exists(log_group_name)
    findings.append(("log group", log_group_name, log_group_exists))

    # A stack that already owns these resources must keep managing them, not import them
    context_data[f"exists:{bucket_name}"] = bucket_exists and not stack_exists
    context_data[f"exists:{log_group_name}"] = log_group_exists and not stack_exists

    # --- GitHub OIDC provider (one per account) ---
    account_id = boto3.client("sts").get_caller_identity()["Account"]
    provider_arn = github_oidc_provider_arn(account_id, GITHUB_OIDC_PROVIDER_HOST)
    provider_exists, _ = check_oidc_provider_exists(provider_arn)
    findings.append(("oidc provider", provider_arn, provider_exists))
    # A provider created by this stack is found by the lookup too; importing it would delete it
    provider_owned_by_stack = stack_exists and bool(
        get_stack_resources(stack_name, OIDC_PROVIDER_RESOURCE_TYPE)
    )
    context_data[f"exists:{GITHUB_OIDC_PROVIDER_HOST}"] = (
        provider_exists and not provider_owned_by_stack
    )

    # --- Name clashes that would block a first deployment ---
    for suffix in NAMED_ROLE_SUFFIXES:
        role_name = resource_name(app_name, environment, suffix)
        role_exists, _ = check_for_existing_role(role_name)
        findings.append(("iam role", role_name, role_exists))

    event_bus_name = resource_name(app_name, environment, "event-bus")
    event_bus_exists, _ = check_event_bus_exists(event_bus_name)
    findings.append(("event bus", event_bus_name, event_bus_exists))

    load_balancer_name = alb_name(app_name, environment)
    alb_exists, _ = check_alb_exists(load_balancer_name)
    findings.append(("load balancer", load_balancer_name, alb_exists))

    if not stack_exists:
        for resource_type, resource, exists in findings:
            if exists and resource_type in ("iam role", "event bus", "load balancer"):
                logger.warning(
                    f"{resource_type} '{resource}' already exists outside stack {stack_name}. Deployment will fail until it is removed or renamed."
                )

    # --- Hosted zone (informational: a duplicate zone for the domain breaks delegation) ---
    zone_exists, zone_id = check_hosted_zone_exists(domain_name)
    findings.append(("hosted zone", domain_name, zone_exists))
    if zone_exists and not stack_exists:
        logger.warning(
            f"A hosted zone for {domain_name} already exists ({zone_id}). The stack will create a second one."
        )

    summary = pd.DataFrame(findings, columns=["type", "name", "exists"])
    logger.info(f"Resource check for {stack_name}:\n{summary.to_string(index=False)}")

    # The cdk CLI caches its own lookups (e.g. availability zones) in the same file
    existing_context = {}
    if os.path.exists(context_file):
        with open(context_file, "r") as f:
            existing_context = json.load(f)
    existing_context.update(context_data)

    with open(context_file, "w") as f:
        json.dump(existing_context, f, indent=2)

    logger.info(f"Context data written to {context_file}")

    return context_data


if __name__ == "__main__":
    check_and_set_context()
