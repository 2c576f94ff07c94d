import json
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import boto3
from aws_cdk import App, CfnOutput
from aws_cdk import aws_certificatemanager as acm
from aws_cdk import aws_elasticloadbalancingv2 as elbv2
from aws_cdk import aws_iam as iam
from aws_cdk import aws_logs as logs
from botocore.exceptions import ClientError
from cdk_config import AWS_REGION
from constructs import Construct
from dotenv import set_key

logger = logging.getLogger(__name__)

# CloudWatch only accepts a fixed set of retention periods
RETENTION_DAYS_BY_NUMBER = {
    1: logs.RetentionDays.ONE_DAY,
    3: logs.RetentionDays.THREE_DAYS,
    5: logs.RetentionDays.FIVE_DAYS,
    7: logs.RetentionDays.ONE_WEEK,
    14: logs.RetentionDays.TWO_WEEKS,
    30: logs.RetentionDays.ONE_MONTH,
    60: logs.RetentionDays.TWO_MONTHS,
    90: logs.RetentionDays.THREE_MONTHS,
    120: logs.RetentionDays.FOUR_MONTHS,
    150: logs.RetentionDays.FIVE_MONTHS,
    180: logs.RetentionDays.SIX_MONTHS,
    365: logs.RetentionDays.ONE_YEAR,
    400: logs.RetentionDays.THIRTEEN_MONTHS,
    545: logs.RetentionDays.EIGHTEEN_MONTHS,
    731: logs.RetentionDays.TWO_YEARS,
    1827: logs.RetentionDays.FIVE_YEARS,
    3653: logs.RetentionDays.TEN_YEARS,
}


def resource_name(app_name: str, environment: str, suffix: str) -> str:
    return f"{app_name}-{environment}-{suffix}"


def alb_name(app_name: str, environment: str) -> str:
    # Application load balancer name can be max 32 characters, so taking the last 32 characters.
    # Names may not start with a hyphen.
    return resource_name(app_name, environment, "alb")[-32:].lstrip("-")


def log_retention_from_days(days: int) -> logs.RetentionDays:
    try:
        return RETENTION_DAYS_BY_NUMBER[int(days)]
    except KeyError:
        raise ValueError(
            f"Unsupported log retention of {days} days. Choose one of: {sorted(RETENTION_DAYS_BY_NUMBER)}"
        )


# --- Function to load context from file ---
def load_context_from_file(app: App, file_path: str):
    if os.path.exists(file_path):
        with open(file_path, "r") as f:
            context_data = json.load(f)
            for key, value in context_data.items():
                app.node.set_context(key, value)
            logger.info(f"Loaded context from {file_path}")
    else:
        logger.warning(f"Context file not found: {file_path}")


def add_export_output(
    scope: Construct,
    output_id: str,
    value: str,
    description: str,
    app_name: str,
    environment: str,
    export_suffix: str,
) -> CfnOutput:
    """Adds a stack output exported as '<app>-<environment>-<suffix>' for other stacks to import."""
    return CfnOutput(
        scope,
        output_id,
        value=value,
        description=description,
        export_name=resource_name(app_name, environment, export_suffix),
    )


def add_statement_to_policy(role: iam.IRole, policy_document: Dict[str, Any]):
    """
    Adds individual policy statements from a parsed policy document to a CDK Role.

    Args:
        role: The CDK Role construct to attach policies to.
        policy_document: A Python dictionary representing an IAM policy document.
    """
    if "Statement" not in policy_document or not isinstance(
        policy_document["Statement"], list
    ):
        logger.warning(
            "Policy document does not contain a 'Statement' list. Skipping."
        )
        return

    for statement_dict in policy_document["Statement"]:
        cdk_policy_statement = iam.PolicyStatement.from_json(statement_dict)
        role.add_to_policy(cdk_policy_statement)
        logger.info(f"  - Added statement: {statement_dict.get('Sid', 'No Sid')}")


def add_custom_policies(
    role: iam.IRole,
    policy_file_locations: Optional[List[str]] = None,
    custom_policy_text: Optional[str] = None,
) -> iam.IRole:
    """
    Loads custom policies from JSON files or a string and attaches them to a CDK Role.

    Args:
        role: The CDK Role construct to attach policies to.
        policy_file_locations: List of file paths to JSON policy documents.
        custom_policy_text: A JSON string representing a policy document.

    Returns:
        The modified CDK Role construct.
    """
    if policy_file_locations is None:
        policy_file_locations = []

    for path in policy_file_locations:
        try:
            with open(path, "r") as f:
                policy_document = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Policy file not found at {path}. Skipping.")
            continue
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in policy file {path}: {e}. Skipping.")
            continue
        logger.info(f"Processing policy from file: {path}...")
        add_statement_to_policy(role, policy_document)

    if custom_policy_text:
        try:
            policy_document = json.loads(custom_policy_text)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in custom_policy_text: {e}. Skipping.")
        else:
            logger.info("Processing policy from custom policy text string...")
            add_statement_to_policy(role, policy_document)

    return role


def github_oidc_provider_arn(account: str, provider_host: str) -> str:
    return f"arn:aws:iam::{account}:oidc-provider/{provider_host}"


def github_oidc_principal(
    provider_arn: str,
    provider_host: str,
    github_org: str,
    repo_filter: str = "*",
) -> iam.WebIdentityPrincipal:
    """
    Web identity principal that lets GitHub Actions workflows from the given
    organisation assume a role through the OIDC provider.
    """
    return iam.WebIdentityPrincipal(
        provider_arn,
        {
            "StringEquals": {f"{provider_host}:aud": "sts.amazonaws.com"},
            "StringLike": {f"{provider_host}:sub": f"repo:{github_org}/{repo_filter}:*"},
        },
    )


def add_https_listener_with_cert(
    alb: elbv2.ApplicationLoadBalancer,
    certificate: acm.ICertificate,
    logical_id: str = "HttpsListener",
    listener_port_https: int = 443,
) -> elbv2.ApplicationListener:
    """
    Adds an HTTPS listener to an ALB with an ACM certificate. Requests that no
    service listener rule matches receive a plain-text 404.

    Args:
        alb (elbv2.ApplicationLoadBalancer): The Application Load Balancer to add the listener to.
        certificate (acm.ICertificate): The certificate served by the listener.
        logical_id (str): A unique logical ID for the listener construct within the stack.
        listener_port_https (int): The HTTPS port to listen on (default: 443).

    Returns:
        elbv2.ApplicationListener: The created listener, for services to attach rules to.
    """
    logger.info(
        f"Adding ALB HTTPS listener on port {listener_port_https} with ACM certificate"
    )
    return alb.add_listener(
        logical_id,
        port=listener_port_https,
        protocol=elbv2.ApplicationProtocol.HTTPS,
        certificates=[elbv2.ListenerCertificate.from_certificate_manager(certificate)],
        default_action=elbv2.ListenerAction.fixed_response(
            404, content_type="text/plain", message_body="Not Found"
        ),
    )


def add_http_redirect_listener(
    alb: elbv2.ApplicationLoadBalancer,
    logical_id: str = "HttpListener",
    listener_port_http: int = 80,
    redirect_port_https: int = 443,
) -> elbv2.ApplicationListener:
    """Adds an HTTP listener that permanently redirects every request to HTTPS."""
    return alb.add_listener(
        logical_id,
        port=listener_port_http,
        protocol=elbv2.ApplicationProtocol.HTTP,
        default_action=elbv2.ListenerAction.redirect(
            protocol="HTTPS", port=str(redirect_port_https), permanent=True
        ),
    )


###
# Boto3 lookups used before synthesis
###


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def check_for_existing_role(role_name: str) -> Tuple[bool, str]:
    iam_client = boto3.client("iam")
    try:
        response = iam_client.get_role(RoleName=role_name)
        role_arn = response["Role"]["Arn"]
        logger.info(f"IAM role '{role_name}' found: {role_arn}")
        return True, role_arn
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return False, ""
        raise


def check_s3_bucket_exists(bucket_name: str) -> Tuple[bool, Optional[str]]:
    """
    Checks if an S3 bucket with the given name exists and is accessible.

    Args:
        bucket_name: The name of the S3 bucket to check.

    Returns:
        A tuple: (bool indicating existence, the bucket name or None)
    """
    s3_client = boto3.client("s3")
    try:
        s3_client.head_bucket(Bucket=bucket_name)
        logger.info(f"Bucket '{bucket_name}' exists and is accessible.")
        return True, bucket_name
    except ClientError as e:
        error_code = _error_code(e)
        if error_code in ("404", "NoSuchBucket"):
            logger.info(f"Bucket '{bucket_name}' does not exist.")
            return False, None
        elif error_code == "403":
            # 403 is also returned for buckets owned by another account, which cannot be imported anyway
            logger.warning(
                f"Bucket '{bucket_name}' returned 403, which indicates it may exist but is not accessible. Returning False for existence."
            )
            return False, bucket_name
        raise


def check_log_group_exists(log_group_name: str) -> Tuple[bool, Optional[str]]:
    logs_client = boto3.client("logs")
    response = logs_client.describe_log_groups(logGroupNamePrefix=log_group_name)
    for log_group in response.get("logGroups", []):
        if log_group["logGroupName"] == log_group_name:
            return True, log_group.get("arn")
    return False, None


def check_event_bus_exists(event_bus_name: str) -> Tuple[bool, Optional[str]]:
    events_client = boto3.client("events")
    try:
        response = events_client.describe_event_bus(Name=event_bus_name)
        return True, response["Arn"]
    except ClientError as e:
        if _error_code(e) == "ResourceNotFoundException":
            return False, None
        raise


def check_oidc_provider_exists(provider_arn: str) -> Tuple[bool, Optional[str]]:
    iam_client = boto3.client("iam")
    try:
        iam_client.get_open_id_connect_provider(OpenIDConnectProviderArn=provider_arn)
        return True, provider_arn
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return False, None
        raise


def check_hosted_zone_exists(domain_name: str) -> Tuple[bool, Optional[str]]:
    """
    Looks for a public hosted zone for exactly this domain. The returned ID has
    the '/hostedzone/' prefix stripped.
    """
    route53_client = boto3.client("route53")
    response = route53_client.list_hosted_zones_by_name(DNSName=domain_name, MaxItems="1")
    for zone in response.get("HostedZones", []):
        if zone["Name"].rstrip(".") == domain_name.rstrip("."):
            return True, zone["Id"].split("/")[-1]
    return False, None


def check_alb_exists(
    load_balancer_name: str, region_name: str = None
) -> Tuple[bool, dict]:
    """
    Checks if an Application Load Balancer (ALB) with the given name exists.

    Returns:
        A tuple:
        - The first element is True if the ALB exists, False otherwise.
        - The second element is the first entry of the LoadBalancers list from the
          describe_load_balancers response, or an empty dict.
    """
    elbv2_client = boto3.client("elbv2", region_name=region_name or AWS_REGION)
    try:
        response = elbv2_client.describe_load_balancers(Names=[load_balancer_name])
        if response["LoadBalancers"]:
            return True, response["LoadBalancers"][0]
        return False, {}
    except ClientError as e:
        if _error_code(e) == "LoadBalancerNotFound":
            return False, {}
        raise


def check_stack_exists(stack_name: str) -> bool:
    cfn_client = boto3.client("cloudformation", region_name=AWS_REGION)
    try:
        response = cfn_client.describe_stacks(StackName=stack_name)
    except ClientError as e:
        # CloudFormation reports a missing stack as a generic ValidationError
        if _error_code(e) == "ValidationError" and "does not exist" in str(e):
            return False
        raise
    return any(
        stack["StackStatus"] != "DELETE_COMPLETE" for stack in response["Stacks"]
    )


def get_stack_resources(
    stack_name: str, resource_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Resource summaries of a stack, optionally filtered by CloudFormation type.
    Works while the stack is still being created, unlike the stack outputs.
    """
    cfn_client = boto3.client("cloudformation", region_name=AWS_REGION)
    paginator = cfn_client.get_paginator("list_stack_resources")
    resources = []
    for page in paginator.paginate(StackName=stack_name):
        for resource in page.get("StackResourceSummaries", []):
            if resource_type is None or resource["ResourceType"] == resource_type:
                resources.append(resource)
    return resources


def ensure_folder_exists(output_folder: str):
    """Checks if the specified folder exists, creates it if not."""

    if not os.path.exists(output_folder):
        os.makedirs(output_folder, exist_ok=True)
        logger.info(f"Created the {output_folder} folder.")


def create_service_config_env(
    out_dir: str, values: Dict[str, str], file_name: str = "shared_infra.env"
) -> str:
    """
    Create an env file holding the shared infrastructure values, for service
    stacks and applications deployed on top of this stack.
    """
    ensure_folder_exists(out_dir)
    env_file_path = os.path.abspath(os.path.join(out_dir, file_name))

    if not os.path.exists(env_file_path):
        with open(env_file_path, "w"):
            pass  # Create empty file

    for key, value in values.items():
        set_key(env_file_path, key, str(value), quote_mode="never")

    return env_file_path
