import logging
import time
from typing import Dict, List

import boto3
from cdk_config import APP_NAME, AWS_REGION, ENVIRONMENT, SERVICE_CONFIG_FOLDER
from cdk_functions import (
    create_service_config_env,
    get_stack_resources,
    resource_name,
)
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Stack output -> variable name in the env file handed to service stacks
OUTPUT_ENV_VARIABLES = {
    "VpcId": "VPC_ID",
    "VpcAzs": "VPC_AZS",
    "VpcPrivateSubnets": "VPC_PRIVATE_SUBNETS",
    "VpcPublicSubnets": "VPC_PUBLIC_SUBNETS",
    "EventBusName": "EVENT_BUS_NAME",
    "SharedLogGroupName": "SHARED_LOG_GROUP_NAME",
    "EcsClusterName": "ECS_CLUSTER_NAME",
    "LoadBalancerDns": "ALB_DNS",
    "TaskExecutionRoleArn": "TASK_EXECUTION_ROLE_ARN",
    "ServiceRoleArn": "SERVICE_ROLE_ARN",
    "HostedZoneId": "HOSTED_ZONE_ID",
    "CertificateArn": "CERTIFICATE_ARN",
    "SharedDataBucketName": "SHARED_DATA_BUCKET_NAME",
    "SharedDataBucketRoleArn": "SHARED_DATA_ROLE_ARN",
    "GitHubActionsRoleArn": "GITHUB_ACTIONS_ROLE_ARN",
}

# A failed update rolls back to the previous working stack
FINISHED_STACK_STATUSES = (
    "CREATE_COMPLETE",
    "UPDATE_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "IMPORT_COMPLETE",
)


def get_stack_outputs(stack_name: str, region_name: str = AWS_REGION) -> Dict[str, str]:
    cfn_client = boto3.client("cloudformation", region_name=region_name)
    response = cfn_client.describe_stacks(StackName=stack_name)
    stacks = response.get("Stacks", [])
    if not stacks:
        raise RuntimeError(f"Stack {stack_name} not found")
    return {
        output["OutputKey"]: output["OutputValue"]
        for output in stacks[0].get("Outputs", [])
    }


def outputs_to_env_values(outputs: Dict[str, str]) -> Dict[str, str]:
    return {
        env_name: outputs[output_key]
        for output_key, env_name in OUTPUT_ENV_VARIABLES.items()
        if output_key in outputs
    }


def get_hosted_zone_name_servers(hosted_zone_id: str) -> List[str]:
    """
    Name servers of the subdomain zone. These need an NS record in the parent
    domain's zone before DNS validation of the certificate can succeed.
    """
    route53_client = boto3.client("route53")
    response = route53_client.get_hosted_zone(Id=hosted_zone_id)
    return response.get("DelegationSet", {}).get("NameServers", [])


def wait_for_certificate(
    certificate_arn: str,
    timeout_seconds: int = 1800,
    update_interval: int = 15,
    region_name: str = AWS_REGION,
) -> str:
    acm_client = boto3.client("acm", region_name=region_name)

    with tqdm(total=timeout_seconds, desc="Waiting for certificate validation") as progress:
        waited = 0
        while True:
            certificate = acm_client.describe_certificate(CertificateArn=certificate_arn)
            status = certificate["Certificate"]["Status"]
            if status == "ISSUED":
                return status
            if status in ("FAILED", "VALIDATION_TIMED_OUT", "REVOKED"):
                raise RuntimeError(f"Certificate {certificate_arn} ended in status {status}")
            if waited >= timeout_seconds:
                raise RuntimeError(
                    f"Certificate {certificate_arn} still {status} after {timeout_seconds} seconds"
                )
            time.sleep(update_interval)
            waited += update_interval
            progress.update(update_interval)


def get_stack_status(stack_name: str, region_name: str = AWS_REGION) -> str:
    cfn_client = boto3.client("cloudformation", region_name=region_name)
    response = cfn_client.describe_stacks(StackName=stack_name)
    stacks = response.get("Stacks", [])
    if not stacks:
        raise RuntimeError(f"Stack {stack_name} not found")
    return stacks[0]["StackStatus"]


def wait_for_stack_resource_id(
    stack_name: str,
    resource_type: str,
    timeout_seconds: int = 900,
    update_interval: int = 10,
) -> str:
    """
    Wait until the stack has created a resource of the given type and return its
    physical id. For a hosted zone this is the zone id, for a certificate its ARN.
    """
    with tqdm(total=timeout_seconds, desc=f"Waiting for {resource_type}") as progress:
        waited = 0
        while True:
            for resource in get_stack_resources(stack_name, resource_type):
                if resource.get("PhysicalResourceId"):
                    return resource["PhysicalResourceId"]
            if waited >= timeout_seconds:
                raise RuntimeError(
                    f"No {resource_type} created in stack {stack_name} after {timeout_seconds} seconds"
                )
            time.sleep(update_interval)
            waited += update_interval
            progress.update(update_interval)


def wait_for_stack_create(stack_name: str, region_name: str = AWS_REGION):
    cfn_client = boto3.client("cloudformation", region_name=region_name)
    waiter = cfn_client.get_waiter("stack_create_complete")
    waiter.wait(StackName=stack_name, WaiterConfig={"Delay": 30, "MaxAttempts": 120})


def log_name_servers(hosted_zone_id: str) -> List[str]:
    name_servers = get_hosted_zone_name_servers(hosted_zone_id)
    logger.info(
        "Add an NS record for the subdomain in the parent zone with these values:\n"
        + "\n".join(f"  {name_server}" for name_server in name_servers)
    )
    return name_servers


def run_post_deploy(
    stack_name: str,
    output_folder: str = SERVICE_CONFIG_FOLDER,
    region_name: str = AWS_REGION,
) -> str:
    """
    Hand the shared infrastructure over to the service stacks.

    Run it while the first deployment is still in progress: the stack blocks on
    certificate validation, which only succeeds once the parent zone delegates
    to the new hosted zone. The name servers are reported as soon as the zone
    exists, then the certificate and the stack are awaited before the env file
    is written. On a finished stack the outputs are used directly.
    """
    status = get_stack_status(stack_name, region_name)
    logger.info(f"Stack {stack_name} is in status {status}")

    if status == "CREATE_IN_PROGRESS":
        hosted_zone_id = wait_for_stack_resource_id(stack_name, "AWS::Route53::HostedZone")
        log_name_servers(hosted_zone_id)

        certificate_arn = wait_for_stack_resource_id(
            stack_name, "AWS::CertificateManager::Certificate"
        )
        wait_for_certificate(certificate_arn, region_name=region_name)
        logger.info("Certificate issued.")

        wait_for_stack_create(stack_name, region_name)
        outputs = get_stack_outputs(stack_name, region_name)
    elif status in FINISHED_STACK_STATUSES:
        outputs = get_stack_outputs(stack_name, region_name)
        if "HostedZoneId" in outputs:
            log_name_servers(outputs["HostedZoneId"])
    else:
        raise RuntimeError(f"Stack {stack_name} is in status {status}, nothing to hand over")

    env_file_path = create_service_config_env(output_folder, outputs_to_env_values(outputs))
    logger.info(f"Shared infrastructure values written to {env_file_path}")
    return env_file_path


if __name__ == "__main__":
    run_post_deploy(resource_name(APP_NAME, ENVIRONMENT, "shared-infra"))
