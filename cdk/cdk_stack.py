import logging

from aws_cdk import Duration, RemovalPolicy, Stack
from aws_cdk import aws_certificatemanager as acm
from aws_cdk import aws_cloudwatch as cloudwatch
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ecs as ecs
from aws_cdk import aws_elasticloadbalancingv2 as elbv2
from aws_cdk import aws_events as events
from aws_cdk import aws_iam as iam
from aws_cdk import aws_logs as logs
from aws_cdk import aws_route53 as route53
from aws_cdk import aws_route53_targets as targets
from aws_cdk import aws_s3 as s3
from cdk_config import (
    CONTAINER_INSIGHTS,
    CONTAINER_PORT,
    CREATE_GITHUB_OIDC_PROVIDER,
    DEPLOY_ROLE_ACTIONS,
    DOMAIN_NAME,
    GITHUB_OIDC_PROVIDER_HOST,
    GITHUB_ORG,
    GITHUB_REPO_FILTER,
    LOG_RETENTION_DAYS,
    NONCURRENT_VERSION_EXPIRATION_DAYS,
    POLICY_FILE_LOCATIONS,
    VPC_MAX_AZS,
    VPC_NAT_GATEWAYS,
    VPC_SUBNET_CIDR_MASK,
)
from cdk_functions import (
    add_custom_policies,
    add_export_output,
    add_http_redirect_listener,
    add_https_listener_with_cert,
    alb_name,
    github_oidc_principal,
    github_oidc_provider_arn,
    log_retention_from_days,
    resource_name,
)
from constructs import Construct

logger = logging.getLogger(__name__)


class SharedInfrastructureStack(Stack):
    """
    Infrastructure shared by every word-collect service in one environment.
    Service stacks import it through the exported outputs.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        app_name: str,
        environment: str,
        domain_name: str = DOMAIN_NAME,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.app_name = app_name
        self.environment_name = environment
        self.domain_name = domain_name

        def name(suffix: str) -> str:
            return resource_name(app_name, environment, suffix)

        # --- Helper to get context values ---
        def get_context_bool(key: str, default: bool = False) -> bool:
            value = self.node.try_get_context(key)
            if value is None:
                return default
            return value is True or value == "True"

        # --- VPC ---
        try:
            self.vpc = ec2.Vpc(
                self,
                "Vpc",
                vpc_name=name("vpc"),
                max_azs=VPC_MAX_AZS,
                nat_gateways=VPC_NAT_GATEWAYS,
                subnet_configuration=[
                    ec2.SubnetConfiguration(
                        name="Public",
                        subnet_type=ec2.SubnetType.PUBLIC,
                        cidr_mask=VPC_SUBNET_CIDR_MASK,
                    ),
                    ec2.SubnetConfiguration(
                        name="Private",
                        subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                        cidr_mask=VPC_SUBNET_CIDR_MASK,
                    ),
                ],
            )
        except Exception as e:
            raise Exception("Could not handle VPC due to:", e)

        # --- EventBridge bus for service-to-service communication ---
        self.event_bus = events.EventBus(
            self, "EventBus", event_bus_name=name("event-bus")
        )

        # --- Shared CloudWatch Log Group ---
        log_group_name = f"/{app_name}/{environment}/shared-logs"
        if get_context_bool(f"exists:{log_group_name}"):
            self.shared_log_group = logs.LogGroup.from_log_group_name(
                self, "SharedLogGroup", log_group_name
            )
            logger.info(f"Using existing log group {log_group_name}")
        else:
            self.shared_log_group = logs.LogGroup(
                self,
                "SharedLogGroup",
                log_group_name=log_group_name,
                retention=log_retention_from_days(LOG_RETENTION_DAYS),
                removal_policy=RemovalPolicy.RETAIN,
            )

        # --- ECS Cluster ---
        try:
            self.ecs_cluster = ecs.Cluster(
                self,
                "EcsCluster",
                cluster_name=name("cluster"),
                vpc=self.vpc,
                container_insights_v2=(
                    ecs.ContainerInsights.ENABLED
                    if CONTAINER_INSIGHTS
                    else ecs.ContainerInsights.DISABLED
                ),
                enable_fargate_capacity_providers=True,
            )
        except Exception as e:
            raise Exception("Could not handle ECS cluster due to:", e)

        # --- IAM roles shared by ECS services ---
        try:
            self.task_execution_role = iam.Role(
                self,
                "TaskExecutionRole",
                role_name=name("task-execution-role"),
                assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
                managed_policies=[
                    iam.ManagedPolicy.from_aws_managed_policy_name(
                        "service-role/AmazonECSTaskExecutionRolePolicy"
                    )
                ],
            )

            self.service_role = iam.Role(
                self,
                "ServiceRole",
                role_name=name("service-role"),
                assumed_by=iam.ServicePrincipal("ecs.amazonaws.com"),
                managed_policies=[
                    iam.ManagedPolicy.from_aws_managed_policy_name(
                        "service-role/AmazonEC2ContainerServiceRole"
                    )
                ],
            )
        except Exception as e:
            raise Exception("Failed at IAM role step due to:", e)

        # --- Security Groups ---
        try:
            self.alb_security_group = ec2.SecurityGroup(
                self,
                "AlbSecurityGroup",
                vpc=self.vpc,
                security_group_name=name("alb-sg"),
                description="Security group for ALB",
                allow_all_outbound=True,
            )

            self.ecs_security_group = ec2.SecurityGroup(
                self,
                "EcsSecurityGroup",
                vpc=self.vpc,
                security_group_name=name("ecs-sg"),
                description="Security group for ECS tasks",
                allow_all_outbound=True,
            )

            self.ecs_security_group.add_ingress_rule(
                peer=self.alb_security_group,
                connection=ec2.Port.tcp(CONTAINER_PORT),
                description="Allow inbound traffic from ALB",
            )
        except Exception as e:
            raise Exception("Could not handle security groups due to:", e)

        # --- Hosted zone and certificate for the subdomain ---
        self.hosted_zone = route53.HostedZone(
            self,
            "HostedZone",
            zone_name=domain_name,
            comment=f"Hosted zone for {domain_name}",
        )

        self.certificate = acm.Certificate(
            self,
            "Certificate",
            domain_name=domain_name,
            validation=acm.CertificateValidation.from_dns(self.hosted_zone),
        )

        # --- ALB ---
        try:
            self.load_balancer = elbv2.ApplicationLoadBalancer(
                self,
                "LoadBalancer",
                vpc=self.vpc,
                internet_facing=True,
                security_group=self.alb_security_group,
                vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
                load_balancer_name=alb_name(app_name, environment),
            )

            # Services add their own listener rules to the HTTPS listener
            self.https_listener = add_https_listener_with_cert(
                self.load_balancer, self.certificate
            )
            self.http_listener = add_http_redirect_listener(self.load_balancer)
        except Exception as e:
            raise Exception("Could not handle application load balancer due to:", e)

        route53.ARecord(
            self,
            "LoadBalancerDnsRecord",
            zone=self.hosted_zone,
            target=route53.RecordTarget.from_alias(
                targets.LoadBalancerTarget(self.load_balancer)
            ),
            record_name=domain_name,
        )

        # --- CloudWatch dashboard ---
        self.dashboard = cloudwatch.Dashboard(
            self, "EcsDashboard", dashboard_name=name("ecs-dashboard")
        )
        self.dashboard.add_widgets(
            cloudwatch.GraphWidget(
                title="Cluster CPU Utilization",
                left=[self.ecs_cluster.metric_cpu_utilization()],
            ),
            cloudwatch.GraphWidget(
                title="Cluster Memory Utilization",
                left=[self.ecs_cluster.metric_memory_utilization()],
            ),
        )

        # --- S3 bucket for shared data ---
        try:
            bucket_name = name("shared-data")
            if get_context_bool(f"exists:{bucket_name}"):
                self.shared_data_bucket = s3.Bucket.from_bucket_name(
                    self, "SharedDataBucket", bucket_name=bucket_name
                )
                logger.info(f"Using existing S3 bucket {bucket_name}")
            else:
                self.shared_data_bucket = s3.Bucket(
                    self,
                    "SharedDataBucket",
                    bucket_name=bucket_name,
                    encryption=s3.BucketEncryption.S3_MANAGED,
                    block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
                    versioned=True,
                    removal_policy=RemovalPolicy.RETAIN,
                    lifecycle_rules=[
                        s3.LifecycleRule(
                            enabled=True,
                            noncurrent_version_expiration=Duration.days(
                                NONCURRENT_VERSION_EXPIRATION_DAYS
                            ),
                        )
                    ],
                )

            self.shared_data_bucket_role = iam.Role(
                self,
                "SharedDataBucketRole",
                role_name=name("shared-data-role"),
                assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
                description="Role for services to access shared data bucket",
            )
            self.shared_data_bucket_role.add_to_policy(
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=["s3:GetObject", "s3:ListBucket"],
                    resources=[
                        self.shared_data_bucket.bucket_arn,
                        f"{self.shared_data_bucket.bucket_arn}/*",
                    ],
                )
            )
        except Exception as e:
            raise Exception("Could not handle shared data bucket due to:", e)

        # --- GitHub Actions deployment role ---
        try:
            oidc_context_key = f"exists:{GITHUB_OIDC_PROVIDER_HOST}"
            create_provider = not get_context_bool(
                oidc_context_key, default=not CREATE_GITHUB_OIDC_PROVIDER
            )
            if create_provider:
                github_oidc_provider = iam.OpenIdConnectProvider(
                    self,
                    "GitHubOidcProvider",
                    url=f"https://{GITHUB_OIDC_PROVIDER_HOST}",
                    client_ids=["sts.amazonaws.com"],
                )
                logger.info("Creating new GitHub OIDC provider")
            else:
                # The provider is an account-wide singleton, usually created once outside this stack
                github_oidc_provider = (
                    iam.OpenIdConnectProvider.from_open_id_connect_provider_arn(
                        self,
                        "GitHubOidcProvider",
                        github_oidc_provider_arn(
                            self.account, GITHUB_OIDC_PROVIDER_HOST
                        ),
                    )
                )

            self.github_actions_role = iam.Role(
                self,
                "GitHubActionsRole",
                role_name=name("github-actions-role"),
                assumed_by=github_oidc_principal(
                    github_oidc_provider.open_id_connect_provider_arn,
                    GITHUB_OIDC_PROVIDER_HOST,
                    GITHUB_ORG,
                    GITHUB_REPO_FILTER,
                ),
                description=f"Role for GitHub Actions to deploy {app_name} services",
            )

            # Reading the CDK bootstrap version
            self.github_actions_role.add_to_policy(
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=["ssm:GetParameter"],
                    resources=[
                        f"arn:aws:ssm:{self.region}:{self.account}:parameter/cdk-bootstrap/*"
                    ],
                )
            )

            self.github_actions_role.add_to_policy(
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=DEPLOY_ROLE_ACTIONS,
                    resources=["*"],
                )
            )

            if POLICY_FILE_LOCATIONS:
                add_custom_policies(
                    self.github_actions_role,
                    policy_file_locations=POLICY_FILE_LOCATIONS,
                )
        except Exception as e:
            raise Exception("Could not handle GitHub Actions role due to:", e)

        # --- Outputs for other stacks ---

        self.params = dict()
        self.params["vpc_id"] = self.vpc.vpc_id
        self.params["vpc_azs"] = ",".join(self.vpc.availability_zones)
        self.params["vpc_private_subnets"] = ",".join(
            subnet.subnet_id for subnet in self.vpc.private_subnets
        )
        self.params["vpc_public_subnets"] = ",".join(
            subnet.subnet_id for subnet in self.vpc.public_subnets
        )
        self.params["event_bus_name"] = self.event_bus.event_bus_name
        self.params["shared_log_group_name"] = self.shared_log_group.log_group_name
        self.params["ecs_cluster_name"] = self.ecs_cluster.cluster_name
        self.params["alb_dns"] = self.load_balancer.load_balancer_dns_name
        self.params["task_execution_role_arn"] = self.task_execution_role.role_arn
        self.params["service_role_arn"] = self.service_role.role_arn
        self.params["hosted_zone_id"] = self.hosted_zone.hosted_zone_id
        self.params["certificate_arn"] = self.certificate.certificate_arn
        self.params["shared_data_bucket_name"] = self.shared_data_bucket.bucket_name
        self.params["shared_data_role_arn"] = self.shared_data_bucket_role.role_arn
        self.params["github_actions_role_arn"] = self.github_actions_role.role_arn

        outputs = [
            ("VpcId", "vpc_id", "VPC ID", "vpc-id"),
            ("VpcAzs", "vpc_azs", "VPC Availability Zones", "vpc-azs"),
            (
                "VpcPrivateSubnets",
                "vpc_private_subnets",
                "VPC Private Subnet IDs",
                "vpc-private-subnets",
            ),
            (
                "VpcPublicSubnets",
                "vpc_public_subnets",
                "VPC Public Subnet IDs",
                "vpc-public-subnets",
            ),
            ("EventBusName", "event_bus_name", "EventBridge Bus Name", "event-bus-name"),
            (
                "SharedLogGroupName",
                "shared_log_group_name",
                "Shared Log Group Name",
                "shared-log-group-name",
            ),
            ("EcsClusterName", "ecs_cluster_name", "ECS Cluster Name", "ecs-cluster-name"),
            ("LoadBalancerDns", "alb_dns", "Load Balancer DNS Name", "alb-dns"),
            (
                "TaskExecutionRoleArn",
                "task_execution_role_arn",
                "ECS Task Execution Role ARN",
                "task-execution-role-arn",
            ),
            ("ServiceRoleArn", "service_role_arn", "ECS Service Role ARN", "service-role-arn"),
            ("HostedZoneId", "hosted_zone_id", "Hosted Zone ID", "hosted-zone-id"),
            ("CertificateArn", "certificate_arn", "ACM Certificate ARN", "certificate-arn"),
            (
                "SharedDataBucketName",
                "shared_data_bucket_name",
                "Shared Data Bucket Name",
                "shared-data-bucket-name",
            ),
            (
                "SharedDataBucketRoleArn",
                "shared_data_role_arn",
                "Shared Data Bucket Role ARN",
                "shared-data-role-arn",
            ),
            (
                "GitHubActionsRoleArn",
                "github_actions_role_arn",
                "GitHub Actions Role ARN",
                "github-actions-role-arn",
            ),
        ]

        for output_id, param_key, description, export_suffix in outputs:
            add_export_output(
                self,
                output_id,
                value=self.params[param_key],
                description=description,
                app_name=app_name,
                environment=environment,
                export_suffix=export_suffix,
            )
