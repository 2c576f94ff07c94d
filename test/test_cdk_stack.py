import os
import sys
import unittest

# Add the cdk folder to the path so the stack modules can be imported
sys.path.insert(
    0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "cdk")
)

from aws_cdk import App, Environment  # noqa: E402
from aws_cdk.assertions import Match, Template  # noqa: E402
import cdk_stack  # noqa: E402
from cdk_stack import SharedInfrastructureStack  # noqa: E402

ACCOUNT = "123456789012"
REGION = "us-east-1"
DOMAIN = "wordcollect.example.com"


def synth_template(context: dict = None) -> Template:
    app = App(context=context or {})
    stack = SharedInfrastructureStack(
        app,
        "word-collect-test-shared-infra",
        app_name="word-collect",
        environment="test",
        domain_name=DOMAIN,
        env=Environment(account=ACCOUNT, region=REGION),
    )
    return Template.from_stack(stack)


class TestSharedInfrastructureStack(unittest.TestCase):
    """Assertions on the synthesized shared infrastructure template."""

    @classmethod
    def setUpClass(cls):
        cls.template = synth_template()

    def test_vpc_with_public_and_private_subnets(self):
        self.template.resource_count_is("AWS::EC2::VPC", 1)
        self.template.has_resource_properties(
            "AWS::EC2::VPC",
            {"Tags": Match.array_with([{"Key": "Name", "Value": "word-collect-test-vpc"}])},
        )
        self.template.resource_count_is("AWS::EC2::NatGateway", 1)
        # Two AZs, one public and one private subnet in each
        self.template.resource_count_is("AWS::EC2::Subnet", 4)

    def test_event_bus(self):
        self.template.has_resource_properties(
            "AWS::Events::EventBus", {"Name": "word-collect-test-event-bus"}
        )

    def test_shared_log_group_is_retained_for_a_month(self):
        self.template.has_resource_properties(
            "AWS::Logs::LogGroup",
            {"LogGroupName": "/word-collect/test/shared-logs", "RetentionInDays": 30},
        )
        self.template.has_resource(
            "AWS::Logs::LogGroup",
            {"DeletionPolicy": "Retain", "UpdateReplacePolicy": "Retain"},
        )

    def test_ecs_cluster_has_container_insights(self):
        self.template.has_resource_properties(
            "AWS::ECS::Cluster",
            {
                "ClusterName": "word-collect-test-cluster",
                "ClusterSettings": [{"Name": "containerInsights", "Value": "enabled"}],
            },
        )
        self.template.has_resource_properties(
            "AWS::ECS::ClusterCapacityProviderAssociations",
            {"CapacityProviders": Match.array_with(["FARGATE", "FARGATE_SPOT"])},
        )

    def test_ecs_roles_trust_ecs_principals(self):
        self.template.has_resource_properties(
            "AWS::IAM::Role",
            {
                "RoleName": "word-collect-test-task-execution-role",
                "AssumeRolePolicyDocument": Match.object_like(
                    {
                        "Statement": [
                            Match.object_like(
                                {"Principal": {"Service": "ecs-tasks.amazonaws.com"}}
                            )
                        ]
                    }
                ),
            },
        )
        self.template.has_resource_properties(
            "AWS::IAM::Role",
            {
                "RoleName": "word-collect-test-service-role",
                "AssumeRolePolicyDocument": Match.object_like(
                    {
                        "Statement": [
                            Match.object_like({"Principal": {"Service": "ecs.amazonaws.com"}})
                        ]
                    }
                ),
            },
        )

    def test_ecs_security_group_accepts_traffic_from_alb(self):
        self.template.has_resource_properties(
            "AWS::EC2::SecurityGroup",
            {"GroupName": "word-collect-test-alb-sg", "GroupDescription": "Security group for ALB"},
        )
        self.template.has_resource_properties(
            "AWS::EC2::SecurityGroupIngress",
            {
                "IpProtocol": "tcp",
                "FromPort": 80,
                "ToPort": 80,
                "Description": "Allow inbound traffic from ALB",
            },
        )

    def test_single_load_balancer_with_http_and_https_listeners(self):
        self.template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 1)
        self.template.has_resource_properties(
            "AWS::ElasticLoadBalancingV2::LoadBalancer",
            {"Name": "word-collect-test-alb", "Scheme": "internet-facing"},
        )
        self.template.resource_count_is("AWS::ElasticLoadBalancingV2::Listener", 2)
        self.template.has_resource_properties(
            "AWS::ElasticLoadBalancingV2::Listener",
            {
                "Port": 443,
                "Protocol": "HTTPS",
                "Certificates": Match.any_value(),
                "DefaultActions": [
                    Match.object_like(
                        {
                            "Type": "fixed-response",
                            "FixedResponseConfig": {
                                "StatusCode": "404",
                                "ContentType": "text/plain",
                                "MessageBody": "Not Found",
                            },
                        }
                    )
                ],
            },
        )
        self.template.has_resource_properties(
            "AWS::ElasticLoadBalancingV2::Listener",
            {
                "Port": 80,
                "Protocol": "HTTP",
                "DefaultActions": [
                    Match.object_like(
                        {
                            "Type": "redirect",
                            "RedirectConfig": Match.object_like(
                                {"Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301"}
                            ),
                        }
                    )
                ],
            },
        )

    def test_dns_zone_certificate_and_alias_record(self):
        self.template.has_resource_properties(
            "AWS::Route53::HostedZone",
            {
                "Name": f"{DOMAIN}.",
                "HostedZoneConfig": {"Comment": f"Hosted zone for {DOMAIN}"},
            },
        )
        self.template.has_resource_properties(
            "AWS::CertificateManager::Certificate",
            {"DomainName": DOMAIN, "ValidationMethod": "DNS"},
        )
        self.template.has_resource_properties(
            "AWS::Route53::RecordSet",
            {"Name": f"{DOMAIN}.", "Type": "A", "AliasTarget": Match.any_value()},
        )

    def test_dashboard(self):
        self.template.has_resource_properties(
            "AWS::CloudWatch::Dashboard",
            {"DashboardName": "word-collect-test-ecs-dashboard"},
        )

    def test_shared_data_bucket(self):
        self.template.has_resource_properties(
            "AWS::S3::Bucket",
            {
                "BucketName": "word-collect-test-shared-data",
                "VersioningConfiguration": {"Status": "Enabled"},
                "BucketEncryption": {
                    "ServerSideEncryptionConfiguration": [
                        {"ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
                    ]
                },
                "PublicAccessBlockConfiguration": {
                    "BlockPublicAcls": True,
                    "BlockPublicPolicy": True,
                    "IgnorePublicAcls": True,
                    "RestrictPublicBuckets": True,
                },
                "LifecycleConfiguration": {
                    "Rules": [
                        Match.object_like(
                            {
                                "Status": "Enabled",
                                "NoncurrentVersionExpiration": {"NoncurrentDays": 30},
                            }
                        )
                    ]
                },
            },
        )
        self.template.has_resource(
            "AWS::S3::Bucket", {"DeletionPolicy": "Retain"}
        )

    def test_shared_data_role_can_read_bucket(self):
        self.template.has_resource_properties(
            "AWS::IAM::Role",
            {
                "RoleName": "word-collect-test-shared-data-role",
                "Description": "Role for services to access shared data bucket",
            },
        )
        self.template.has_resource_properties(
            "AWS::IAM::Policy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with(
                        [
                            Match.object_like(
                                {
                                    "Action": ["s3:GetObject", "s3:ListBucket"],
                                    "Effect": "Allow",
                                }
                            )
                        ]
                    )
                }
            },
        )

    def test_github_actions_role_federates_through_oidc(self):
        self.template.has_resource_properties(
            "AWS::IAM::Role",
            {
                "RoleName": "word-collect-test-github-actions-role",
                "AssumeRolePolicyDocument": Match.object_like(
                    {
                        "Statement": [
                            Match.object_like(
                                {
                                    "Action": "sts:AssumeRoleWithWebIdentity",
                                    "Condition": {
                                        "StringEquals": {
                                            "token.actions.githubusercontent.com:aud": "sts.amazonaws.com"
                                        },
                                        "StringLike": {
                                            "token.actions.githubusercontent.com:sub": "repo:word-collect/*:*"
                                        },
                                    },
                                    "Principal": {
                                        "Federated": f"arn:aws:iam::{ACCOUNT}:oidc-provider/token.actions.githubusercontent.com"
                                    },
                                }
                            )
                        ]
                    }
                ),
            },
        )
        # The provider is imported, not created
        self.template.resource_count_is("Custom::AWSCDKOpenIdConnectProvider", 0)

    def test_github_actions_role_permissions(self):
        self.template.has_resource_properties(
            "AWS::IAM::Policy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with(
                        [
                            Match.object_like(
                                {
                                    "Action": "ssm:GetParameter",
                                    "Resource": f"arn:aws:ssm:{REGION}:{ACCOUNT}:parameter/cdk-bootstrap/*",
                                }
                            ),
                            Match.object_like(
                                {
                                    "Action": Match.array_with(
                                        ["cloudformation:*", "ecs:*", "iam:*"]
                                    ),
                                    "Resource": "*",
                                }
                            ),
                        ]
                    )
                }
            },
        )

    def test_cross_stack_exports(self):
        expected_exports = {
            "VpcId": "vpc-id",
            "VpcAzs": "vpc-azs",
            "VpcPrivateSubnets": "vpc-private-subnets",
            "VpcPublicSubnets": "vpc-public-subnets",
            "EventBusName": "event-bus-name",
            "SharedLogGroupName": "shared-log-group-name",
            "EcsClusterName": "ecs-cluster-name",
            "LoadBalancerDns": "alb-dns",
            "TaskExecutionRoleArn": "task-execution-role-arn",
            "ServiceRoleArn": "service-role-arn",
            "HostedZoneId": "hosted-zone-id",
            "CertificateArn": "certificate-arn",
            "SharedDataBucketName": "shared-data-bucket-name",
            "SharedDataBucketRoleArn": "shared-data-role-arn",
            "GitHubActionsRoleArn": "github-actions-role-arn",
        }
        outputs = self.template.find_outputs("*")
        self.assertEqual(len(outputs), len(expected_exports))
        for output_id, export_suffix in expected_exports.items():
            self.template.has_output(
                output_id, {"Export": {"Name": f"word-collect-test-{export_suffix}"}}
            )


class TestExistingResources(unittest.TestCase):
    """Context flags written by the resource check switch resources to imports."""

    def test_existing_bucket_and_log_group_are_imported(self):
        with self.assertLogs(cdk_stack.logger, level="INFO") as captured:
            template = synth_template(
                {
                    "exists:word-collect-test-shared-data": True,
                    "exists:/word-collect/test/shared-logs": True,
                }
            )
        self.assertIn(
            "INFO:cdk_stack:Using existing S3 bucket word-collect-test-shared-data",
            captured.output,
        )
        self.assertIn(
            "INFO:cdk_stack:Using existing log group /word-collect/test/shared-logs",
            captured.output,
        )
        template.resource_count_is("AWS::S3::Bucket", 0)
        template.resource_count_is("AWS::Logs::LogGroup", 0)
        template.has_output(
            "SharedDataBucketName", {"Value": "word-collect-test-shared-data"}
        )
        template.has_output(
            "SharedLogGroupName", {"Value": "/word-collect/test/shared-logs"}
        )
        # The access role still gets its read policy on the imported bucket
        template.has_resource_properties(
            "AWS::IAM::Role", {"RoleName": "word-collect-test-shared-data-role"}
        )

    def test_missing_oidc_provider_is_created(self):
        template = synth_template({"exists:token.actions.githubusercontent.com": False})
        template.resource_count_is("Custom::AWSCDKOpenIdConnectProvider", 1)
        template.has_resource_properties(
            "Custom::AWSCDKOpenIdConnectProvider",
            {
                "Url": "https://token.actions.githubusercontent.com",
                "ClientIDList": ["sts.amazonaws.com"],
            },
        )


if __name__ == "__main__":
    unittest.main()
