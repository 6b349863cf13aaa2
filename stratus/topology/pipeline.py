"""
PipelineStack: the managed (CodePipeline + CodeBuild) rendition of the
delivery pipeline run by ``stratus.pipeline``.

The artifact bucket, the KMS key, the source connection and the pipeline
notification topic are created by a bootstrap outside this app and are
imported by name.
"""

from stratus.config import DeploymentConfig
from stratus.core import App, Stack
from stratus.pipeline.build import BuildScript
from stratus.pipeline.state import FailureEventType
from stratus.topology.network import ACCOUNT_ID, REGION, join

PIPELINE_STACK = "PipelineStack"

SOURCE_STAGE = "Source"
BUILD_STAGE = "Docker-Build"
APPROVAL_STAGE = "Approval"
DEPLOY_STAGE = "Deploy"


def construct_name(repository: str) -> str:
    """demo-service-ecr-repo -> DemoServiceEcrRepo"""
    return "".join(word[:1].upper() + word[1:] for word in repository.split("-"))


def build_script(config: DeploymentConfig) -> BuildScript:
    """Build script of the CodeBuild project."""
    pipeline = config.pipeline
    return BuildScript.for_container_image(
        repository=config.service_resources.ecr_repo_name,
        container_name=config.service.container_name,
        encrypted_env_path=pipeline.encrypted_env_path,
        install_commands=pipeline.install_commands,
        build_args=pipeline.build_args,
        parameter_store=pipeline.parameter_store,
    )


def declare_pipeline_stack(app: App, config: DeploymentConfig) -> Stack:
    pipeline = config.pipeline
    repo = config.service_resources.ecr_repo_name
    name = construct_name(repo)

    stack = app.declare_stack(
        PIPELINE_STACK,
        config=pipeline.model_dump(),
        tags={"application-name": "Pipeline"},
        description=f"Delivery pipeline of {repo}",
    )

    kms_key_arn = stack.import_value("KmsKeyArn")
    bucket_arn = stack.import_value("ArtifactBucketArn")
    connection_arn = stack.import_value("CodeStarConnectionArn")
    topic_arn = stack.import_value("PipelineSnsArn")
    cluster_name = stack.import_value("PrimaryWorkloadClusterName")

    access_policy = stack.resource("PipelineAccessPolicy", "AWS::IAM::ManagedPolicy", {
        "ManagedPolicyName": "PipelineAccessPolicy",
        "PolicyDocument": {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": [
                        "s3:GetBucket*",
                        "s3:GetObject*",
                        "s3:List*",
                        "s3:PutObject",
                        "s3:PutObjectLegalHold",
                        "s3:PutObjectRetention",
                        "s3:PutObjectTagging",
                        "s3:PutObjectVersionTagging",
                    ],
                    "Resource": [bucket_arn, join(bucket_arn, "/*")],
                },
                {"Effect": "Allow", "Action": ["sts:AssumeRole"], "Resource": "*"},
                {
                    "Effect": "Allow",
                    "Action": [
                        "ecs:DescribeServices",
                        "ecs:DescribeTaskDefinition",
                        "ecs:DescribeTasks",
                        "ecs:ListTasks",
                        "ecs:RegisterTaskDefinition",
                        "ecs:TagResource",
                        "ecs:UpdateService",
                    ],
                    "Resource": "*",
                },
                {
                    "Effect": "Allow",
                    "Action": ["iam:PassRole"],
                    "Resource": "*",
                    "Condition": {
                        "StringEqualsIfExists": {
                            "iam:PassedToService": ["ec2.amazonaws.com", "ecs-tasks.amazonaws.com"],
                        },
                    },
                },
            ],
        },
    })

    pipeline_role = stack.resource("CodePipelineRole", "AWS::IAM::Role", {
        "RoleName": "CodePipelineRole",
        "Description": "Policy used in trust relationship with CodePipeline",
        "AssumeRolePolicyDocument": _assume_role("codepipeline.amazonaws.com"),
        "ManagedPolicyArns": [
            access_policy.ref,
            "arn:aws:iam::aws:policy/CloudWatchEventsFullAccess",
        ],
    })

    build_role = stack.resource("CodeBuildRole", "AWS::IAM::Role", {
        "RoleName": "CodeBuildRole",
        "Description": "Policy used in trust relationship with CodeBuild",
        "AssumeRolePolicyDocument": _assume_role("codebuild.amazonaws.com"),
        "ManagedPolicyArns": ["arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryPowerUser"],
        "Policies": [{
            "PolicyName": "codebuild-kms-decrypt",
            "PolicyDocument": {
                "Version": "2012-10-17",
                "Statement": [
                    {"Effect": "Allow", "Action": ["kms:Decrypt"], "Resource": [kms_key_arn]},
                    {"Effect": "Allow", "Action": ["ssm:GetParameters"], "Resource": ["*"]},
                ],
            },
        }],
    })

    log_group = stack.resource(f"{name}BuildLogGroup", "AWS::Logs::LogGroup", {
        "LogGroupName": f"{name}/CodeBuild/LogGroup",
        "RetentionInDays": pipeline.build_log_retention_days,
    })

    project = stack.resource(f"{name}BuildProject", "AWS::CodeBuild::Project", {
        "Name": f"{repo}-build-project",
        "ServiceRole": build_role.attr("Arn"),
        "TimeoutInMinutes": pipeline.build_timeout_minutes,
        "Artifacts": {"Type": "CODEPIPELINE"},
        "Source": {"Type": "CODEPIPELINE", "BuildSpec": build_script(config).to_yaml()},
        "Environment": {
            "Type": "ARM_CONTAINER",
            "ComputeType": pipeline.build_compute_type,
            "Image": pipeline.build_image,
            "PrivilegedMode": True,
            "EnvironmentVariables": [
                {"Name": "AWS_ACCOUNT_ID", "Type": "PLAINTEXT", "Value": ACCOUNT_ID},
                {"Name": "AWS_DEFAULT_REGION", "Type": "PLAINTEXT", "Value": REGION},
                {"Name": "KMS_KEY_ID", "Type": "PLAINTEXT", "Value": pipeline.kms_key_id},
            ],
        },
        "LogsConfig": {
            "CloudWatchLogs": {"Status": "ENABLED", "GroupName": log_group.ref},
        },
    })

    source_artifact = f"{name}SourceArtifact"
    build_artifact = f"{name}BuildArtifact"

    stack.resource(f"{name}Pipeline", "AWS::CodePipeline::Pipeline", {
        "Name": repo,
        "PipelineType": "V2",
        "RoleArn": pipeline_role.attr("Arn"),
        "ArtifactStore": {
            "Type": "S3",
            "Location": {"Fn::Select": [5, {"Fn::Split": [":", bucket_arn]}]},
        },
        "Stages": [
            {
                "Name": SOURCE_STAGE,
                "Actions": [{
                    "Name": "Github",
                    "ActionTypeId": _action_type("Source", "CodeStarSourceConnection"),
                    "Namespace": "SourceVariables",
                    "Configuration": {
                        "ConnectionArn": connection_arn,
                        "FullRepositoryId": f"{pipeline.owner}/{config.source_repository}",
                        "BranchName": pipeline.branch,
                        "DetectChanges": pipeline.trigger_on_push,
                    },
                    "OutputArtifacts": [{"Name": source_artifact}],
                }],
            },
            {
                "Name": BUILD_STAGE,
                "Actions": [{
                    "Name": BUILD_STAGE,
                    "ActionTypeId": _action_type("Build", "CodeBuild"),
                    "Configuration": {"ProjectName": project.ref},
                    "InputArtifacts": [{"Name": source_artifact}],
                    "OutputArtifacts": [{"Name": build_artifact}],
                }],
            },
            {
                "Name": APPROVAL_STAGE,
                "Actions": [{
                    "Name": f"{repo}-approval",
                    "ActionTypeId": _action_type("Approval", "Manual"),
                }],
            },
            {
                "Name": DEPLOY_STAGE,
                "Actions": [{
                    "Name": "Deploy",
                    "ActionTypeId": _action_type("Deploy", "ECS"),
                    "Configuration": {
                        "ClusterName": cluster_name,
                        "ServiceName": config.service.service_name,
                        "DeploymentTimeout": str(pipeline.deploy_timeout_minutes),
                    },
                    "InputArtifacts": [{"Name": build_artifact}],
                }],
            },
        ],
    })

    stack.resource(f"{name}NotificationRule", "AWS::CodeStarNotifications::NotificationRule", {
        "Name": f"{repo}-pipeline-notification-rule",
        "DetailType": "FULL",
        "Status": "ENABLED",
        "EventTypeIds": [event.value for event in FailureEventType],
        "Resource": join("arn:aws:codepipeline:", REGION, ":", ACCOUNT_ID, ":", repo),
        "Targets": [{"TargetType": "SNS", "TargetAddress": topic_arn}],
    }, depends_on=[f"{name}Pipeline"])

    return stack


def _assume_role(service: str) -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    }


def _action_type(category: str, provider: str) -> dict:
    return {"Category": category, "Owner": "AWS", "Provider": provider, "Version": "1"}
