"""
ServiceResourcesStack and ServiceStack: the container registry of the
service, and the ECS service with its routing and alarms.
"""

import json

from stratus.config import DeploymentConfig
from stratus.core import App, Stack
from stratus.pipeline.versioning import SEED_TAG
from stratus.topology.network import ACCOUNT_ID, REGION, join

SERVICE_RESOURCES_STACK = "ServiceResourcesStack"
SERVICE_STACK = "ServiceStack"


def ecr_lifecycle_policy(image_count: int) -> dict:
    """Lifecycle policy that expires all but the latest ``image_count`` images."""
    return {
        "rules": [{
            "rulePriority": 1,
            "description": f"This rule is used to retain only the latest {image_count} docker images",
            "selection": {
                "tagStatus": "any",
                "countType": "imageCountMoreThan",
                "countNumber": image_count,
            },
            "action": {"type": "expire"},
        }],
    }


def declare_service_resources_stack(app: App, config: DeploymentConfig) -> Stack:
    resources = config.service_resources
    stack = app.declare_stack(
        SERVICE_RESOURCES_STACK,
        config=resources.model_dump(),
        tags={"application-name": "ServiceResources"},
        description="Container registry of the service",
    )

    properties = {
        "RepositoryName": resources.ecr_repo_name,
        "ImageScanningConfiguration": {"ScanOnPush": resources.scan_on_push},
        "ImageTagMutability": "IMMUTABLE" if resources.immutable_tags else "MUTABLE",
    }
    if resources.image_count:
        properties["LifecyclePolicy"] = {
            "LifecyclePolicyText": json.dumps(ecr_lifecycle_policy(resources.image_count)),
        }
    stack.resource("DemoServiceEcrRepo", "AWS::ECR::Repository", properties)
    return stack


def declare_service_stack(app: App, config: DeploymentConfig) -> Stack:
    """
    Declare the ECS service.

    The task definition starts on ``service.image_version``; later images
    are rolled out by the delivery pipeline, which registers new revisions
    outside this stack.
    """
    service = config.service
    stack = app.declare_stack(
        SERVICE_STACK,
        config=service.model_dump(),
        tags={"application-name": "Service"},
        description=f"ECS service {service.service_name}",
    )

    cluster_name = stack.import_value("PrimaryWorkloadClusterName")
    topic_arn = stack.import_value("NotificationTopicArn")
    api_id = stack.import_value("primaryHttpApiId")

    log_group = stack.resource("ServiceLogGroup", "AWS::Logs::LogGroup", {
        "LogGroupName": service.log_group_name,
        "RetentionInDays": service.log_retention_days,
    })

    execution_role = stack.resource("DemoEcsTaskExecutionRole", "AWS::IAM::Role", {
        "AssumeRolePolicyDocument": {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"Service": "ecs-tasks.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }],
        },
        "ManagedPolicyArns": [service.task_execution_policy_arn],
    })

    image = join(
        ACCOUNT_ID, ".dkr.ecr.", REGION, ".amazonaws.com/",
        config.service_resources.ecr_repo_name, ":", service.image_version or SEED_TAG,
    )
    task_definition = stack.resource("DemoEcsTaskDefinition", "AWS::ECS::TaskDefinition", {
        "Family": service.task_family,
        "NetworkMode": "bridge",
        "ExecutionRoleArn": execution_role.attr("Arn"),
        "ContainerDefinitions": [{
            "Name": service.container_name,
            "Image": image,
            "Cpu": service.container_cpu,
            "Memory": service.container_memory_hard_limit_mib,
            "MemoryReservation": service.container_memory_soft_limit_mib,
            "PortMappings": [{"ContainerPort": service.container_port}],
            "LogConfiguration": {
                "LogDriver": "awslogs",
                "Options": {
                    "awslogs-group": log_group.ref,
                    "awslogs-region": REGION,
                    "awslogs-stream-prefix": service.log_stream_prefix,
                },
            },
        }],
    })

    target_group = stack.resource("DemoServiceTG", "AWS::ElasticLoadBalancingV2::TargetGroup", {
        "Name": service.target_group_name,
        "IpAddressType": "ipv4",
        "Protocol": "HTTP",
        "Port": 80,
        "TargetType": "instance",
        "VpcId": stack.import_value("PrimaryVpcId"),
        "HealthCheckPath": service.health_check_path,
    })

    ecs_service = stack.resource("DemoService", "AWS::ECS::Service", {
        "ServiceName": service.service_name,
        "Cluster": stack.import_value("PrimaryWorkloadClusterArn"),
        "TaskDefinition": task_definition.ref,
        "CapacityProviderStrategy": [{
            "CapacityProvider": stack.import_value("PrimaryCapacityProviderName"),
            "Base": service.min_task_count,
            "Weight": service.max_task_count,
        }],
        "PlacementStrategies": [{"Type": "binpack", "Field": "cpu"}],
        "LoadBalancers": [{
            "TargetGroupArn": target_group.ref,
            "ContainerName": service.container_name,
            "ContainerPort": service.container_port,
        }],
        "HealthCheckGracePeriodSeconds": service.health_check_grace_period,
    }, depends_on=["ForwardToDemoService"])

    stack.resource("ForwardToDemoService", "AWS::ElasticLoadBalancingV2::ListenerRule", {
        "ListenerArn": stack.import_value("PrimaryInternalAlbListenerArn"),
        "Priority": service.listener_rule_priority,
        "Conditions": [{
            "Field": "path-pattern",
            "PathPatternConfig": {"Values": [service.listener_path_pattern]},
        }],
        "Actions": [{"Type": "forward", "TargetGroupArn": target_group.ref}],
    })

    for logical_id, metric, threshold, label in (
        ("CpuAlarm", "CPUUtilization", service.cpu_alarm_threshold, "cpu"),
        ("MemoryAlarm", "MemoryUtilization", service.memory_alarm_threshold, "memory"),
    ):
        stack.resource(logical_id, "AWS::CloudWatch::Alarm", {
            "AlarmName": f"{service.service_name.lower()}-{label}-metrics",
            "AlarmDescription": f"Notifies when the {label} reaches the maximum threshold of {threshold}%.",
            "Namespace": "AWS/ECS",
            "MetricName": metric,
            "Statistic": "Maximum",
            "Period": 60,
            "EvaluationPeriods": 1,
            "DatapointsToAlarm": 1,
            "Threshold": threshold,
            "ComparisonOperator": "GreaterThanOrEqualToThreshold",
            "ActionsEnabled": True,
            "AlarmActions": [topic_arn],
            "Dimensions": [
                {"Name": "ServiceName", "Value": ecs_service.attr("Name")},
                {"Name": "ClusterName", "Value": cluster_name},
            ],
        })

    integration = stack.resource("DemoServiceIntegration", "AWS::ApiGatewayV2::Integration", {
        "ApiId": api_id,
        "IntegrationType": "HTTP_PROXY",
        "IntegrationMethod": "ANY",
        "IntegrationUri": stack.import_value("PrimaryInternalAlbListenerArn"),
        "ConnectionType": "VPC_LINK",
        "ConnectionId": stack.import_value("PrimaryVpcLinkId"),
        "PayloadFormatVersion": "1.0",
    })

    authorizer_id = stack.import_value("PrimaryHttpApiCognitoAuthorizerId")
    for i, route_key in enumerate(service.api_routes, start=1):
        stack.resource(f"DemoServiceRoute{i}", "AWS::ApiGatewayV2::Route", {
            "ApiId": api_id,
            "RouteKey": route_key,
            "Target": join("integrations/", integration.ref),
            "AuthorizationType": "JWT",
            "AuthorizerId": authorizer_id,
        })

    return stack
