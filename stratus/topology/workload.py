"""
WorkloadInfraStack: the ECS cluster and the EC2 capacity it schedules on.
"""

from stratus.config import DeploymentConfig
from stratus.core import App, Stack
from stratus.topology.network import private_subnet_export

WORKLOAD_STACK = "WorkloadInfraStack"


def declare_workload_stack(app: App, config: DeploymentConfig) -> Stack:
    """Declare the workload cluster, its instance profile, launch template and capacity provider."""
    workload = config.workload
    stack = app.declare_stack(
        WORKLOAD_STACK,
        config=workload.model_dump(),
        tags={"application-name": "WorkloadInfra"},
        description="Primary ECS workload cluster",
    )

    workload_sg = stack.import_value("PrimaryPrivateWorkloadSGId")
    subnets = [
        stack.import_value(private_subnet_export(i))
        for i in range(1, len(config.network.availability_zones) + 1)
    ]

    cluster = stack.resource("PrimaryWorkloadCluster", "AWS::ECS::Cluster", {
        "ClusterName": workload.cluster_name,
        "ServiceConnectDefaults": {"Namespace": workload.service_connect_namespace},
    })
    stack.export("PrimaryWorkloadClusterArn", cluster.attr("Arn"), description="Primary Workload Cluster Arn")
    stack.export("PrimaryWorkloadClusterName", cluster.ref, description="Primary Workload Cluster Name")

    role = stack.resource("PrimaryWorkloadInstanceProfileRole", "AWS::IAM::Role", {
        "RoleName": "PrimaryWorkloadInstanceProfileRole",
        "Description": "Provide access to Register and Deregister EC2 Instance with ECS Cluster",
        "AssumeRolePolicyDocument": {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"Service": "ec2.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }],
        },
        "ManagedPolicyArns": ["arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"],
        "Policies": [{
            "PolicyName": "PrimaryWorkloadInstanceAccess",
            "PolicyDocument": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Action": [
                            "ecs:DeregisterContainerInstance",
                            "ecs:RegisterContainerInstance",
                            "ecs:Submit*",
                        ],
                        "Resource": cluster.attr("Arn"),
                    },
                    {
                        "Effect": "Allow",
                        "Action": ["ecs:Poll", "ecs:StartTelemetrySession"],
                        "Resource": "*",
                        "Condition": {"ArnEquals": {"ecs:cluster": cluster.attr("Arn")}},
                    },
                    {
                        "Effect": "Allow",
                        "Action": [
                            "ecr:GetAuthorizationToken",
                            "ecr:BatchGetImage",
                            "ec2:DescribeTags",
                            "ecr:BatchCheckLayerAvailability",
                            "ecr:GetDownloadUrlForLayer",
                            "ecs:TagResource",
                            "ecs:DiscoverPollEndpoint",
                            "logs:CreateLogStream",
                            "logs:PutLogEvents",
                        ],
                        "Resource": "*",
                    },
                ],
            },
        }],
    })
    profile = stack.resource("PrimaryWorkloadInstanceProfile", "AWS::IAM::InstanceProfile", {
        "InstanceProfileName": "PrimaryWorkloadInstanceProfile",
        "Roles": [role.ref],
    })

    template_data = {
        "ImageId": workload.image_id,
        "InstanceType": workload.instance_type,
        "SecurityGroupIds": [workload_sg],
        "IamInstanceProfile": {"Arn": profile.attr("Arn")},
        "BlockDeviceMappings": [{
            "DeviceName": "/dev/xvda",
            "Ebs": {
                "DeleteOnTermination": True,
                "Encrypted": True,
                "VolumeSize": workload.volume_size,
                "VolumeType": "gp3",
                "Iops": 3000,
                "Throughput": 125,
            },
        }],
    }
    if workload.user_data:
        template_data["UserData"] = workload.user_data

    template = stack.resource("PrivatePrimaryAsgLaunchTemplate", "AWS::EC2::LaunchTemplate", {
        "LaunchTemplateName": "PrivatePrimaryAsgLaunchTemplate",
        "LaunchTemplateData": template_data,
    })

    asg = stack.resource("PrivatePrimaryInstanceAsg", "AWS::AutoScaling::AutoScalingGroup", {
        "AutoScalingGroupName": "PrivatePrimaryInstanceAsg",
        "MinSize": str(workload.min_size),
        "MaxSize": str(workload.max_size),
        "CapacityRebalance": True,
        "NewInstancesProtectedFromScaleIn": True,
        "VPCZoneIdentifier": subnets,
        "MixedInstancesPolicy": {
            "InstancesDistribution": {"OnDemandPercentageAboveBaseCapacity": 100},
            "LaunchTemplate": {
                "LaunchTemplateSpecification": {
                    "LaunchTemplateName": "PrivatePrimaryAsgLaunchTemplate",
                    "Version": template.attr("LatestVersionNumber"),
                },
            },
        },
        "Tags": [{"Key": "AmazonECSManaged", "Value": "true", "PropagateAtLaunch": True}],
    })

    provider = stack.resource("PrivatePrimaryCapacityProvider", "AWS::ECS::CapacityProvider", {
        "Name": workload.capacity_provider_name,
        "AutoScalingGroupProvider": {
            "AutoScalingGroupArn": asg.ref,
            "ManagedScaling": {"Status": "ENABLED", "TargetCapacity": workload.target_capacity},
            "ManagedTerminationProtection": "ENABLED",
        },
    })
    stack.export("PrimaryCapacityProviderName", provider.ref,
                 description="Private Primary Capacity Provider Name")

    stack.resource("AssociateCapacityProviders", "AWS::ECS::ClusterCapacityProviderAssociations", {
        "Cluster": cluster.ref,
        "CapacityProviders": [provider.ref],
        "DefaultCapacityProviderStrategy": [{
            "CapacityProvider": provider.ref,
            "Base": 0,
            "Weight": 1,
        }],
    })

    return stack
