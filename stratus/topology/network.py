"""
NetworkInfraStack: VPC, subnets, security groups, load balancers and the
HTTP API with its Cognito authorizer and VPC link.
"""

import json

from stratus.config import DeploymentConfig
from stratus.core import App, Stack

NETWORK_STACK = "NetworkInfraStack"

ALLOW_ALL_CIDR = "0.0.0.0/0"
ACCOUNT_ID = {"Ref": "AWS::AccountId"}
REGION = {"Ref": "AWS::Region"}


def name_tag(value: str) -> list[dict[str, str]]:
    return [{"Key": "Name", "Value": value}]


def join(*parts) -> dict:
    """CloudFormation string concatenation."""
    return {"Fn::Join": ["", list(parts)]}


def private_subnet_export(index: int) -> str:
    """Export key of the private resource subnet in zone ``index`` (1-based)."""
    return f"PrivateResourceSubnet{index}Id"


def declare_network_stack(app: App, config: DeploymentConfig) -> Stack:
    """
    Declare the primary network.

    The Cognito user pool and its client are created outside this app and
    imported by name.
    """
    network = config.network
    stack = app.declare_stack(
        NETWORK_STACK,
        config=network.model_dump(),
        tags={"application-name": "NetworkInfra"},
        description="Primary VPC, load balancers and HTTP API",
    )

    vpc = stack.resource("PrimaryVpc", "AWS::EC2::VPC", {
        "CidrBlock": network.vpc_cidr,
        "EnableDnsHostnames": True,
        "EnableDnsSupport": True,
        "InstanceTenancy": "default",
        "Tags": name_tag("primary-network"),
    })
    stack.export("PrimaryVpcId", vpc.attr("VpcId"), description="Primary VPC Id")
    vpc_id = vpc.attr("VpcId")

    _declare_flow_logs(stack, vpc_id, network.flow_log_retention_days)

    nacl = stack.resource("PrimaryCentralNacl", "AWS::EC2::NetworkAcl", {
        "VpcId": vpc_id,
        "Tags": name_tag("Primary/VPC/NACL"),
    })
    for logical_id, egress in (("PrimaryCentralNaclIngress1", False), ("PrimaryCentralNaclEgress1", True)):
        stack.resource(logical_id, "AWS::EC2::NetworkAclEntry", {
            "NetworkAclId": nacl.attr("Id"),
            "Protocol": -1,
            "RuleAction": "allow",
            "RuleNumber": 100,
            "CidrBlock": ALLOW_ALL_CIDR,
            "Egress": egress,
        })

    gateway = stack.resource("PrimaryInternetGateway", "AWS::EC2::InternetGateway", {
        "Tags": name_tag("Primary/VPC/IGW"),
    })
    stack.resource("AttachIGWToVpc", "AWS::EC2::VPCGatewayAttachment", {
        "VpcId": vpc_id,
        "InternetGatewayId": gateway.attr("InternetGatewayId"),
    })

    public_subnets = []
    private_subnets = []
    private_route_tables = []
    zones = zip(network.availability_zones, network.public_subnet_cidrs, network.private_subnet_cidrs)
    for i, (zone, public_cidr, private_cidr) in enumerate(zones, start=1):
        public_table = stack.resource(f"PrimaryPublicRouteTable{i}", "AWS::EC2::RouteTable", {
            "VpcId": vpc_id,
            "Tags": name_tag(f"Primary/VPC/RouteTable/Public-{i}"),
        })
        private_table = stack.resource(f"PrimaryPrivateRouteTable{i}", "AWS::EC2::RouteTable", {
            "VpcId": vpc_id,
            "Tags": name_tag(f"Primary/VPC/RouteTable/Private-{i}"),
        })
        private_route_tables.append(private_table.attr("RouteTableId"))

        public = stack.resource(f"PublicSubnet{i}", "AWS::EC2::Subnet", {
            "VpcId": vpc_id,
            "AvailabilityZone": zone,
            "CidrBlock": public_cidr,
            "MapPublicIpOnLaunch": True,
            "Tags": name_tag(f"Primary/VPC/Subnet/Public-{i}"),
        })
        private = stack.resource(f"PrivateResourceSubnet{i}", "AWS::EC2::Subnet", {
            "VpcId": vpc_id,
            "AvailabilityZone": zone,
            "CidrBlock": private_cidr,
            "Tags": name_tag(f"Primary/VPC/Subnet/PrivateResource-{i}"),
        })
        stack.export(
            private_subnet_export(i),
            private.attr("SubnetId"),
            description=f"The ID of Primary Private Workload Subnet-{i}",
        )
        public_subnets.append(public.attr("SubnetId"))
        private_subnets.append(private.attr("SubnetId"))

        for kind, subnet, table in (("Public", public, public_table), ("PrivateResource", private, private_table)):
            stack.resource(f"{kind}Sub{i}NaclAssociate", "AWS::EC2::SubnetNetworkAclAssociation", {
                "NetworkAclId": nacl.attr("Id"),
                "SubnetId": subnet.attr("SubnetId"),
            })
            stack.resource(f"{kind}Sub{i}RouteAssociate", "AWS::EC2::SubnetRouteTableAssociation", {
                "SubnetId": subnet.attr("SubnetId"),
                "RouteTableId": table.attr("RouteTableId"),
            })

        stack.resource(f"PublicRoute{i}Entry1", "AWS::EC2::Route", {
            "RouteTableId": public_table.attr("RouteTableId"),
            "DestinationCidrBlock": ALLOW_ALL_CIDR,
            "GatewayId": gateway.attr("InternetGatewayId"),
        }, depends_on=["AttachIGWToVpc"])

    groups = _declare_security_groups(stack, vpc_id, network.vpc_cidr)

    stack.resource("S3GatewayEndpoint", "AWS::EC2::VPCEndpoint", {
        "ServiceName": join("com.amazonaws.", REGION, ".s3"),
        "VpcId": vpc_id,
        "VpcEndpointType": "Gateway",
        "RouteTableIds": private_route_tables,
    })

    _declare_load_balancers(stack, config, groups, public_subnets, private_subnets)
    _declare_http_api(stack, config, groups, private_subnets)

    return stack


def _declare_flow_logs(stack: Stack, vpc_id, retention_days: int) -> None:
    logs = stack.resource("PrimaryVpcLogs", "AWS::Logs::LogGroup", {
        "LogGroupName": "Primary/VPC/FlowLogs",
        "RetentionInDays": retention_days,
    })
    role = stack.resource("PrimaryNetworkFlowAccessRole", "AWS::IAM::Role", {
        "RoleName": "PrimaryNetworkFlowAccessRole",
        "Description": "Provides access to VPC for CloudWatch Logs",
        "AssumeRolePolicyDocument": {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"Service": "vpc-flow-logs.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }],
        },
        "Policies": [{
            "PolicyName": "PrimaryNetworkFlowAccessRole",
            "PolicyDocument": {
                "Version": "2012-10-17",
                "Statement": [{
                    "Effect": "Allow",
                    "Action": ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
                    "Resource": logs.attr("Arn"),
                }],
            },
        }],
    })
    stack.resource("PrimaryNetworkFlowLogsAttach", "AWS::EC2::FlowLog", {
        "ResourceId": vpc_id,
        "ResourceType": "VPC",
        "LogGroupName": "Primary/VPC/FlowLogs",
        "DeliverLogsPermissionArn": role.attr("Arn"),
        "TrafficType": "ALL",
    }, depends_on=["PrimaryVpcLogs"])


def _declare_security_groups(stack: Stack, vpc_id, vpc_cidr: str) -> dict[str, object]:
    """Declare the four security groups and their rules; returns group ids by role."""
    definitions = {
        "workload": ("PrimaryPrivateWorkloadSG", "Private-Workload", "Security Group for Private ECS Instances and Services"),
        "external_alb": ("PrimaryExternalAlbSG", "External-ALB", "Security Group for Internet facing Application Load Balancer"),
        "internal_alb": ("PrimaryInternalAlbSG", "Internal-ALB", "Security Group for Internal Application Load Balancer"),
        "vpc_link": ("PrimaryVpcLinkSG", "Vpc-Link", "Security Group for Vpc Link"),
    }
    groups = {}
    for role, (logical_id, suffix, description) in definitions.items():
        group = stack.resource(logical_id, "AWS::EC2::SecurityGroup", {
            "GroupName": f"Primary/VPC/SG/{suffix}",
            "GroupDescription": description,
            "VpcId": vpc_id,
            "Tags": name_tag(f"Primary/VPC/SG/{suffix}"),
        })
        groups[role] = group.attr("GroupId")

    stack.export("PrimaryPrivateWorkloadSGId", groups["workload"],
                 description="The ID of Primary Private Workload Security Group")
    stack.export("PrimaryExternalAlbSGId", groups["external_alb"],
                 description="The ID of Primary External Alb Security Group")
    stack.export("PrimaryInternalAlbSGId", groups["internal_alb"],
                 description="The ID of Primary Internal Alb Security Group")

    # (logical id, resource type, group, port range, peer property, peer, description)
    rules = [
        ("PrivateWorkloadSgInbound1", "Ingress", "workload", (0, 65535), "SourceSecurityGroupId",
         groups["external_alb"], "Allow incoming traffic from External ALB to Private ECS Instance and Workload"),
        ("PrivateWorkloadSgInbound2", "Ingress", "workload", (0, 65535), "SourceSecurityGroupId",
         groups["internal_alb"], "Allow incoming traffic from Internal ALB to Private ECS Instance and Workload"),
        ("PrivateWorkloadSgOutbound1", "Egress", "workload", (80, 80), "DestinationSecurityGroupId",
         groups["internal_alb"], "Allow outgoing HTTP traffic from Private ECS Instance and Service to Internal ALB"),
        ("ExternalAlbSgInbound1", "Ingress", "external_alb", (443, 443), "CidrIp",
         ALLOW_ALL_CIDR, "Allow Internet access for IPV4 over HTTPS"),
        ("ExternalAlbSgOutbound1", "Egress", "external_alb", (443, 443), "CidrIp",
         ALLOW_ALL_CIDR, "Allow outgoing HTTPS traffic from External ALB"),
        ("ExternalAlbSgOutbound2", "Egress", "external_alb", (0, 65535), "DestinationSecurityGroupId",
         groups["workload"], "Allow outgoing Private traffic from External ALB to Private Instance"),
        ("InternalAlbSgInbound1", "Ingress", "internal_alb", (80, 80), "CidrIp",
         vpc_cidr, "Allow incoming main traffic from Network"),
        ("InternalAlbSgOutbound1", "Egress", "internal_alb", (0, 65535), "DestinationSecurityGroupId",
         groups["workload"], "Allow outgoing Private traffic from Internal ALB to Private Instance and Workload"),
    ]
    for logical_id, direction, group, (from_port, to_port), peer_key, peer, description in rules:
        stack.resource(logical_id, f"AWS::EC2::SecurityGroup{direction}", {
            "GroupId": groups[group],
            "IpProtocol": "tcp",
            "FromPort": from_port,
            "ToPort": to_port,
            peer_key: peer,
            "Description": description,
        })

    return groups


def _access_log_bucket(stack: Stack, logical_id: str, bucket_name: str, config: DeploymentConfig):
    network = config.network
    bucket = stack.resource(logical_id, "AWS::S3::Bucket", {
        "BucketName": bucket_name,
        "LifecycleConfiguration": {
            "Rules": [{
                "Id": f"delete-objects-{network.alb_log_expiration_days}-days",
                "Status": "Enabled",
                "ExpirationInDays": network.alb_log_expiration_days,
            }],
        },
    })
    log_prefix = join(bucket.attr("Arn"), "/AWSLogs/", ACCOUNT_ID, "/*")
    stack.resource(f"{logical_id}Policy", "AWS::S3::BucketPolicy", {
        "Bucket": bucket.ref,
        "PolicyDocument": {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": network.elb_log_delivery_principal},
                    "Action": "s3:PutObject",
                    "Resource": log_prefix,
                },
                {
                    "Effect": "Allow",
                    "Principal": {"Service": "delivery.logs.amazonaws.com"},
                    "Action": "s3:PutObject",
                    "Resource": log_prefix,
                    "Condition": {"StringEquals": {"s3:x-amz-acl": "bucket-owner-full-control"}},
                },
                {
                    "Effect": "Allow",
                    "Principal": {"Service": "delivery.logs.amazonaws.com"},
                    "Action": "s3:GetBucketAcl",
                    "Resource": bucket.attr("Arn"),
                },
            ],
        },
    })
    return bucket


def _fixed_bad_request() -> list[dict]:
    return [{
        "Type": "fixed-response",
        "FixedResponseConfig": {
            "StatusCode": "400",
            "ContentType": "text/plain",
            "MessageBody": "Bad Request",
        },
    }]


def _declare_load_balancers(stack: Stack, config: DeploymentConfig, groups, public_subnets, private_subnets) -> None:
    network = config.network

    external_logs = _access_log_bucket(stack, "PrimaryExternalAlbAccessLogBucket", network.external_alb_log_bucket, config)
    external = stack.resource("PrimaryExternalAlb", "AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "Name": "primary-external-alb",
        "Type": "application",
        "Scheme": "internet-facing",
        "IpAddressType": "ipv4",
        "SecurityGroups": [groups["external_alb"]],
        "Subnets": public_subnets,
        "LoadBalancerAttributes": [
            {"Key": "deletion_protection.enabled", "Value": "true"},
            {"Key": "access_logs.s3.enabled", "Value": "true"},
            {"Key": "access_logs.s3.bucket", "Value": external_logs.ref},
        ],
    }, depends_on=["PrimaryExternalAlbAccessLogBucketPolicy"])
    stack.export("PrimaryExternalAlbDns", external.attr("DNSName"),
                 description="The DNS name for PrimaryExternalAlb")
    stack.export("PrimaryExternalAlbArn", external.attr("LoadBalancerArn"),
                 description="The Arn for PrimaryExternalAlb")

    external_listener = stack.resource("PrimaryExternalAlbMainListener", "AWS::ElasticLoadBalancingV2::Listener", {
        "LoadBalancerArn": external.attr("LoadBalancerArn"),
        "Port": 443,
        "Protocol": "HTTPS",
        "SslPolicy": network.ssl_policy,
        "Certificates": [{"CertificateArn": arn} for arn in network.certificate_arns],
        "DefaultActions": _fixed_bad_request(),
    })
    stack.export("PrimaryExternalAlbMainListenerArn", external_listener.attr("ListenerArn"),
                 description="The Arn for Primary External Alb Main Listener")

    internal_logs = _access_log_bucket(stack, "PrimaryInternalAlbAccessLogBucket", network.internal_alb_log_bucket, config)
    internal = stack.resource("PrimaryInternalAlb", "AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "Name": "primary-internal-alb",
        "Type": "application",
        "Scheme": "internal",
        "IpAddressType": "ipv4",
        "SecurityGroups": [groups["internal_alb"]],
        "Subnets": private_subnets,
        "LoadBalancerAttributes": [
            {"Key": "deletion_protection.enabled", "Value": "true"},
            {"Key": "access_logs.s3.enabled", "Value": "true"},
            {"Key": "access_logs.s3.bucket", "Value": internal_logs.ref},
            {"Key": "idle_timeout.timeout_seconds", "Value": str(network.internal_alb_idle_timeout)},
        ],
    }, depends_on=["PrimaryInternalAlbAccessLogBucketPolicy"])
    stack.export("PrimaryInternalAlbDnsName", internal.attr("DNSName"),
                 description="The DNS name of Primary Internal ALB")
    stack.export("PrimaryInternalAlbArn", internal.attr("LoadBalancerArn"),
                 description="The ARN of Primary Internal ALB")

    internal_listener = stack.resource("PrimaryInternalAlbListener", "AWS::ElasticLoadBalancingV2::Listener", {
        "LoadBalancerArn": internal.attr("LoadBalancerArn"),
        "Port": 80,
        "Protocol": "HTTP",
        "DefaultActions": _fixed_bad_request(),
    })
    stack.export("PrimaryInternalAlbListenerArn", internal_listener.attr("ListenerArn"),
                 description="The ARN of Primary Internal Alb Listener")


def _declare_http_api(stack: Stack, config: DeploymentConfig, groups, private_subnets) -> None:
    network = config.network

    api = stack.resource("PrimaryHttpApi", "AWS::ApiGatewayV2::Api", {
        "Name": "PrimaryHttpApi",
        "ProtocolType": "HTTP",
        "CorsConfiguration": {
            "AllowCredentials": True,
            "AllowHeaders": ["Authorization", "content-type", "x-amz-content-sha256", "x-amz-date"],
            "AllowMethods": ["OPTIONS", "POST", "GET", "PUT", "DELETE"],
            "AllowOrigins": list(network.cors_allow_origins),
            "ExposeHeaders": ["flat-file-sequence-number"],
            "MaxAge": 86400,
        },
    })
    stack.export("primaryHttpApiId", api.ref, description="The Primary HTTP API Id")

    access_logs = stack.resource("PrimaryHttpApiAccessLogs", "AWS::Logs::LogGroup", {
        "LogGroupName": "Primary/APIGW/HTTP/AccessLog",
        "RetentionInDays": network.api_access_log_retention_days,
    })
    stack.resource("PrimaryHttpApiStage", "AWS::ApiGatewayV2::Stage", {
        "ApiId": api.ref,
        "StageName": network.api_stage,
        "AutoDeploy": True,
        "AccessLogSettings": {
            "DestinationArn": access_logs.attr("Arn"),
            "Format": json.dumps({
                "requestId": "$context.requestId",
                "path": "$context.path",
                "httpMethod": "$context.httpMethod",
                "status": "$context.status",
                "ip": "$context.identity.sourceIp",
                "cognitoStatus": "$context.authorizer.status",
                "cognitoError": "$context.authorizer.error",
                "cognitoLatency": "$context.authorizer.latency",
                "integrationStatus": "$context.integration.status",
                "integrationLatency": "$context.integration.latency",
                "user": "$context.authorizer.claims.username",
                "requestTime": "$context.requestTime",
            }),
        },
    })
    domain = stack.resource("PrimaryHttpApiDomainName", "AWS::ApiGatewayV2::DomainName", {
        "DomainName": network.api_domain,
        "DomainNameConfigurations": [{
            "CertificateArn": network.api_domain_certificate_arn,
            "CertificateName": "PrimaryHttpApiCertificate",
            "EndpointType": "REGIONAL",
            "SecurityPolicy": "TLS_1_2",
        }],
    })
    stack.resource("PrimaryHttpApiMapping", "AWS::ApiGatewayV2::ApiMapping", {
        "ApiId": api.ref,
        "Stage": network.api_stage,
        "DomainName": domain.ref,
    }, depends_on=["PrimaryHttpApiDomainName", "PrimaryHttpApiStage"])

    authorizer = stack.resource("PrimaryHttpApiCognitoAuthorizer", "AWS::ApiGatewayV2::Authorizer", {
        "Name": "PrimaryHttpApiCognitoAuthorizer-1",
        "ApiId": api.ref,
        "AuthorizerType": "JWT",
        "IdentitySource": ["$request.header.Authorization"],
        "JwtConfiguration": {
            "Audience": [stack.import_value("CognitoUserPoolClientId")],
            "Issuer": join("https://cognito-idp.", REGION, ".amazonaws.com/", stack.import_value("CognitoUserPoolId")),
        },
    })
    stack.export("PrimaryHttpApiCognitoAuthorizerId", authorizer.ref,
                 description="The Primary HTTP API Authorizer Id")

    vpc_link = stack.resource("PrimaryVpcLink", "AWS::ApiGatewayV2::VpcLink", {
        "Name": "PrimaryVpcLink",
        "SubnetIds": private_subnets,
        "SecurityGroupIds": [groups["vpc_link"]],
    })
    stack.export("PrimaryVpcLinkId", vpc_link.ref, description="The Id of the VPC Link")
