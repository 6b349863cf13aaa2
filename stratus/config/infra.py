"""
Configuration of the shared infrastructure stacks.

Defaults reproduce the demo topology: one VPC in ap-south-1 with three
public and three private subnets, an ECS cluster on Graviton instances,
a regional WAF and a metrics notification topic.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AccountConfig(BaseModel):
    """
    Target AWS account.

    Example:
        account = AccountConfig(account_id="123456789012", region="ap-south-1")
    """

    model_config = ConfigDict(extra="forbid")

    account_id: str = Field(default="", description="AWS account ID")
    region: str = Field(default="ap-south-1", description="AWS region")
    profile: str | None = Field(default=None, description="AWS profile name")


class NetworkConfig(BaseModel):
    """VPC, load balancers and HTTP API of NetworkInfraStack."""

    model_config = ConfigDict(extra="forbid")

    vpc_cidr: str = Field(default="10.0.0.0/16", description="VPC CIDR block")
    availability_zones: list[str] = Field(
        default_factory=lambda: ["ap-south-1a", "ap-south-1b", "ap-south-1c"],
        description="One public and one private subnet per zone",
    )
    public_subnet_cidrs: list[str] = Field(
        default_factory=lambda: ["10.0.0.0/25", "10.0.0.128/25", "10.0.1.0/25"],
        description="Public subnet CIDR blocks, in zone order",
    )
    private_subnet_cidrs: list[str] = Field(
        default_factory=lambda: ["10.0.2.0/24", "10.0.3.0/24", "10.0.4.0/24"],
        description="Private resource subnet CIDR blocks, in zone order",
    )
    flow_log_retention_days: int = Field(default=1, ge=1, description="VPC flow log retention")
    external_alb_log_bucket: str = Field(
        default="webapp-alb-access-logs", description="Access log bucket of the external ALB"
    )
    internal_alb_log_bucket: str = Field(
        default="internal-alb-access-logs", description="Access log bucket of the internal ALB"
    )
    alb_log_expiration_days: int = Field(default=30, ge=1, description="Access log expiration")
    elb_log_delivery_principal: str = Field(
        default="arn:aws:iam::718504428378:root",
        description="Regional ELB account allowed to write access logs",
    )
    certificate_arns: list[str] = Field(
        default_factory=list, description="Certificates of the external ALB HTTPS listener"
    )
    ssl_policy: str = Field(
        default="ELBSecurityPolicy-TLS13-1-2-2021-06", description="External listener SSL policy"
    )
    internal_alb_idle_timeout: int = Field(default=900, ge=1, description="Seconds")
    api_domain: str = Field(default="api.demo.in", description="Custom domain of the HTTP API")
    api_domain_certificate_arn: str = Field(default="", description="Certificate of the API domain")
    api_stage: str = Field(default="prod", description="HTTP API stage name")
    api_access_log_retention_days: int = Field(default=7, ge=1, description="API access log retention")
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:8888",
            "http://localhost:3333",
            "http://localhost:4444",
        ],
        description="Origins allowed by the HTTP API CORS configuration",
    )

    @model_validator(mode="after")
    def _subnets_match_zones(self) -> 'NetworkConfig':
        zones = len(self.availability_zones)
        if zones == 0:
            raise ValueError("at least one availability zone is required")
        if len(self.public_subnet_cidrs) != zones or len(self.private_subnet_cidrs) != zones:
            raise ValueError(
                f"expected {zones} public and {zones} private subnet CIDRs, "
                f"got {len(self.public_subnet_cidrs)} and {len(self.private_subnet_cidrs)}"
            )
        return self


class WorkloadConfig(BaseModel):
    """ECS cluster and its EC2 capacity of WorkloadInfraStack."""

    model_config = ConfigDict(extra="forbid")

    cluster_name: str = Field(default="PrimaryWorkloadCluster", description="ECS cluster name")
    service_connect_namespace: str = Field(default="internal.service", description="Service Connect namespace")
    image_id: str = Field(default="ami-081253476e0f149f9", description="ECS optimized AMI")
    instance_type: str = Field(default="c6g.xlarge", description="Container instance type")
    min_size: int = Field(default=0, ge=0, description="Auto scaling group minimum size")
    max_size: int = Field(default=5, ge=1, description="Auto scaling group maximum size")
    volume_size: int = Field(default=30, ge=1, description="Root volume size in GiB")
    user_data: str = Field(default="", description="Base64 encoded instance user data")
    capacity_provider_name: str = Field(
        default="PrivatePrimaryCapacityProvider", description="ECS capacity provider name"
    )
    target_capacity: int = Field(default=100, ge=1, le=100, description="Managed scaling target")

    @model_validator(mode="after")
    def _size_bounds(self) -> 'WorkloadConfig':
        if self.max_size < self.min_size:
            raise ValueError("max_size must not be smaller than min_size")
        return self


class SecurityConfig(BaseModel):
    """Regional WAF web ACL of SecurityStack."""

    model_config = ConfigDict(extra="forbid")

    web_acl_name: str = Field(default="PrimaryWebAcl", description="Web ACL name")
    allowed_countries: list[str] = Field(
        default_factory=lambda: ["IN"], description="Requests from other countries are blocked"
    )
    managed_rule_groups: list[str] = Field(
        default_factory=lambda: ["AWSManagedRulesLinuxRuleSet", "AWSManagedRulesUnixRuleSet"],
        description="AWS managed rule groups, in priority order",
    )
    blocked_uri_substrings: list[str] = Field(
        default_factory=lambda: ["/.env"], description="URI paths containing these are blocked"
    )
    log_retention_days: int = Field(default=7, ge=1, description="WAF log retention")


class NotificationConfig(BaseModel):
    """Metrics notification topic of SnsNotificationStack."""

    model_config = ConfigDict(extra="forbid")

    topic_name: str = Field(default="metrics-notification", description="SNS topic name")
    email: str | None = Field(default=None, description="Email subscribed to the topic")
