"""
Configuration of the service stacks and of its delivery pipeline.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServiceResourcesConfig(BaseModel):
    """
    Container registry of the service.

    Example:
        resources = ServiceResourcesConfig(ecr_repo_name="demo-service-ecr-repo", image_count=20)
    """

    model_config = ConfigDict(extra="forbid")

    ecr_repo_name: str = Field(..., description="ECR repository name")
    image_count: int | None = Field(
        default=20, ge=1, description="Images kept by the lifecycle policy; None keeps all"
    )
    scan_on_push: bool = Field(default=True, description="Scan images when pushed")
    immutable_tags: bool = Field(default=True, description="Reject pushes that overwrite a tag")


class ServiceConfig(BaseModel):
    """ECS service, routing and alarms of ServiceStack."""

    model_config = ConfigDict(extra="forbid")

    service_name: str = Field(default="DemoService", description="ECS service name")
    container_name: str = Field(default="DemoContainer", description="Container name in the task")
    task_family: str = Field(default="DemoTaskDefinition", description="Task definition family")
    image_version: str | None = Field(
        default=None, description="Image tag of the first deployment; later tags come from the pipeline"
    )
    min_task_count: int = Field(default=1, ge=0, description="Capacity provider base")
    max_task_count: int = Field(default=5, ge=1, description="Capacity provider weight")
    container_cpu: int = Field(default=1024, ge=1, description="CPU units")
    container_memory_hard_limit_mib: int = Field(default=1959, ge=1, description="Hard memory limit")
    container_memory_soft_limit_mib: int = Field(default=1959, ge=1, description="Memory reservation")
    container_port: int = Field(default=8080, ge=1, le=65535, description="Container port")
    log_group_name: str = Field(default="Demo/LogGroup", description="Container log group")
    log_stream_prefix: str = Field(default="Demo", description="awslogs stream prefix")
    log_retention_days: int = Field(default=3, ge=1, description="Container log retention")
    target_group_name: str = Field(default="DemoServiceTG", description="Target group name")
    health_check_path: str = Field(default="/api/demo/v1/health", description="Target group health check")
    listener_path_pattern: str = Field(
        default="/api/demo-service/*", description="Internal ALB path routed to the service"
    )
    listener_rule_priority: int = Field(default=1, ge=1, description="Internal ALB listener rule priority")
    api_routes: list[str] = Field(
        default_factory=lambda: ["GET /api/demo-service/v1/health"],
        description="HTTP API routes integrated with the service, behind the Cognito authorizer",
    )
    task_execution_policy_arn: str = Field(
        default="arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy",
        description="Managed policy of the task execution role",
    )
    cpu_alarm_threshold: float = Field(default=85, gt=0, le=100, description="Percent")
    memory_alarm_threshold: float = Field(default=75, gt=0, le=100, description="Percent")
    health_check_grace_period: int = Field(default=60, ge=0, description="Seconds")

    @model_validator(mode="after")
    def _memory_limits(self) -> 'ServiceConfig':
        if self.container_memory_soft_limit_mib > self.container_memory_hard_limit_mib:
            raise ValueError("container memory soft limit exceeds the hard limit")
        return self


class PipelineConfig(BaseModel):
    """Delivery pipeline of PipelineStack."""

    model_config = ConfigDict(extra="forbid")

    owner: str = Field(default="Demo", description="Owner of the connected repository")
    repository: str | None = Field(
        default=None, description="Source repository; defaults to the ECR repository name"
    )
    branch: str = Field(default="main", description="Branch fetched by the Source stage")
    trigger_on_push: bool = Field(default=False, description="Start runs on push")
    notification_topic_arn: str | None = Field(
        default=None,
        description="SNS topic receiving failure events; defaults to the PipelineSnsArn export",
    )
    kms_key_id: str = Field(default="", description="KMS key that encrypts the environment blob")
    encrypted_env_path: str = Field(
        default="/.enc.env.production", description="Encrypted environment file in the repository"
    )
    install_commands: list[str] = Field(
        default_factory=lambda: ["npm install -g yarn"], description="Build install phase"
    )
    build_args: dict[str, str] = Field(
        default_factory=lambda: {"CICD_USER_PAT": "$GITHUB_TOKEN", "NODE_VERSION": "$NODE_VERSION"},
        description="docker build --build-arg values",
    )
    parameter_store: dict[str, str] = Field(
        default_factory=lambda: {"GITHUB_TOKEN": "/github/token"},
        description="Build environment variables read from SSM Parameter Store",
    )
    build_compute_type: str = Field(default="BUILD_GENERAL1_LARGE", description="CodeBuild compute type")
    build_image: str = Field(
        default="aws/codebuild/amazonlinux2-aarch64-standard:3.0", description="CodeBuild image"
    )
    build_timeout_minutes: int = Field(default=60, ge=5, le=480, description="Build timeout")
    build_log_retention_days: int = Field(default=3, ge=1, description="Build log retention")
    deploy_timeout_minutes: int = Field(default=60, ge=1, description="ECS deployment timeout")
    artifact_retention_runs: int = Field(default=20, ge=1, description="Runs whose artifacts are kept")
