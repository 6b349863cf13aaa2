"""
stratus CLI - plan, synthesize and deploy the service topology.
"""

import json
import os
import sys
from datetime import timedelta
from typing import Any

import click

from stratus import __version__
from stratus.compilation import CloudFormationCompiler
from stratus.config import DeploymentConfig, load_config
from stratus.core import (
    Deployer,
    DeploymentReport,
    ExportRegistry,
    InMemoryBackend,
    InMemoryExportRegistry,
    Plan,
)
from stratus.core.errors import StratusError
from stratus.logging import configure_logging
from stratus.pipeline import ApprovalDecision, PipelineRun, PipelineState, latest_tag, next_image_tag
from stratus.topology import EXTERNAL_EXPORTS, build_app

PIPELINE_TOPIC_EXPORT = "PipelineSnsArn"


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default="WARNING", help="Log level (DEBUG, INFO, WARNING, ...)")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def cli(log_level: str, json_logs: bool):
    """
    stratus - multi-stack infrastructure and delivery pipeline for a
    containerized web service.
    """
    try:
        configure_logging(level=log_level, json_output=json_logs, app_name="stratus")
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--log-level") from e


@cli.command()
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--format", type=click.Choice(["text", "json", "mermaid"]), default="text")
def plan(config_file: str, format: str):
    """
    Validate the topology and show its deploy order.

    Example:
        stratus plan deploy.yaml
        stratus plan deploy.yaml --format mermaid
    """
    config = _load(config_file)
    deployment_plan = _plan(config)

    if format == "json":
        output = {
            "app": deployment_plan.app_name,
            "environment": deployment_plan.environment,
            "order": deployment_plan.order,
            "levels": deployment_plan.levels,
            "dag": deployment_plan.dag.to_dict(),
            "external_imports": {
                stack: [ref.key for ref in refs]
                for stack, refs in deployment_plan.external_imports.items()
            },
        }
        click.echo(json.dumps(output, indent=2))

    elif format == "mermaid":
        click.echo("```mermaid")
        click.echo("graph TD")
        for edge in deployment_plan.dag.edges:
            click.echo(f"  {edge.producer} --> {edge.consumer}")
        click.echo("```")

    else:
        click.echo(deployment_plan.visualize())


@cli.command()
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", default="./cdk.out", help="Output directory for templates")
@click.option("--format", type=click.Choice(["json", "yaml"]), default="json")
def synth(config_file: str, output: str, format: str):
    """
    Write one CloudFormation template per stack.

    Example:
        stratus synth deploy.yaml -o ./cdk.out --format yaml
    """
    config = _load(config_file)
    deployment_plan = _plan(config)

    try:
        templates = CloudFormationCompiler().compile(deployment_plan)
    except StratusError as e:
        raise click.ClickException(str(e)) from e

    for template in templates:
        path = template.write(output, format=format)
        click.echo(f"  - {path}")
    click.echo(f"✓ Synthesized {len(templates)} stacks into {output}")


@cli.command()
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--stack", "stacks", multiple=True, help="Deploy only these stacks (repeatable)")
@click.option("--dry-run", is_flag=True, help="Deploy against an in-memory backend")
def deploy(config_file: str, stacks: tuple[str, ...], dry_run: bool):
    """
    Deploy the stacks in dependency order.

    With --dry-run nothing is created: externally published exports are
    replaced with placeholders and each stack is applied in memory.

    Example:
        stratus deploy deploy.yaml
        stratus deploy deploy.yaml --stack ServiceStack
        stratus deploy deploy.yaml --dry-run
    """
    config = _load(config_file)
    deployment_plan = _plan(config)
    deployer = _deployer(config, dry_run)

    try:
        report = deployer.deploy(deployment_plan, only=list(stacks) or None)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--stack") from e

    _print_report(report, verb="Deployed")
    if not report.succeeded:
        sys.exit(1)


@cli.command()
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.option("--dry-run", is_flag=True, help="Destroy against an in-memory backend")
def destroy(config_file: str, yes: bool, dry_run: bool):
    """
    Tear down every stack, consumers before producers.

    Example:
        stratus destroy deploy.yaml --yes
    """
    config = _load(config_file)
    deployment_plan = _plan(config)

    if not yes and not dry_run:
        click.confirm(
            f"Destroy {len(deployment_plan.order)} stacks of '{config.name}' ({config.environment})?",
            abort=True,
        )

    report = _deployer(config, dry_run).destroy(deployment_plan)
    _print_report(report, verb="Destroyed")
    if not report.succeeded:
        sys.exit(1)


@cli.command(name="next-tag")
@click.argument("repository")
@click.option("--region", default=None, help="Registry region")
def next_tag(repository: str, region: str | None):
    """
    Print the tag the next build of REPOSITORY will push.

    Example:
        stratus next-tag demo-service-ecr-repo
    """
    registry = _image_registry(region)
    try:
        current = latest_tag(registry.describe_images(repository))
        click.echo(next_image_tag(current))
    except StratusError as e:
        raise click.ClickException(str(e)) from e


@cli.group()
def pipeline():
    """Run the delivery pipeline."""
    pass


@pipeline.command(name="run")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--topic-arn",
    default=None,
    help="SNS topic for failure notifications [default: pipeline.notification_topic_arn]",
)
@click.option("--artifact-bucket", default=None, help="S3 bucket for stage artifacts")
@click.option("--auto-approve", is_flag=True, help="Approve without prompting")
def pipeline_run(config_file: str, topic_arn: str | None, artifact_bucket: str | None, auto_approve: bool):
    """
    Run Source, Build, Approval and Deploy once, in this process.

    Example:
        stratus pipeline run deploy.yaml --topic-arn arn:aws:sns:...
    """
    config = _load(config_file)
    delivery = _pipeline(config, topic_arn, artifact_bucket)

    def approver(run: PipelineRun) -> ApprovalDecision:
        build = run.artifacts.get(PipelineState.BUILD)
        image = build.metadata.get("image_uri") if build else None
        if auto_approve:
            return ApprovalDecision(approved=True, approver="cli", comment="auto-approved")
        approved = click.confirm(f"Deploy {image} to {config.service.service_name}?", default=False)
        return ApprovalDecision(approved=approved, approver="cli")

    try:
        run = delivery.run(approver)
    except StratusError as e:
        raise click.ClickException(str(e)) from e

    click.echo(json.dumps(run.summary(), indent=2))
    if run.error is not None:
        sys.exit(1)


def _load(config_file: str) -> DeploymentConfig:
    try:
        return load_config(config_file)
    except StratusError as e:
        raise click.ClickException(str(e)) from e


def _plan(config: DeploymentConfig) -> Plan:
    try:
        return build_app(config).plan()
    except StratusError as e:
        raise click.ClickException(str(e)) from e


def _deployer(config: DeploymentConfig, dry_run: bool) -> Deployer:
    if dry_run:
        registry = InMemoryExportRegistry()
        for key in EXTERNAL_EXPORTS:
            registry.seed(key, f"<external:{key}>")
        return Deployer(InMemoryBackend(), registry)

    from stratus.providers.aws import CloudFormationBackend, CloudFormationExportRegistry, aws_session

    session = aws_session(config.account)
    return Deployer(CloudFormationBackend(session=session), CloudFormationExportRegistry(session=session))


def _image_registry(region: str | None) -> Any:
    import boto3

    from stratus.providers.aws import EcrRegistry

    return EcrRegistry(session=boto3.Session(region_name=region))


def _notification_topic(config: DeploymentConfig, topic_arn: str | None, registry: ExportRegistry) -> str:
    """
    SNS topic that receives the pipeline's failure events.

    The ``--topic-arn`` option wins over the configuration; without
    either, the PipelineSnsArn export of the account is used.
    """
    topic = topic_arn or config.pipeline.notification_topic_arn
    if topic:
        return topic
    try:
        return registry.lookup(PIPELINE_TOPIC_EXPORT)
    except KeyError:
        raise click.ClickException(
            f"No failure notification topic: pass --topic-arn, set pipeline.notification_topic_arn "
            f"or publish the {PIPELINE_TOPIC_EXPORT} export"
        ) from None


def _pipeline(config: DeploymentConfig, topic_arn: str | None, artifact_bucket: str | None) -> Any:
    """Wire the delivery pipeline to AWS, git and docker."""
    from stratus.pipeline import (
        ContainerImageBuild,
        EcsDeployAction,
        InMemoryArtifactStore,
        Pipeline,
        SourceAction,
    )
    from stratus.providers.aws import (
        CloudFormationExportRegistry,
        EcrRegistry,
        EcsService,
        KmsDecrypter,
        S3ArtifactStore,
        SnsNotificationSink,
        SsmParameterStore,
        aws_session,
    )
    from stratus.providers.docker import DockerCli
    from stratus.providers.git import GitSourceConnection

    session = aws_session(config.account)
    settings = config.pipeline
    repository = config.source_repository
    topic = _notification_topic(config, topic_arn, CloudFormationExportRegistry(session=session))

    if artifact_bucket:
        store = S3ArtifactStore(artifact_bucket, retain_runs=settings.artifact_retention_runs, session=session)
    else:
        store = InMemoryArtifactStore(retain_runs=settings.artifact_retention_runs)

    parameters = SsmParameterStore(session=session)

    def build_environment() -> dict[str, str]:
        return {**os.environ, **parameters.resolve(settings.parameter_store)}

    return Pipeline(
        name=f"{repository}-pipeline",
        source=SourceAction(GitSourceConnection(), settings.owner, repository, settings.branch),
        build=ContainerImageBuild(
            registry=EcrRegistry(
                account_id=config.account.account_id or None,
                region=config.account.region,
                session=session,
            ),
            builder=DockerCli(),
            decrypter=KmsDecrypter(session=session),
            repository=config.service_resources.ecr_repo_name,
            container_name=config.service.container_name,
            kms_key_id=settings.kms_key_id,
            encrypted_env_path=settings.encrypted_env_path,
            install_commands=settings.install_commands,
            build_args=settings.build_args,
            build_environment=build_environment,
        ),
        deploy=EcsDeployAction(
            EcsService(session=session),
            config.workload.cluster_name,
            config.service.service_name,
            timeout=timedelta(minutes=settings.deploy_timeout_minutes),
        ),
        artifact_store=store,
        notification_sink=SnsNotificationSink(topic, session=session),
        trigger_on_push=settings.trigger_on_push,
    )


def _print_report(report: DeploymentReport, verb: str) -> None:
    for name in report.deployed:
        click.echo(f"✓ {verb} {name}")
    for name, error in report.failed.items():
        click.echo(f"✗ {name}: {error}", err=True)
    for name, blocked_by in report.skipped.items():
        click.echo(f"- Skipped {name} (depends on {', '.join(blocked_by)})", err=True)


if __name__ == "__main__":
    cli()
