"""
Tests for deploy-time import resolution and stack isolation.
"""

import pytest
from stratus.core import App, Deployer, InMemoryBackend, InMemoryExportRegistry, Ref
from stratus.core.errors import ResourceCreationFailure, UnresolvedImport


def _app() -> App:
    """network -> workload -> service, plus an unrelated notifications stack."""
    app = App(name="demo")

    network = app.declare_stack("NetworkInfraStack")
    vpc = network.resource("PrimaryVpc", "AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})
    network.export("PrimaryVpcId", vpc.ref)

    workload = app.declare_stack("WorkloadInfraStack")
    cluster = workload.resource("Cluster", "AWS::ECS::Cluster", {"VpcId": app.import_value("PrimaryVpcId")})
    workload.export("PrimaryWorkloadClusterName", cluster.ref)

    service = app.declare_stack("ServiceStack")
    service.resource("Service", "AWS::ECS::Service", {
        "Cluster": app.import_value("PrimaryWorkloadClusterName"),
        "TopicArn": app.import_value("NotificationTopicArn"),
    })

    notifications = app.declare_stack("SnsNotificationStack")
    topic = notifications.resource("Topic", "AWS::SNS::Topic")
    notifications.export("NotificationTopicArn", topic.ref)

    return app


class TestDeployer:
    """Tests for Deployer."""

    def test_deploys_in_dependency_order(self):
        """Every stack is applied after its producers, with imports resolved."""
        backend = InMemoryBackend()
        registry = InMemoryExportRegistry()

        report = Deployer(backend, registry).deploy(_app().plan())

        assert report.succeeded
        assert report.deployed.index("NetworkInfraStack") < report.deployed.index("WorkloadInfraStack")
        assert report.deployed.index("WorkloadInfraStack") < report.deployed.index("ServiceStack")
        assert backend.deployed["WorkloadInfraStack"]["Cluster"] == {"VpcId": "NetworkInfraStack/PrimaryVpc"}
        assert backend.deployed["ServiceStack"]["Service"] == {
            "Cluster": "WorkloadInfraStack/Cluster",
            "TopicArn": "SnsNotificationStack/Topic",
        }
        assert registry.lookup("PrimaryVpcId", "NetworkInfraStack") == "NetworkInfraStack/PrimaryVpc"

    def test_failed_producer_skips_dependents(self):
        """A failing stack blocks its dependents but not unrelated stacks."""
        backend = InMemoryBackend(fail_on={"WorkloadInfraStack"})

        report = Deployer(backend, InMemoryExportRegistry()).deploy(_app().plan())

        assert not report.succeeded
        assert isinstance(report.failed["WorkloadInfraStack"], ResourceCreationFailure)
        assert report.skipped == {"ServiceStack": ["WorkloadInfraStack"]}
        assert "NetworkInfraStack" in report.deployed
        assert "SnsNotificationStack" in report.deployed
        assert "ServiceStack" not in backend.deployed

    def test_unresolved_import_fails_only_that_stack(self):
        """Deploying a consumer whose producer was never deployed fails that stack."""
        backend = InMemoryBackend()

        report = Deployer(backend, InMemoryExportRegistry()).deploy(
            _app().plan(), only=["WorkloadInfraStack", "SnsNotificationStack"]
        )

        error = report.failed["WorkloadInfraStack"]
        assert isinstance(error, UnresolvedImport)
        assert error.key == "PrimaryVpcId"
        assert report.deployed == ["SnsNotificationStack"]
        assert "WorkloadInfraStack" not in backend.deployed

    def test_partial_deploy_uses_published_exports(self):
        """A selected stack reads imports published by an earlier deploy."""
        backend = InMemoryBackend()
        registry = InMemoryExportRegistry()
        deployer = Deployer(backend, registry)
        plan = _app().plan()
        deployer.deploy(plan)

        report = deployer.deploy(plan, only=["ServiceStack"])

        assert report.deployed == ["ServiceStack"]
        assert backend.apply_count["ServiceStack"] == 2
        assert backend.apply_count["NetworkInfraStack"] == 1

    def test_unknown_stack_selection(self):
        """Selecting a stack that is not in the plan is an error."""
        with pytest.raises(ValueError):
            Deployer(InMemoryBackend(), InMemoryExportRegistry()).deploy(_app().plan(), only=["Missing"])

    def test_external_import_from_seeded_registry(self):
        """External imports resolve from values published outside the app."""
        app = App()
        pipeline = app.declare_stack("PipelineStack")
        pipeline.resource("Key", "AWS::KMS::Alias", {"TargetKeyId": app.import_value("KmsKeyArn")})
        registry = InMemoryExportRegistry()
        registry.seed("KmsKeyArn", "arn:aws:kms:ap-south-1:123456789012:key/abc")
        backend = InMemoryBackend()

        report = Deployer(backend, registry).deploy(app.plan())

        assert report.succeeded
        assert backend.deployed["PipelineStack"]["Key"]["TargetKeyId"].endswith("key/abc")

    def test_resolve_imports_uses_bound_producer(self):
        """Imports are looked up from the producer the plan bound."""
        registry = InMemoryExportRegistry()
        registry.publish("OtherStack", "PrimaryVpcId", "vpc-other")
        registry.publish("NetworkInfraStack", "PrimaryVpcId", "vpc-main")
        plan = _app().plan()

        resolved = Deployer(InMemoryBackend(), registry).resolve_imports(
            plan, plan.get_stack("WorkloadInfraStack")
        )

        assert resolved == {Ref("PrimaryVpcId"): "vpc-main"}

    def test_destroy_in_reverse_order(self):
        """Teardown removes consumers before producers and withdraws exports."""
        backend = InMemoryBackend()
        registry = InMemoryExportRegistry()
        deployer = Deployer(backend, registry)
        plan = _app().plan()
        deployer.deploy(plan)

        report = deployer.destroy(plan)

        assert report.deployed == plan.teardown_order()
        assert report.deployed.index("ServiceStack") < report.deployed.index("NetworkInfraStack")
        assert backend.deployed == {}
        assert registry.as_dict() == {}

    def test_failed_destroy_keeps_only_producers(self):
        """A stack that cannot be removed keeps its producers; unrelated stacks still go."""

        class StuckBackend(InMemoryBackend):
            def destroy(self, stack):
                if stack.name == "WorkloadInfraStack":
                    raise RuntimeError("cluster still has container instances")
                super().destroy(stack)

        backend = StuckBackend()
        registry = InMemoryExportRegistry()
        deployer = Deployer(backend, registry)
        plan = _app().plan()
        deployer.deploy(plan)

        report = deployer.destroy(plan)

        assert set(report.deployed) == {"ServiceStack", "SnsNotificationStack"}
        assert isinstance(report.failed["WorkloadInfraStack"], ResourceCreationFailure)
        assert report.skipped == {"NetworkInfraStack": ["WorkloadInfraStack"]}
        assert set(backend.deployed) == {"NetworkInfraStack", "WorkloadInfraStack"}
        assert registry.lookup("PrimaryVpcId") == "NetworkInfraStack/PrimaryVpc"


class TestInMemoryExportRegistry:
    """Tests for the dictionary-backed registry."""

    def test_lookup_latest_publisher(self):
        """Bare lookups return the most recent publisher's value."""
        registry = InMemoryExportRegistry()
        registry.publish("A", "Key", 1)
        registry.publish("B", "Key", 2)

        assert registry.lookup("Key") == 2
        assert registry.lookup("Key", "A") == 1

    def test_missing_key(self):
        """Unknown keys raise KeyError."""
        registry = InMemoryExportRegistry()

        with pytest.raises(KeyError):
            registry.lookup("Missing")
        registry.publish("A", "Key", 1)
        with pytest.raises(KeyError):
            registry.lookup("Key", "B")

    def test_withdraw(self):
        """Withdrawing a producer keeps other publishers' values."""
        registry = InMemoryExportRegistry()
        registry.publish("A", "Key", 1)
        registry.publish("B", "Key", 2)
        registry.withdraw("B")

        assert registry.lookup("Key") == 1
