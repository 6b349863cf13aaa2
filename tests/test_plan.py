"""
Tests for stack declaration and plan validation.
"""

import pytest
from stratus.core import App, Attr, DeferredValue, Ref, Stack
from stratus.core.errors import (
    AmbiguousExport,
    DuplicateExportKey,
    DuplicateStackName,
    ImportCycle,
    UnknownExport,
)


def _network(app: App) -> Stack:
    network = app.declare_stack("NetworkInfraStack")
    vpc = network.resource("PrimaryVpc", "AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})
    network.export("PrimaryVpcId", vpc.ref)
    return network


class TestStackDeclaration:
    """Tests for declaring stacks, resources and exports."""

    def test_duplicate_stack_name(self):
        """Declaring a stack name twice fails."""
        app = App()
        app.declare_stack("NetworkInfraStack")

        with pytest.raises(DuplicateStackName):
            app.declare_stack("NetworkInfraStack")

    def test_duplicate_export_key(self):
        """A stack cannot export the same key twice."""
        app = App()
        network = _network(app)

        with pytest.raises(DuplicateExportKey):
            network.export("PrimaryVpcId", "vpc-123")

    def test_duplicate_logical_id(self):
        """Logical ids are unique within a stack."""
        stack = Stack("NetworkInfraStack")
        stack.resource("PrimaryVpc", "AWS::EC2::VPC")

        with pytest.raises(ValueError):
            stack.resource("PrimaryVpc", "AWS::EC2::VPC")

    def test_deferred_values_record_imports(self):
        """Deferred values in properties become imports of the stack."""
        app = App()
        workload = app.declare_stack("WorkloadInfraStack")
        workload.resource("Cluster", "AWS::ECS::Cluster", {
            "Subnets": [app.import_value("PrivateResourceSubnet0Id"), app.import_value("PrivateResourceSubnet1Id")],
            "Tags": {"Vpc": app.import_value("PrimaryVpcId")},
        })

        assert [ref.key for ref in workload.imports] == [
            "PrivateResourceSubnet0Id",
            "PrivateResourceSubnet1Id",
            "PrimaryVpcId",
        ]

    def test_import_value_returns_deferred(self):
        """Importing never inlines a concrete value."""
        stack = Stack("ServiceStack")
        value = stack.import_value("PrimaryVpcId", producer="NetworkInfraStack")

        assert isinstance(value, DeferredValue)
        assert value.ref == Ref("PrimaryVpcId", producer="NetworkInfraStack")
        assert stack.imports == [value.ref]

    def test_app_tags_apply_to_stacks(self):
        """Stacks inherit the app tags and can add their own."""
        app = App(tags={"environment-type": "Demo"})
        stack = app.declare_stack("NetworkInfraStack", tags={"tier": "network"})

        assert stack.tags == {"environment-type": "Demo", "tier": "network"}

    def test_resource_attr(self):
        """Resources hand out same-stack attribute tokens."""
        stack = Stack("NetworkInfraStack")
        vpc = stack.resource("PrimaryVpc", "AWS::EC2::VPC")

        assert vpc.ref == Attr("PrimaryVpc")
        assert vpc.attr("CidrBlock") == Attr("PrimaryVpc", "CidrBlock")


class TestPlan:
    """Tests for App.plan()."""

    def test_producer_before_consumer(self):
        """A consumer is ordered after the stack that exports its import."""
        app = App()
        service = app.declare_stack("ServiceStack")
        service.resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": app.import_value("PrimaryVpcId"),
        })
        _network(app)

        plan = app.plan()

        assert plan.order == ["NetworkInfraStack", "ServiceStack"]
        assert plan.levels == [["NetworkInfraStack"], ["ServiceStack"]]
        assert plan.producer_of("ServiceStack", Ref("PrimaryVpcId")) == "NetworkInfraStack"

    def test_ambiguous_bare_import(self):
        """A bare import exported by two stacks fails the whole plan."""
        app = App()
        for name in ("BlueNetworkStack", "GreenNetworkStack"):
            stack = app.declare_stack(name)
            vpc = stack.resource("Vpc", "AWS::EC2::VPC")
            stack.export("PrimaryVpcId", vpc.ref)

        consumer = app.declare_stack("ServiceStack")
        consumer.resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": app.import_value("PrimaryVpcId"),
        })

        with pytest.raises(AmbiguousExport) as exc_info:
            app.plan()

        assert exc_info.value.producers == ["BlueNetworkStack", "GreenNetworkStack"]
        assert exc_info.value.consumer == "ServiceStack"

    def test_explicit_producer_resolves_ambiguity(self):
        """Pinning the producer picks one of several exporters."""
        app = App()
        for name in ("BlueNetworkStack", "GreenNetworkStack"):
            stack = app.declare_stack(name)
            vpc = stack.resource("Vpc", "AWS::EC2::VPC")
            stack.export("PrimaryVpcId", vpc.ref)

        consumer = app.declare_stack("ServiceStack")
        consumer.resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": app.import_value("PrimaryVpcId", producer="GreenNetworkStack"),
        })

        plan = app.plan()

        assert plan.dag.get_dependencies("ServiceStack") == ["GreenNetworkStack"]
        assert plan.order.index("GreenNetworkStack") < plan.order.index("ServiceStack")

    def test_unknown_export_from_declared_producer(self):
        """An explicit producer that does not export the key fails the plan."""
        app = App()
        _network(app)
        consumer = app.declare_stack("ServiceStack")
        consumer.resource("Integration", "AWS::ApiGatewayV2::Integration", {
            "ConnectionId": app.import_value("PrimaryVpcLinkId", producer="NetworkInfraStack"),
        })

        with pytest.raises(UnknownExport):
            app.plan()

    def test_external_imports(self):
        """Imports nobody in the app exports are reported as external."""
        app = App()
        pipeline = app.declare_stack("PipelineStack")
        pipeline.resource("Pipeline", "AWS::CodePipeline::Pipeline", {
            "RoleArn": app.import_value("KmsKeyArn"),
            "Bucket": app.import_value("ArtifactBucketArn", producer="BootstrapStack"),
        })

        plan = app.plan()

        assert plan.order == ["PipelineStack"]
        assert [ref.key for ref in plan.external_imports["PipelineStack"]] == ["KmsKeyArn", "ArtifactBucketArn"]
        assert plan.producer_of("PipelineStack", Ref("KmsKeyArn")) is None

    def test_import_cycle(self):
        """Two stacks importing from each other fail with the cycle path."""
        app = App()
        a = app.declare_stack("A")
        b = app.declare_stack("B")
        a.export("FromA", a.resource("ResA", "AWS::SNS::Topic").ref)
        b.export("FromB", b.resource("ResB", "AWS::SNS::Topic").ref)
        a.resource("UsesB", "AWS::SNS::Subscription", {"TopicArn": app.import_value("FromB")})
        b.resource("UsesA", "AWS::SNS::Subscription", {"TopicArn": app.import_value("FromA")})

        with pytest.raises(ImportCycle) as exc_info:
            app.plan()

        assert set(exc_info.value.cycle) == {"A", "B"}

    def test_plan_is_deterministic(self):
        """The same definition always yields the same order."""

        def build() -> App:
            app = App()
            for name in ("SnsNotificationStack", "ServiceResourcesStack"):
                app.declare_stack(name).resource("Res", "AWS::SNS::Topic")
            _network(app)
            consumer = app.declare_stack("ServiceStack")
            consumer.resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
                "VpcId": app.import_value("PrimaryVpcId"),
            })
            return app

        assert build().plan().order == build().plan().order
        assert build().plan().snapshot() == build().plan().snapshot()

    def test_visualize(self):
        """The text view lists levels and wiring."""
        app = App(name="demo", environment="production")
        _network(app)
        app.declare_stack("ServiceStack").resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": app.import_value("PrimaryVpcId"),
        })

        text = app.plan().visualize()

        assert "App: demo (production)" in text
        assert "NetworkInfraStack -> ServiceStack (via PrimaryVpcId)" in text


class TestPlanDiff:
    """Tests for comparing plans."""

    def _app(self, extra_export: bool = False) -> App:
        app = App()
        network = _network(app)
        if extra_export:
            network.export("PrimaryVpcCidr", network.get_resource("PrimaryVpc").attr("CidrBlock"))
        app.declare_stack("ServiceStack").resource("TargetGroup", "AWS::ElasticLoadBalancingV2::TargetGroup", {
            "VpcId": app.import_value("PrimaryVpcId"),
        })
        return app

    def test_unchanged_definition_has_no_changes(self):
        """Re-planning an unchanged definition is a no-op."""
        first = self._app().plan()
        second = self._app().plan()

        assert not second.diff(first).has_changes
        assert not second.diff(first.snapshot()).has_changes

    def test_first_plan_adds_every_stack(self):
        """Diffing against nothing deployed adds every stack."""
        plan = self._app().plan()

        assert plan.diff(None).added_stacks == ["NetworkInfraStack", "ServiceStack"]

    def test_added_export(self):
        """New exports are reported per stack."""
        before = self._app().plan()
        after = self._app(extra_export=True).plan()

        diff = after.diff(before)

        assert diff.has_changes
        assert diff.changes[0].stack == "NetworkInfraStack"
        assert diff.changes[0].added_exports == ["PrimaryVpcCidr"]

    def test_removed_stack(self):
        """Stacks missing from the new plan are reported."""
        before = self._app().plan()
        app = App()
        _network(app)

        diff = app.plan().diff(before)

        assert diff.removed_stacks == ["ServiceStack"]
