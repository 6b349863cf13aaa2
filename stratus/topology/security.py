"""
SecurityStack: regional WAF in front of the external load balancer.
"""

from stratus.config import DeploymentConfig
from stratus.core import App, Stack

SECURITY_STACK = "SecurityStack"


def _visibility(metric: str) -> dict:
    return {
        "MetricName": metric,
        "CloudWatchMetricsEnabled": True,
        "SampledRequestsEnabled": True,
    }


def web_acl_rules(config: DeploymentConfig) -> list[dict]:
    """Rules of the web ACL in priority order."""
    security = config.security
    rules = [{
        "Name": "BlockUnwantedGeolocation",
        "Priority": 0,
        "Statement": {
            "NotStatement": {
                "Statement": {"GeoMatchStatement": {"CountryCodes": list(security.allowed_countries)}},
            },
        },
        "Action": {"Block": {}},
        "VisibilityConfig": _visibility(f"{security.web_acl_name}GeolocationMetric"),
    }]

    for group in security.managed_rule_groups:
        rules.append({
            "Name": f"AWS-{group}",
            "Priority": len(rules),
            "Statement": {"ManagedRuleGroupStatement": {"Name": group, "VendorName": "AWS"}},
            "OverrideAction": {"None": {}},
            "VisibilityConfig": _visibility(f"{group}Metric"),
        })

    for i, substring in enumerate(security.blocked_uri_substrings, start=1):
        rules.append({
            "Name": f"BlockUri{i}",
            "Priority": len(rules),
            "Statement": {
                "ByteMatchStatement": {
                    "SearchString": substring,
                    "FieldToMatch": {"UriPath": {}},
                    "PositionalConstraint": "CONTAINS",
                    "TextTransformations": [{"Priority": 0, "Type": "NONE"}],
                },
            },
            "Action": {"Block": {}},
            "VisibilityConfig": _visibility(f"BlockUri{i}Metric"),
        })

    return rules


def declare_security_stack(app: App, config: DeploymentConfig) -> Stack:
    """Declare the web ACL, attach it to the external ALB and log blocked requests."""
    security = config.security
    stack = app.declare_stack(
        SECURITY_STACK,
        config=security.model_dump(),
        tags={"application-name": "SecurityInfra"},
        description="WAF for the external load balancer",
    )

    acl = stack.resource("PrimaryWebAcl", "AWS::WAFv2::WebACL", {
        "Name": security.web_acl_name,
        "Scope": "REGIONAL",
        "DefaultAction": {"Allow": {}},
        "VisibilityConfig": _visibility(f"{security.web_acl_name}Metric"),
        "Rules": web_acl_rules(config),
    })

    stack.resource("AssociatePrimaryExternalAlb", "AWS::WAFv2::WebACLAssociation", {
        "WebACLArn": acl.attr("Arn"),
        "ResourceArn": stack.import_value("PrimaryExternalAlbArn"),
    })

    # WAF only accepts log groups whose name starts with aws-waf-logs-
    logs = stack.resource("PrimaryWebAclLogs", "AWS::Logs::LogGroup", {
        "LogGroupName": "aws-waf-logs-primary-web-acl-logs",
        "RetentionInDays": security.log_retention_days,
    })
    stack.resource("PrimaryWebAclLogsConfiguration", "AWS::WAFv2::LoggingConfiguration", {
        "ResourceArn": acl.attr("Arn"),
        "LogDestinationConfigs": [logs.attr("Arn")],
        "LoggingFilter": {
            "DefaultBehavior": "DROP",
            "Filters": [{
                "Behavior": "KEEP",
                "Requirement": "MEETS_ALL",
                "Conditions": [{"ActionCondition": {"Action": "BLOCK"}}],
            }],
        },
    })

    return stack
