"""
CloudFormation compiler.

Each stack becomes one template:

- resources keep their type and properties
- Attr tokens become ``Ref`` / ``Fn::GetAtt``
- imports become ``Fn::ImportValue`` of the export key
- exports become Outputs whose ``Export.Name`` is the export key

CloudFormation export names are unique per account and region, so the
producer of an import does not appear in the template; the plan has
already checked that the binding is unambiguous.
"""

import re
from typing import Any

from stratus.compilation.compiler import CompilationError, CompiledTemplate, Compiler
from stratus.core import Attr, DeferredValue, Stack
from stratus.core.refs import iter_tokens, substitute

TEMPLATE_FORMAT_VERSION = "2010-09-09"

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


def output_id(key: str) -> str:
    """Logical id of the Output publishing export ``key``."""
    return _NON_ALPHANUMERIC.sub("", key[:1].upper() + key[1:])


def intrinsic(token: DeferredValue | Attr) -> dict[str, Any]:
    """CloudFormation intrinsic function for a stratus token."""
    if isinstance(token, DeferredValue):
        return {"Fn::ImportValue": token.key}
    if token.attribute is None:
        return {"Ref": token.logical_id}
    return {"Fn::GetAtt": [token.logical_id, token.attribute]}


class CloudFormationCompiler(Compiler):
    """
    Compile stacks to CloudFormation templates.

    Example:
        compiler = CloudFormationCompiler()
        for template in compiler.compile(app.plan()):
            template.write("./cdk.out", format="yaml")
    """

    def compile_stack(self, stack: Stack) -> CompiledTemplate:
        self._check_references(stack)

        resources: dict[str, Any] = {}
        for resource in stack.resources:
            definition: dict[str, Any] = {"Type": resource.type}
            if resource.properties:
                definition["Properties"] = substitute(resource.properties, intrinsic)
            if resource.depends_on:
                definition["DependsOn"] = list(resource.depends_on)
            resources[resource.logical_id] = definition

        body: dict[str, Any] = {"AWSTemplateFormatVersion": TEMPLATE_FORMAT_VERSION}
        if stack.description:
            body["Description"] = stack.description
        body["Resources"] = resources

        outputs: dict[str, Any] = {}
        for key, export in stack.exports.items():
            logical_id = output_id(key)
            if logical_id in outputs:
                raise CompilationError(
                    f"Stack '{stack.name}': exports '{key}' and another key map to output '{logical_id}'"
                )
            output: dict[str, Any] = {
                "Value": substitute(export.value, intrinsic),
                "Export": {"Name": key},
            }
            if export.description:
                output["Description"] = export.description
            outputs[logical_id] = output
        if outputs:
            body["Outputs"] = outputs

        return CompiledTemplate(stack_name=stack.name, body=body, tags=dict(stack.tags))

    def _check_references(self, stack: Stack) -> None:
        """Every Attr and DependsOn must name a resource of the same stack."""
        declared = {resource.logical_id for resource in stack.resources}
        if not declared:
            raise CompilationError(f"Stack '{stack.name}' declares no resources")

        values: list[Any] = [r.properties for r in stack.resources]
        values.extend(export.value for export in stack.exports.values())
        for token in iter_tokens(values):
            if isinstance(token, Attr) and token.logical_id not in declared:
                raise CompilationError(
                    f"Stack '{stack.name}' references unknown resource '{token.logical_id}'"
                )

        for resource in stack.resources:
            for dependency in resource.depends_on:
                if dependency not in declared:
                    raise CompilationError(
                        f"Resource '{resource.logical_id}' in stack '{stack.name}' "
                        f"depends on unknown resource '{dependency}'"
                    )
