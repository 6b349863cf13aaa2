"""
Compilation of stacks into provisioning engine templates.
"""

from stratus.compilation.compiler import Compiler, CompiledTemplate, CompilationError
from stratus.compilation.cloudformation import CloudFormationCompiler

__all__ = [
    "Compiler",
    "CompiledTemplate",
    "CompilationError",
    "CloudFormationCompiler",
]
