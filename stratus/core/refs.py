"""
References between stacks and resources.

A Ref names an exported value by key, optionally pinned to the stack that
produces it. A DeferredValue is the placeholder handed to resource
properties: it carries a Ref and is only turned into a concrete value at
deploy time, so consumers never inline another stack's outputs.

Attr points at an attribute of a resource in the *same* stack and is
resolved by the provisioning backend when the stack is applied.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterator, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ref(Generic[T]):
    """
    Typed reference to an exported value.

    Example:
        vpc_id: Ref[str] = Ref("PrimaryVpcId", producer="NetworkInfraStack")
    """

    key: str
    """Export key"""

    producer: str | None = None
    """Producing stack name. None means any stack that publishes the key."""

    def __str__(self) -> str:
        if self.producer:
            return f"{self.producer}:{self.key}"
        return self.key


@dataclass(frozen=True)
class DeferredValue(Generic[T]):
    """
    Placeholder for an imported value, resolved at deploy time.

    Deferred values can be placed anywhere inside resource properties or
    export values. The stack they are declared on records an import of
    the underlying Ref.
    """

    ref: Ref[T]

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def producer(self) -> str | None:
        return self.ref.producer

    def __repr__(self) -> str:
        return f"DeferredValue({self.ref})"


@dataclass(frozen=True)
class Attr:
    """
    Attribute of a resource declared in the same stack.

    ``attribute=None`` refers to the resource's primary identifier.
    """

    logical_id: str
    attribute: str | None = None

    def __str__(self) -> str:
        if self.attribute:
            return f"{self.logical_id}.{self.attribute}"
        return self.logical_id


def iter_tokens(value: Any) -> Iterator[DeferredValue | Attr]:
    """Yield every DeferredValue and Attr nested inside a value."""
    if isinstance(value, (DeferredValue, Attr)):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_tokens(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_tokens(item)


def substitute(value: Any, resolve: Callable[[DeferredValue | Attr], Any]) -> Any:
    """
    Return a copy of ``value`` with every token replaced by ``resolve(token)``.

    Containers are rebuilt; scalars are returned unchanged.
    """
    if isinstance(value, (DeferredValue, Attr)):
        return resolve(value)
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, resolve) for v in value]
    if isinstance(value, tuple):
        return tuple(substitute(v, resolve) for v in value)
    return value
