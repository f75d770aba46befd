"""podgraph: a reactive dependency-graph runtime for derived, observable state."""

from importlib.metadata import version as _version

__version__ = _version("podgraph")

from podgraph.async_value import AsyncData, AsyncError, AsyncLoading, AsyncValue
from podgraph.container import Container
from podgraph.definition import NO_ARG, Definition, FamilyMember, provider, state_provider
from podgraph.dispose import DisposePolicy
from podgraph.errors import (
    CircularDependencyError,
    ContainerDisposedError,
    PodgraphError,
    UsageError,
)
from podgraph.node import NodeState, Subscription
from podgraph.ref import KeepAliveLink, Ref

__all__ = [
    "Definition",
    "FamilyMember",
    "NO_ARG",
    "provider",
    "state_provider",
    "Container",
    "DisposePolicy",
    "NodeState",
    "Subscription",
    "Ref",
    "KeepAliveLink",
    "AsyncValue",
    "AsyncLoading",
    "AsyncData",
    "AsyncError",
    "PodgraphError",
    "UsageError",
    "CircularDependencyError",
    "ContainerDisposedError",
]
