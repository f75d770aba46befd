"""Auto-dispose — reclaiming nodes nobody references any more.

A node of an auto_dispose definition becomes a candidate when its
reference count (listeners + dependents + keep-alive links) drops to zero.
Candidates are not disposed on the spot: the check is deferred according
to the container's DisposePolicy, so a reference that disappears and comes
back within the same unit of work does not tear the node down.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING

from podgraph.errors import UsageError

if TYPE_CHECKING:
    from podgraph.container import Container
    from podgraph.node import Node

logger = logging.getLogger("podgraph.dispose")


class DisposePolicy(enum.Enum):
    """When deferred auto-dispose checks run."""

    # When the outermost container operation (or batch()) returns.
    END_OF_WORK = "end_of_work"
    # On the next iteration of the running asyncio event loop.
    EVENT_LOOP = "event_loop"
    # Only when Container.flush_disposals() is called.
    MANUAL = "manual"


class AutoDisposeScheduler:
    """Collects dispose candidates and checks them according to the policy."""

    __slots__ = ("_container", "_policy", "_candidates", "_handle")

    def __init__(self, container: Container, policy: DisposePolicy) -> None:
        self._container = container
        self._policy = DisposePolicy(policy)
        # Insertion-ordered set.
        self._candidates: dict[Node, None] = {}
        self._handle: asyncio.Handle | None = None

    @property
    def policy(self) -> DisposePolicy:
        return self._policy

    def consider(self, node: Node) -> None:
        """Queue node for a deferred reference check."""
        if not node.definition.auto_dispose or not node.alive:
            return
        self._candidates[node] = None
        if self._policy is DisposePolicy.EVENT_LOOP and self._handle is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                raise UsageError(
                    "DisposePolicy.EVENT_LOOP needs a running asyncio event loop"
                ) from None
            self._handle = loop.call_soon(self._on_loop_tick)

    def on_idle(self) -> None:
        """Hook for the end of the outermost work unit."""
        if self._policy is DisposePolicy.END_OF_WORK:
            self.flush()

    def _on_loop_tick(self) -> None:
        self._handle = None
        if self._container.disposed:
            return
        with self._container._work():
            self.flush()

    def flush(self) -> int:
        """Dispose every candidate still unreferenced. Returns how many were."""
        disposed = 0
        busy = []
        while self._candidates:
            node = next(iter(self._candidates))
            del self._candidates[node]
            if not node.alive or node.refcount() != 0:
                continue
            if node in self._container._stack:
                busy.append(node)
                continue
            logger.debug("Auto-disposing %r", node)
            node.dispose()
            disposed += 1
        for node in busy:
            self._candidates[node] = None
        return disposed

    def cancel(self) -> None:
        """Drop all candidates and any scheduled loop callback."""
        self._candidates.clear()
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
