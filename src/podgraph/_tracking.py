"""Dependency tracking engine — the heart of podgraph.

Uses contextvars to know which Ref is currently computing, so that
Container.watch() can record an edge from the running factory's node.

Batching: every container operation is a work unit. Invalidations made
inside it accumulate and are swept once when the outermost unit exits,
so listeners only ever observe fully propagated state.
"""

from __future__ import annotations

import contextvars
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from podgraph.node import Node
    from podgraph.ref import Ref

# The Ref of the factory currently executing. Tasks spawned for async
# factories copy the context, so awaits keep the right Ref.
current_ref: contextvars.ContextVar[Ref | None] = contextvars.ContextVar(
    "current_ref", default=None
)


class WorkQueue:
    """Per-container batch depth and pending sweep set."""

    __slots__ = ("_depth", "_pending", "_on_idle")

    def __init__(self, on_idle: Callable[[], None]) -> None:
        self._depth = 0
        self._pending: set[Node] = set()
        # Called after every sweep of the outermost unit (auto-dispose hook).
        self._on_idle = on_idle

    @property
    def depth(self) -> int:
        return self._depth

    def begin(self) -> None:
        """Enter a work unit. Nested units are supported."""
        self._depth += 1

    def end(self) -> None:
        """Exit a work unit. When the outermost unit exits, sweep."""
        if self._depth == 1:
            try:
                # Disposal callbacks may invalidate again; drain both.
                while True:
                    try:
                        self._sweep()
                    finally:
                        self._on_idle()
                    if not self._pending:
                        break
            finally:
                self._depth -= 1
        else:
            self._depth -= 1

    def schedule(self, node: Node) -> None:
        """Queue a dirty node that must be refreshed eagerly."""
        self._pending.add(node)

    def _sweep(self) -> None:
        """Refresh queued nodes upstream-first, each at most once.

        Refreshing a node may dirty or queue others (listeners invalidating,
        auto-dispose side effects), so loop until the queue is drained.
        """
        while self._pending:
            depths: dict[Node, int] = {}
            batch = sorted(self._pending, key=lambda n: (n.depth(depths), n.index))
            self._pending.clear()
            for i, node in enumerate(batch):
                if not (node.alive and node.dirty):
                    continue
                before = set(self._pending)
                try:
                    node.refresh()
                except Exception:
                    # Nodes rolled back by this refresh wait for an upstream
                    # change; the rest of the batch runs in the next unit.
                    self._pending = before
                    self._pending.update(n for n in batch[i + 1:] if n.alive and n.subscriptions)
                    raise
