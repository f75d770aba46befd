"""Ref — the capability token handed to a factory.

A Ref is only valid for the computation it was created for. Synchronous
factories lose it when they return; asynchronous ones keep it across
awaits until their result is committed or a newer computation supersedes
it. Calls on a revoked Ref raise UsageError instead of silently touching
a node that has moved on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from podgraph.definition import NO_ARG
from podgraph.errors import UsageError

if TYPE_CHECKING:
    from podgraph.container import Container
    from podgraph.node import Node, Subscription


class Ref:
    """Per-computation access to the container from inside a factory."""

    __slots__ = ("_container", "_node", "_generation", "_revoked", "_subscriptions")

    def __init__(self, container: Container, node: Node, generation: int) -> None:
        self._container = container
        self._node = node
        self._generation = generation
        self._revoked = False
        self._subscriptions: list[Subscription] = []

    @property
    def container(self) -> Container:
        return self._container

    @property
    def node(self) -> Node:
        return self._node

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def arg(self) -> Any:
        """The family argument of the node being computed, or NO_ARG."""
        return self._node.arg

    @property
    def mounted(self) -> bool:
        """Whether this computation is still the node's live one.

        Async factories should check this before side effects that assume
        the node still exists.
        """
        return self._node.alive and self._node.generation == self._generation

    # --- Tracking (only while computing) ---

    def watch(self, target, arg=NO_ARG):
        """Read target and recompute this node whenever it changes."""
        self._check_active("watch")
        return self._container._watch_from(self, target, arg)

    def listen(self, target, listener, arg=NO_ARG, *, fire_immediately=False, on_error=None):
        """Listen to target for as long as this computation's value lives."""
        self._check_active("listen")
        sub = self._container.listen(
            target, listener, arg, fire_immediately=fire_immediately, on_error=on_error
        )
        self._subscriptions.append(sub)
        return sub

    async def future(self, target, arg=NO_ARG):
        """Watch an async definition and wait for its data.

        Raises the definition's error if it fails.
        """
        self._check_active("future")
        self._container._watch_from(self, target, arg, awaiting=True)
        return await self._container.resolve(target, arg)

    def on_dispose(self, callback: Callable[[], None]) -> None:
        """Run callback when this value is discarded (recompute or disposal)."""
        self._check_active("on_dispose")
        self._node._on_dispose.append(callback)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run callback when the node loses its last listener or dependent."""
        self._check_active("on_cancel")
        self._node._on_cancel.append(callback)

    def on_resume(self, callback: Callable[[], None]) -> None:
        """Run callback when the node is referenced again after on_cancel."""
        self._check_active("on_resume")
        self._node._on_resume.append(callback)

    def keep_alive(self) -> KeepAliveLink:
        """Prevent auto-dispose until the returned link is closed."""
        self._check_active("keep_alive")
        return self._node.keep_alive(self._generation)

    # --- Available while this generation is current ---

    def read(self, target, arg=NO_ARG):
        self._check_mounted("read")
        return self._container.read(target, arg)

    def invalidate(self, target, arg=NO_ARG) -> None:
        self._check_mounted("invalidate")
        self._container.invalidate(target, arg)

    def invalidate_self(self) -> None:
        self._check_mounted("invalidate_self")
        self._container._invalidate_node(self._node)

    # --- Internal ---

    def _check_active(self, op: str) -> None:
        if self._revoked:
            raise UsageError(
                f"ref.{op}() called on {self._node!r} after its computation ended"
            )

    def _check_mounted(self, op: str) -> None:
        if not self.mounted:
            raise UsageError(
                f"ref.{op}() called on {self._node!r} after it was recomputed or disposed"
            )

    def _revoke(self) -> None:
        self._revoked = True

    def _close_subscriptions(self) -> None:
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            sub.close()

    def __repr__(self) -> str:
        state = "revoked" if self._revoked else "active"
        return f"Ref({self._node!r}, generation={self._generation}, {state})"


class KeepAliveLink:
    """Handle returned by Ref.keep_alive(). close() releases the hold."""

    __slots__ = ("_node", "_generation", "_closed")

    def __init__(self, node: Node, generation: int) -> None:
        self._node = node
        self._generation = generation
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        node = self._node
        # Links die with their generation; a recompute already dropped them.
        if node.alive and node.generation == self._generation:
            node.release_keep_alive()
