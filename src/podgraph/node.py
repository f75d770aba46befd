"""Nodes — one instantiated definition inside a container.

A Node caches its definition's value, remembers which nodes it read
(dependencies) and which nodes read it (dependents), and delivers every
committed change to its subscriptions in registration order.

Recomputation is pull-based: invalidation only marks nodes dirty
(see Container._mark_dirty); a dirty node recomputes the next time it is
read, refreshing its own dirty dependencies first. Nodes with listeners
are pulled by the container's sweep at the end of the work unit.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Any, Callable

from podgraph._tracking import current_ref
from podgraph.async_value import AsyncData, AsyncError, AsyncLoading, AsyncValue
from podgraph.definition import NO_ARG, Definition
from podgraph.errors import CircularDependencyError, UsageError
from podgraph.ref import KeepAliveLink, Ref

if TYPE_CHECKING:
    from podgraph.container import Container

logger = logging.getLogger("podgraph.node")

Listener = Callable[[Any, Any], None]


class NodeState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    COMPUTING = "computing"
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"
    DESTROYED = "destroyed"


class Subscription:
    """Handle for a listener registered with Container.listen()."""

    __slots__ = ("_node", "_listener", "_on_error", "_closed")

    def __init__(self, node: Node, listener: Listener, on_error) -> None:
        self._node = node
        self._listener = listener
        self._on_error = on_error
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self):
        """Current value of the listened node."""
        if self._closed:
            raise UsageError("Subscription is closed")
        return self._node.container._read_node(self._node)

    def close(self) -> None:
        """Stop listening. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        node = self._node
        if node.container.disposed:
            return
        with node.container._work():
            node.remove_subscription(self)

    def _deliver(self, node: Node, previous, current, error) -> None:
        if self._closed:
            return
        try:
            if error is None:
                self._listener(previous, current)
            elif self._on_error is not None:
                self._on_error(error)
            else:
                logger.error("Unhandled error in %r", node, exc_info=error)
        except Exception:
            logger.exception("Listener of %r raised", node)


class Node:
    """Stateful instance of a definition (plus family argument) in a container."""

    __slots__ = (
        "container",
        "definition",
        "origin",
        "arg",
        "index",
        "state",
        "dirty",
        "generation",
        "dependencies",
        "dependents",
        "subscriptions",
        "_value",
        "_error",
        "_async",
        "_tracked",
        "_ref",
        "_task",
        "_on_dispose",
        "_on_cancel",
        "_on_resume",
        "_keep_alive",
        "_holds",
        "_cancelled",
        "_awaiting",
    )

    def __init__(
        self,
        container: Container,
        definition: Definition,
        arg: Any,
        index: int,
        origin: Definition | None = None,
    ) -> None:
        self.container = container
        self.definition = definition
        # The definition the caller asked for, before override resolution.
        self.origin = origin or definition
        self.arg = arg
        self.index = index
        self.state = NodeState.UNINITIALIZED
        self.dirty = True
        self.generation = 0
        self.dependencies: set[Node] = set()
        self.dependents: set[Node] = set()
        self.subscriptions: list[Subscription] = []
        self._value: Any = None
        self._error: BaseException | None = None
        self._async = False
        # Dependencies recorded by the running computation; None when idle.
        self._tracked: set[Node] | None = None
        self._ref: Ref | None = None
        self._task: asyncio.Task | None = None
        self._on_dispose: list[Callable[[], None]] = []
        self._on_cancel: list[Callable[[], None]] = []
        self._on_resume: list[Callable[[], None]] = []
        self._keep_alive = 0  # links from ref.keep_alive(), per generation
        self._holds = 0  # container-held references, e.g. resolve()
        self._cancelled = False
        # Async dependencies the running generation is awaiting via ref.future().
        self._awaiting: set[Node] = set()

    @property
    def key(self) -> tuple[Definition, Any]:
        return (self.definition, self.arg)

    @property
    def alive(self) -> bool:
        return self.state is not NodeState.DESTROYED

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def refcount(self) -> int:
        return len(self.subscriptions) + len(self.dependents) + self._keep_alive + self._holds

    def upstream(self) -> set[Node]:
        """Committed dependencies plus those recorded by a running computation."""
        if self._tracked is None:
            return set(self.dependencies)
        return self.dependencies | self._tracked

    def depth(self, memo: dict[Node, int]) -> int:
        """Longest dependency chain below this node; sources have depth 1."""
        depth = memo.get(self)
        if depth is None:
            depth = 1 + max((dep.depth(memo) for dep in self.upstream()), default=0)
            memo[self] = depth
        return depth

    # --- Reading ---

    def get(self):
        """Value after refreshing if dirty. Sync errors are re-raised."""
        if self.state is NodeState.DESTROYED:
            raise UsageError(f"{self!r} has been disposed")
        if self.state is NodeState.COMPUTING:
            raise CircularDependencyError(self.container._cycle_path(self))
        if self.dirty:
            self.refresh()
        if self.state is NodeState.ERROR and not self._async:
            raise self._error
        return self._value

    def ensure_fresh(self) -> None:
        if self.dirty:
            self.refresh()

    def _snapshot(self):
        """The value listeners see as 'previous' for the next commit."""
        if self._async or self.state is NodeState.READY:
            return self._value
        return None

    # --- Computing ---

    def refresh(self) -> None:
        """Run the factory for a new generation and commit the result."""
        container = self.container
        previous = self._snapshot()
        self._reset()
        self.generation += 1
        self.state = NodeState.COMPUTING
        self.dirty = False
        self._tracked = set()
        self._awaiting = set()
        ref = self._ref = Ref(container, self, self.generation)
        logger.debug("Computing %r (generation %d)", self, self.generation)

        container._stack.append(self)
        token = current_ref.set(ref)
        try:
            if self.definition.family:
                result = self.definition.factory(ref, self.arg)
            else:
                result = self.definition.factory(ref)
        except UsageError:
            self._rollback(ref)
            raise
        except Exception as exc:
            self._finish(ref)
            self._commit(previous, error=exc)
            return
        finally:
            current_ref.reset(token)
            container._stack.pop()

        if asyncio.iscoroutine(result):
            self._launch(ref, result, previous)
        else:
            self._finish(ref)
            self._commit(previous, value=result)

    def _reset(self) -> None:
        """Discard the current value before computing a new one."""
        if self._ref is not None:
            self._ref._revoke()
            self._ref._close_subscriptions()
        if self._tracked is not None:
            # A superseded async computation's edges are diffed on the next commit.
            self.dependencies |= self._tracked
            self._tracked = None
        callbacks = self._on_dispose
        self._on_dispose = []
        self._on_cancel = []
        self._on_resume = []
        self._run_callbacks(reversed(callbacks), "on_dispose")
        if self._keep_alive:
            self._keep_alive = 0
            self.refcount_changed()

    def _rollback(self, ref: Ref) -> None:
        """Undo a computation aborted by a UsageError. Nothing is cached."""
        ref._revoke()
        if self._tracked is not None:
            self.dependencies |= self._tracked
            self._tracked = None
        self.state = NodeState.UNINITIALIZED
        self.dirty = True
        self._value = None
        self._error = None
        self._async = False
        if self.subscriptions:
            self.container._queue.schedule(self)

    def _launch(self, ref: Ref, coro, previous) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._rollback(ref)
            raise UsageError(
                f"{self!r} is asynchronous and needs a running asyncio event loop"
            ) from None
        self._async = True
        self.state = NodeState.PENDING
        self._value = AsyncLoading()
        self._error = None
        self._task = loop.create_task(self._drive(ref, coro))
        self.container._track_task(self._task)
        self._notify(previous, self._value)

    async def _drive(self, ref: Ref, coro) -> None:
        # Runs in the task's own context copy; awaits keep seeing this Ref.
        current_ref.set(ref)
        try:
            value = await coro
        except Exception as exc:
            self.container._complete(self, ref, AsyncError(exc))
        else:
            self.container._complete(self, ref, AsyncData(value))

    def _finish(self, ref: Ref) -> None:
        """Replace the committed dependency set with the tracked one."""
        ref._revoke()
        tracked = self._tracked if self._tracked is not None else set()
        self._tracked = None
        removed = self.dependencies - tracked
        self._awaiting = set()
        self.dependencies = tracked
        for dep in removed:
            dep.dependents.discard(self)
            dep.refcount_changed()

    def _commit(self, previous, value=None, error=None) -> None:
        self._async = False
        if error is not None:
            self.state = NodeState.ERROR
            self._value = None
            self._error = error
            logger.debug("%r failed: %r", self, error)
        else:
            self.state = NodeState.READY
            self._value = value
            self._error = None
        self._notify(previous, value, error)

    def commit_async(self, outcome: AsyncValue) -> None:
        """Commit the completion of the current async generation."""
        previous = self._value
        self.state = NodeState.ERROR if outcome.has_error else NodeState.READY
        self._value = outcome
        self._error = outcome.error
        self._task = None
        self._notify(previous, outcome)
        # Dependents awaiting this result receive it through their await.
        self.container._mark_dirty(
            dependent
            for dependent in self.dependents
            if not (dependent.state is NodeState.PENDING and self in dependent._awaiting)
        )

    def set_value(self, value) -> None:
        """Replace the value from outside. Equal values are ignored."""
        if self.state is NodeState.READY:
            old = self._value
            if old is value or old == value:
                return
        previous = self._snapshot()
        self._commit(previous, value=value)
        self.container._mark_dirty(self.dependents)

    # --- Edges ---

    def link(self, dep: Node) -> None:
        """Record that the running computation watched dep."""
        if self._tracked is None:
            raise UsageError(f"{self!r} is not computing")
        self._tracked.add(dep)
        if self not in dep.dependents:
            dep.dependents.add(self)
            dep.refcount_changed()

    def is_upstream_of(self, target: Node) -> list[Node] | None:
        """Path self -> ... -> target along dependency edges, or None."""
        stack = [(self, [self])]
        seen = {self}
        while stack:
            node, path = stack.pop()
            for dep in node.upstream():
                if dep is target:
                    return path + [dep]
                if dep not in seen:
                    seen.add(dep)
                    stack.append((dep, path + [dep]))
        return None

    # --- Notification ---

    def add_subscription(self, sub: Subscription) -> None:
        self.subscriptions.append(sub)
        self.refcount_changed()

    def remove_subscription(self, sub: Subscription) -> None:
        try:
            self.subscriptions.remove(sub)
        except ValueError:
            return
        self.refcount_changed()

    def deliver_current(self, sub: Subscription) -> None:
        """fire_immediately: one notification reflecting the current state."""
        if self.state is NodeState.ERROR and not self._async:
            sub._deliver(self, None, None, self._error)
        else:
            sub._deliver(self, None, self._value, None)

    def _notify(self, previous, current, error=None) -> None:
        for sub in list(self.subscriptions):
            sub._deliver(self, previous, current, error)

    # --- Reference counting ---

    def keep_alive(self, generation: int) -> KeepAliveLink:
        self._keep_alive += 1
        self.refcount_changed()
        return KeepAliveLink(self, generation)

    def release_keep_alive(self) -> None:
        with self.container._work():
            self._keep_alive -= 1
            self.refcount_changed()

    def hold(self) -> None:
        self._holds += 1
        self.refcount_changed()

    def release(self) -> None:
        self._holds -= 1
        self.refcount_changed()

    def refcount_changed(self) -> None:
        if not self.alive or self.container.disposed:
            return
        if self.refcount() == 0:
            if not self._cancelled:
                self._cancelled = True
                self._run_callbacks(self._on_cancel, "on_cancel")
            self.container._auto_dispose.consider(self)
        elif self._cancelled:
            self._cancelled = False
            self._run_callbacks(self._on_resume, "on_resume")

    # --- Teardown ---

    def dispose(self) -> None:
        """Remove this node from the graph, then run its dispose callbacks."""
        if not self.alive:
            return
        container = self.container
        container._nodes.pop(self.key, None)

        upstream = self.upstream()
        downstream = list(self.dependents)
        for dep in upstream:
            dep.dependents.discard(self)
        for dependent in downstream:
            dependent.dependencies.discard(self)
            if dependent._tracked is not None:
                dependent._tracked.discard(self)
        self.dependencies = set()
        self.dependents = set()
        self._tracked = None

        self.state = NodeState.DESTROYED
        self.generation += 1  # late async completions are now stale
        self.dirty = False
        for sub in self.subscriptions:
            sub._closed = True
        self.subscriptions = []
        if self._ref is not None:
            self._ref._revoke()
            self._ref._close_subscriptions()
        self._value = None
        self._error = None
        self._task = None
        logger.debug("Disposed %r", self)

        callbacks = self._on_dispose
        self._on_dispose = []
        self._on_cancel = []
        self._on_resume = []
        self._run_callbacks(reversed(callbacks), "on_dispose")

        for dep in upstream:
            dep.refcount_changed()
        if not container.disposed:
            container._mark_dirty(downstream)

    def _run_callbacks(self, callbacks, kind: str) -> None:
        for callback in list(callbacks):
            try:
                callback()
            except Exception:
                logger.exception("%s callback of %r raised", kind, self)

    def __repr__(self) -> str:
        if self.arg is NO_ARG:
            return f"Node({self.definition.name})"
        return f"Node({self.definition.name}({self.arg!r}))"
