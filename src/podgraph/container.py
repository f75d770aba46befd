"""Container — the mutable root that owns every node.

Definitions are global-looking but stateless; a Container holds the state
for them: one node per (definition, family argument), created lazily on
first access. Containers are fully independent of each other, so each test
can simply build a fresh one.

Every public operation runs as a work unit under the container's lock:
graph mutations never interleave, and invalidations are swept (and
auto-dispose checks run) once, when the outermost unit exits.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from podgraph._tracking import WorkQueue, current_ref
from podgraph.async_value import AsyncData, AsyncError, AsyncValue
from podgraph.definition import NO_ARG, Definition, unpack
from podgraph.dispose import AutoDisposeScheduler, DisposePolicy
from podgraph.errors import CircularDependencyError, ContainerDisposedError, UsageError
from podgraph.node import Node, NodeState, Subscription
from podgraph.overrides import OverrideTable
from podgraph.ref import Ref

logger = logging.getLogger("podgraph.container")


class Container:
    """Owns the node table and the override table.

    Usage:
        greeting = provider(lambda ref: "Hello world")

        container = Container()
        container.read(greeting)  # "Hello world"

        french = Container(overrides=[greeting.override_with_value("Bonjour")])
        french.read(greeting)  # "Bonjour"
    """

    def __init__(
        self,
        overrides=(),
        *,
        dispose_policy: DisposePolicy = DisposePolicy.END_OF_WORK,
    ) -> None:
        self._overrides = OverrideTable(overrides)
        self._nodes: dict[tuple[Definition, Any], Node] = {}
        self._lock = threading.RLock()
        self._auto_dispose = AutoDisposeScheduler(self, dispose_policy)
        self._queue = WorkQueue(self._auto_dispose.on_idle)
        # Nodes whose synchronous factory is running, innermost last.
        self._stack: list[Node] = []
        self._tasks: set[asyncio.Task] = set()
        self._counter = itertools.count()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def dispose_policy(self) -> DisposePolicy:
        return self._auto_dispose.policy

    @contextmanager
    def _work(self) -> Iterator[None]:
        with self._lock:
            if self._disposed:
                raise ContainerDisposedError()
            self._queue.begin()
            try:
                yield
            finally:
                self._queue.end()

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several mutations; listeners see only the final state.

        Usage:
            with container.batch():
                container.set(first_name, "Bob")
                container.set(last_name, "Jones")
            # listeners of full_name fire once, here
        """
        with self._work():
            yield

    # --- Node table ---

    def _node_for(self, target, arg=NO_ARG, *, create: bool = True) -> Node | None:
        definition, arg = unpack(target, arg)
        if definition.family and arg is NO_ARG:
            raise UsageError(f"{definition!r} is a family; an argument is required")
        resolved = self._overrides.resolve(definition, arg)
        key = (resolved, arg)
        node = self._nodes.get(key)
        if node is None and create:
            node = Node(self, resolved, arg, next(self._counter), origin=definition)
            self._nodes[key] = node
            logger.debug("Created %r", node)
            self._auto_dispose.consider(node)
        return node

    def _cycle_path(self, node: Node) -> list[Node]:
        start = self._stack.index(node)
        return self._stack[start:] + [node]

    def _mark_dirty(self, nodes) -> None:
        """Mark nodes and everything downstream of them dirty.

        Dirty nodes with listeners are queued for the end-of-unit sweep;
        the rest recompute lazily when read.
        """
        stack = list(nodes)
        while stack:
            node = stack.pop()
            if not node.alive:
                continue
            if node.dirty:
                # Dependents are already dirty. A node left dirty by a failed
                # computation still needs its listeners swept.
                if node.subscriptions:
                    self._queue.schedule(node)
                continue
            node.dirty = True
            if node.subscriptions:
                self._queue.schedule(node)
            stack.extend(node.dependents)

    def _invalidate_node(self, node: Node) -> None:
        with self._work():
            if node in self._stack:
                raise UsageError(f"{node!r} cannot be invalidated while it is computing")
            self._mark_dirty([node])

    # --- Public operations ---

    def read(self, target, arg=NO_ARG):
        """Current value, computing it if needed. Creates no dependency.

        A synchronous definition in error state re-raises its exception;
        an asynchronous one returns its AsyncValue.
        """
        with self._work():
            return self._node_for(target, arg).get()

    def _read_node(self, node: Node):
        with self._work():
            return node.get()

    def watch(self, target, arg=NO_ARG):
        """Like read(), but the currently computing factory will recompute
        when target changes. Only valid inside a factory of this container.
        """
        ref = current_ref.get()
        if ref is None or ref.container is not self:
            raise UsageError("watch() can only be called while a factory of this container is computing")
        return ref.watch(target, arg)

    def _watch_from(self, ref: Ref, target, arg=NO_ARG, *, awaiting: bool = False):
        with self._work():
            watcher = ref.node
            node = self._node_for(target, arg)
            if node in self._stack:
                raise CircularDependencyError(self._cycle_path(node))
            if node is watcher:
                raise CircularDependencyError([node, node])
            # Edges of a dirty node belong to its previous computation.
            # Recomputing it first reports cycles through the stack above.
            node.ensure_fresh()
            # Existing edges were checked when they were first added.
            if node not in watcher.upstream():
                path = node.is_upstream_of(watcher)
                if path is not None:
                    raise CircularDependencyError([watcher] + path)
            watcher.link(node)
            if awaiting:
                watcher._awaiting.add(node)
            return node.get()

    def listen(
        self,
        target,
        listener: Callable[[Any, Any], None],
        arg=NO_ARG,
        *,
        fire_immediately: bool = False,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> Subscription:
        """Call listener(previous, next) on every committed change.

        Synchronous errors go to on_error(exc) instead; without on_error
        they are logged. Asynchronous definitions always pass AsyncValues
        to listener. With fire_immediately the listener is called once with
        (None, current) before this returns.
        """
        with self._work():
            node = self._node_for(target, arg)
            node.ensure_fresh()
            sub = Subscription(node, listener, on_error)
            node.add_subscription(sub)
            if fire_immediately:
                node.deliver_current(sub)
            return sub

    def invalidate(self, target, arg=NO_ARG) -> None:
        """Recompute target on next access; its dependents follow.

        Without an argument, a family definition invalidates all of its
        instantiated members. Nodes that do not exist yet are ignored.
        """
        with self._work():
            definition, arg = unpack(target, arg)
            if definition.family and arg is NO_ARG:
                resolved = self._overrides.resolve(definition)
                for node in list(self._nodes.values()):
                    if node.arg is not NO_ARG and (node.origin is definition or node.definition is resolved):
                        self._invalidate_node(node)
                return
            node = self._node_for(definition, arg, create=False)
            if node is not None:
                self._invalidate_node(node)

    def refresh(self, target, arg=NO_ARG):
        """Invalidate target and return its recomputed value."""
        with self._work():
            self.invalidate(target, arg)
            return self.read(target, arg)

    def set(self, target, value, arg=NO_ARG) -> None:
        """Replace the value of a state_provider node and notify."""
        with self._work():
            definition, arg = unpack(target, arg)
            if not definition.settable:
                raise UsageError(f"{definition!r} is not settable; declare it with state_provider()")
            node = self._node_for(definition, arg)
            node.ensure_fresh()
            node.set_value(value)

    def update(self, target, fn: Callable[[Any], Any], arg=NO_ARG) -> None:
        """set() to fn(current value)."""
        with self._work():
            self.set(target, fn(self.read(target, arg)), arg)

    async def resolve(self, target, arg=NO_ARG):
        """Wait for an async definition to settle; return data or raise.

        The node is kept alive while waiting. Synchronous definitions
        resolve immediately, like read().
        """
        with self._work():
            node = self._node_for(target, arg)
            node.hold()
        try:
            while True:
                with self._work():
                    if not node.alive:
                        raise UsageError(f"{node!r} was disposed while being resolved")
                    value = node.get()
                    task = node.task
                if not isinstance(value, AsyncValue):
                    return value
                if isinstance(value, AsyncData):
                    return value.value
                if isinstance(value, AsyncError):
                    raise value.error
                await asyncio.wait({task})
        finally:
            if not self._disposed:
                with self._work():
                    node.release()

    def _track_task(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _complete(self, node: Node, ref: Ref, outcome: AsyncValue) -> None:
        """Commit an async factory's result if its generation is still live."""
        if self._disposed:
            return
        with self._work():
            if not ref.mounted:
                logger.debug("Discarding stale completion of %r (generation %d)", node, ref.generation)
                return
            node._finish(ref)
            node.commit_async(outcome)

    # --- Introspection ---

    def exists(self, target, arg=NO_ARG) -> bool:
        """Whether a node for target is currently instantiated."""
        with self._lock:
            return self._node_for(target, arg, create=False) is not None

    def node_state(self, target, arg=NO_ARG) -> NodeState | None:
        with self._lock:
            node = self._node_for(target, arg, create=False)
            return node.state if node is not None else None

    def debug_nodes(self) -> dict[str, NodeState]:
        with self._lock:
            return {repr(node): node.state for node in self._nodes.values()}

    def flush_disposals(self) -> int:
        """Run pending auto-dispose checks now. Returns the number disposed."""
        with self._work():
            return self._auto_dispose.flush()

    # --- Teardown ---

    def dispose(self) -> None:
        """Dispose every node, newest first. Calling it twice is a no-op."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            self._auto_dispose.cancel()
            nodes = sorted(self._nodes.values(), key=lambda n: n.index, reverse=True)
            logger.debug("Disposing container with %d nodes", len(nodes))
            for node in nodes:
                node.dispose()
            self._nodes.clear()
            for task in list(self._tasks):
                task.cancel()

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else f"{len(self._nodes)} nodes"
        return f"Container({state})"
