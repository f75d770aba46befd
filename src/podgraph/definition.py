"""Definitions — immutable descriptors of how to produce a value.

A Definition holds no state. It is a factory plus a few modifier flags,
and it is compared by identity: two definitions wrapping the same function
are still two different definitions. All mutable state lives in the nodes
a Container creates for it.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from podgraph.errors import UsageError

T = TypeVar("T")


class _NoArg:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NO_ARG"


# Family key of every non-family node.
NO_ARG: Any = _NoArg()


class Definition(Generic[T]):
    """How to produce a value: a factory and its modifiers."""

    __slots__ = ("_factory", "_auto_dispose", "_family", "_settable", "_name")

    def __init__(
        self,
        factory: Callable[..., T],
        *,
        auto_dispose: bool = False,
        family: bool = False,
        settable: bool = False,
        name: str | None = None,
    ) -> None:
        self._factory = factory
        self._auto_dispose = auto_dispose
        self._family = family
        self._settable = settable
        self._name = name or getattr(factory, "__name__", "definition")

    @property
    def factory(self) -> Callable[..., T]:
        return self._factory

    @property
    def auto_dispose(self) -> bool:
        return self._auto_dispose

    @property
    def family(self) -> bool:
        return self._family

    @property
    def settable(self) -> bool:
        return self._settable

    @property
    def name(self) -> str:
        return self._name

    def __call__(self, arg: Any) -> FamilyMember[T]:
        """Bind a family argument: session(1) is the member keyed by 1."""
        if not self._family:
            raise UsageError(f"{self!r} is not a family and takes no argument")
        return FamilyMember(self, arg)

    def override_with(self, replacement: Definition[T]) -> tuple[Definition[T], Definition[T]]:
        return (self, replacement)

    def override_with_value(self, value: T) -> tuple[Definition[T], Definition[T]]:
        """Override with a constant. Async definitions get an async constant."""
        if inspect.iscoroutinefunction(self._factory):

            async def _constant(ref, *args):
                return value

        else:

            def _constant(ref, *args):
                return value

        replacement = Definition(
            _constant,
            auto_dispose=self._auto_dispose,
            family=self._family,
            settable=self._settable,
            name=f"{self._name}<value>",
        )
        return (self, replacement)

    def __repr__(self) -> str:
        flags = [
            flag
            for flag, on in (
                ("family", self._family),
                ("auto_dispose", self._auto_dispose),
                ("settable", self._settable),
            )
            if on
        ]
        suffix = f", {', '.join(flags)}" if flags else ""
        return f"Definition({self._name}{suffix})"


@dataclass(frozen=True)
class FamilyMember(Generic[T]):
    """A family definition bound to one argument. Compared by value."""

    definition: Definition[T]
    arg: Any

    def __post_init__(self) -> None:
        try:
            hash(self.arg)
        except TypeError:
            raise UsageError(
                f"Family argument for {self.definition!r} must be hashable, "
                f"got {type(self.arg).__name__}"
            ) from None

    def override_with(self, replacement: Definition[T]) -> tuple[FamilyMember[T], Definition[T]]:
        return (self, replacement)

    def __repr__(self) -> str:
        return f"{self.definition.name}({self.arg!r})"


def unpack(target, arg=NO_ARG) -> tuple[Definition, Any]:
    """Normalize (definition, arg) or a FamilyMember into a (definition, arg) pair."""
    if isinstance(target, FamilyMember):
        if arg is not NO_ARG:
            raise UsageError(f"{target!r} is already bound to an argument")
        return target.definition, target.arg
    if not isinstance(target, Definition):
        raise UsageError(f"Expected a Definition, got {type(target).__name__}")
    if arg is not NO_ARG:
        return target(arg).definition, arg
    return target, NO_ARG


def provider(
    fn: Callable[..., T] | None = None,
    *,
    auto_dispose: bool = False,
    family: bool = False,
    name: str | None = None,
):
    """Decorator/factory to declare a Definition from a function.

    Usage:
        @provider
        def greeting(ref):
            return "Hello world"

        @provider(auto_dispose=True, family=True)
        def session(ref, user_id):
            ref.on_dispose(lambda: print("bye", user_id))
            return {"user": user_id}

        container.read(greeting)      # "Hello world"
        container.read(session(1))    # {"user": 1}
    """

    def wrap(factory: Callable[..., T]) -> Definition[T]:
        return Definition(factory, auto_dispose=auto_dispose, family=family, name=name)

    if fn is None:
        return wrap
    return wrap(fn)


def state_provider(
    fn: Callable[..., T] | None = None,
    *,
    auto_dispose: bool = False,
    family: bool = False,
    name: str | None = None,
):
    """Like provider(), but the value can be replaced with Container.set().

    Usage:
        counter = state_provider(lambda ref: 0)

        container.read(counter)     # 0
        container.set(counter, 1)
        container.read(counter)     # 1
    """

    def wrap(factory: Callable[..., T]) -> Definition[T]:
        return Definition(
            factory, auto_dispose=auto_dispose, family=family, settable=True, name=name
        )

    if fn is None:
        return wrap
    return wrap(fn)
