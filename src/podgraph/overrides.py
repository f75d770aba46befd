"""Override table — static substitution of definitions, fixed per container.

Overrides are resolved once, when the container is built: every chain
(A -> B -> C) is collapsed to its final replacement so lookups are a single
dict access. The table is read-only afterwards; there is no way to add an
override to a container that may already hold nodes for the original.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from podgraph.definition import NO_ARG, Definition, FamilyMember
from podgraph.errors import UsageError


class OverrideTable:
    """Maps original definitions (or family members) to their replacement."""

    __slots__ = ("_resolved",)

    def __init__(self, overrides: Iterable | Mapping = ()) -> None:
        if isinstance(overrides, Mapping):
            overrides = overrides.items()

        table: dict = {}
        for pair in overrides:
            try:
                original, replacement = pair
            except (TypeError, ValueError):
                raise UsageError(
                    f"Overrides must be (original, replacement) pairs, got {pair!r}"
                ) from None
            _validate(original, replacement)
            if original in table:
                raise UsageError(f"{original!r} is overridden more than once")
            table[original] = replacement

        self._resolved = MappingProxyType({key: _follow(table, key) for key in table})

    def __len__(self) -> int:
        return len(self._resolved)

    def __contains__(self, original) -> bool:
        return original in self._resolved

    def resolve(self, definition: Definition, arg=NO_ARG) -> Definition:
        """The definition to instantiate in place of definition(arg)."""
        if arg is not NO_ARG:
            member = self._resolved.get(FamilyMember(definition, arg))
            if member is not None:
                return member
        return self._resolved.get(definition, definition)


def _validate(original, replacement) -> None:
    if not isinstance(replacement, Definition):
        raise UsageError(f"Override replacement must be a Definition, got {replacement!r}")
    if isinstance(original, FamilyMember):
        if replacement.family:
            raise UsageError(
                f"{original!r} is a single family member; override it with a "
                f"non-family definition, not {replacement!r}"
            )
    elif isinstance(original, Definition):
        if original.family != replacement.family:
            raise UsageError(
                f"Cannot override {original!r} with {replacement!r}: "
                "family and non-family definitions are not interchangeable"
            )
    else:
        raise UsageError(f"Only definitions and family members can be overridden, got {original!r}")


def _follow(table: dict, key) -> Definition:
    """Walk a chain of overrides to its end, rejecting loops."""
    seen = [key]
    current = table[key]
    while current in table:
        if current in seen:
            chain = " -> ".join(repr(k) for k in seen + [current])
            raise UsageError(f"Override cycle: {chain}")
        seen.append(current)
        current = table[current]
    return current
