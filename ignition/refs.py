"""
Ignition - References

Config values may embed placeholders for other components:

  Ref(key)          → the instantiated value of `key`
  RefSet(selector)  → {key: value} for every instantiated key that is
                      `selector` or derives from it

Anything else is literal data. Placeholders are only resolved at init
time; expansion leaves them in place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator


@dataclass(frozen=True)
class Ref:
    key: str

    def __repr__(self) -> str:
        return f"Ref({self.key!r})"


@dataclass(frozen=True)
class RefSet:
    selector: str

    def __repr__(self) -> str:
        return f"RefSet({self.selector!r})"


def find_refs(value: Any) -> Iterator[Ref | RefSet]:
    """Yield every Ref/RefSet embedded in a (possibly nested) value."""
    if isinstance(value, (Ref, RefSet)):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from find_refs(v)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for v in value:
            yield from find_refs(v)


def substitute(value: Any, resolve: Callable[[Ref | RefSet], Any]) -> Any:
    """
    Return a copy of `value` with every placeholder replaced by
    `resolve(placeholder)`. Containers without placeholders are copied
    structurally; leaves are shared.
    """
    if isinstance(value, (Ref, RefSet)):
        return resolve(value)
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, resolve) for v in value]
    if isinstance(value, tuple):
        return tuple(substitute(v, resolve) for v in value)
    if isinstance(value, (set, frozenset)):
        return type(value)(substitute(v, resolve) for v in value)
    return value
