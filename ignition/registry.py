"""
Ignition - Dispatch Registry

Behavior lookup for component kinds. A tag is a component key such as
"myapp.db:pool". Tags form a DAG through `derive(child, parent)` edges;
behaviors are registered per (tag, operation).

Resolution:
  1. The tag's own registration wins.
  2. Otherwise ancestors are walked depth-first in declared parent order and
     grouped by their shortest distance from the tag.
  3. The nearest distance holding any registration decides. One distinct
     function is returned; more than one raises AmbiguousDispatchError.

Usage:
    from ignition import registry

    registry.derive("myapp.app:db", "ignition.system:var-make")

    @registry.init("myapp.db:pool")
    def init_pool(tag, config):
        return Pool(**config)

    fn = registry.resolve("myapp.db:pool", "init")
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable

from ignition.errors import AmbiguousDispatchError

logger = logging.getLogger("ignition.registry")

OPERATIONS = ("expand", "init", "suspend", "resume", "halt")

Behavior = Callable[..., Any]


class Registry:
    """Tag taxonomy plus a (tag, operation) -> function table."""

    def __init__(self):
        self._lock = threading.RLock()
        self._parents: dict[str, list[str]] = {}
        self._behaviors: dict[str, dict[str, Behavior]] = {}

    # ── Registration ─────────────────────────────────────────

    def register(self, tag: str, op: str, fn: Behavior) -> Behavior:
        """Register `fn` as the `op` behavior of `tag`. Returns `fn`."""
        _check_op(op)
        if not callable(fn):
            raise TypeError(f"Behavior for {tag!r}/{op} must be callable, got {fn!r}")
        with self._lock:
            self._behaviors.setdefault(tag, {})[op] = fn
        logger.debug("Registered %s behavior for %s", op, tag)
        return fn

    def unregister(self, tag: str, op: str) -> None:
        _check_op(op)
        with self._lock:
            self._behaviors.get(tag, {}).pop(op, None)

    def derive(self, child: str, parent: str) -> None:
        """Declare that `child` inherits behavior from `parent`."""
        if child == parent:
            raise ValueError(f"Tag {child!r} cannot derive from itself")
        with self._lock:
            if parent in self._parents.get(child, []):
                return
            if self._isa(parent, child):
                raise ValueError(
                    f"Deriving {child!r} from {parent!r} would create a cycle"
                )
            self._parents.setdefault(child, []).append(parent)

    def underive(self, child: str, parent: str) -> None:
        with self._lock:
            parents = self._parents.get(child, [])
            if parent in parents:
                parents.remove(parent)

    # Decorator helpers, e.g. @registry.init("myapp.db:pool")

    def expand(self, tag: str) -> Callable[[Behavior], Behavior]:
        return lambda fn: self.register(tag, "expand", fn)

    def init(self, tag: str) -> Callable[[Behavior], Behavior]:
        return lambda fn: self.register(tag, "init", fn)

    def suspend(self, tag: str) -> Callable[[Behavior], Behavior]:
        return lambda fn: self.register(tag, "suspend", fn)

    def resume(self, tag: str) -> Callable[[Behavior], Behavior]:
        return lambda fn: self.register(tag, "resume", fn)

    def halt(self, tag: str) -> Callable[[Behavior], Behavior]:
        return lambda fn: self.register(tag, "halt", fn)

    # ── Taxonomy queries ─────────────────────────────────────

    def parents(self, tag: str) -> list[str]:
        with self._lock:
            return list(self._parents.get(tag, []))

    def ancestors(self, tag: str) -> list[str]:
        """All ancestors of `tag` in depth-first, declared-parent order."""
        with self._lock:
            seen: list[str] = []
            self._walk(tag, seen)
            return seen

    def isa(self, child: str, parent: str) -> bool:
        """True when `child` is `parent` or derives from it."""
        with self._lock:
            return self._isa(child, parent)

    def select(self, keys: Iterable[str], selector: str) -> list[str]:
        """Keys from `keys` that are `selector` or derive from it, order kept."""
        with self._lock:
            return [k for k in keys if self._isa(k, selector)]

    def is_registered(self, tag: str, op: str) -> bool:
        with self._lock:
            return op in self._behaviors.get(tag, {})

    # ── Resolution ───────────────────────────────────────────

    def resolve(self, tag: str, op: str) -> Behavior | None:
        """
        Find the `op` behavior for `tag`, or None when nothing in its
        ancestry registers one.

        Raises:
            AmbiguousDispatchError: nearest registrations disagree
        """
        _check_op(op)
        with self._lock:
            own = self._behaviors.get(tag, {}).get(op)
            if own is not None:
                return own

            for depth_tags in self._levels(tag):
                found: list[tuple[str, Behavior]] = []
                for ancestor in depth_tags:
                    fn = self._behaviors.get(ancestor, {}).get(op)
                    if fn is not None:
                        found.append((ancestor, fn))
                if not found:
                    continue
                distinct = {id(fn) for _, fn in found}
                if len(distinct) > 1:
                    raise AmbiguousDispatchError(tag, op, [a for a, _ in found])
                return found[0][1]
            return None

    # ── Internals (lock held) ────────────────────────────────

    def _isa(self, child: str, parent: str) -> bool:
        if child == parent:
            return True
        stack = list(self._parents.get(child, []))
        seen: set[str] = set()
        while stack:
            tag = stack.pop()
            if tag == parent:
                return True
            if tag in seen:
                continue
            seen.add(tag)
            stack.extend(self._parents.get(tag, []))
        return False

    def _walk(self, tag: str, seen: list[str]) -> None:
        for parent in self._parents.get(tag, []):
            if parent not in seen:
                seen.append(parent)
                self._walk(parent, seen)

    def _levels(self, tag: str) -> list[list[str]]:
        """Ancestors grouped by shortest distance, DFS order within a level."""
        depth: dict[str, int] = {}

        def visit(node: str, d: int) -> None:
            for parent in self._parents.get(node, []):
                if parent not in depth or d < depth[parent]:
                    depth[parent] = d
                    visit(parent, d + 1)

        visit(tag, 1)
        order = self.ancestors(tag)
        levels: dict[int, list[str]] = {}
        for ancestor in order:
            levels.setdefault(depth[ancestor], []).append(ancestor)
        return [levels[d] for d in sorted(levels)]


def _check_op(op: str) -> None:
    if op not in OPERATIONS:
        raise ValueError(f"Unknown operation {op!r}; expected one of {OPERATIONS}")


# ═══════════════════════════════════════════════════════════════════
# Default registry / module-level access
# ═══════════════════════════════════════════════════════════════════

REGISTRY = Registry()

register = REGISTRY.register
derive = REGISTRY.derive
underive = REGISTRY.underive
resolve = REGISTRY.resolve
isa = REGISTRY.isa
ancestors = REGISTRY.ancestors
expand = REGISTRY.expand
init = REGISTRY.init
suspend = REGISTRY.suspend
resume = REGISTRY.resume
halt = REGISTRY.halt
