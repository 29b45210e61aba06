"""
Ignition - Exception Hierarchy

Typed errors so callers can distinguish between:
- Structural failures (bad config, cycles, ambiguous dispatch, dangling refs)
  raised before any component has been touched
- Component failures raised by a component's own init/halt/suspend/resume,
  after some side effects may already have happened

Each error carries a `detail` dict with the keyword arguments it was built with.
"""

from __future__ import annotations

from typing import Any, Iterable


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class IgnitionError(Exception):
    """Base exception for all Ignition errors."""
    structural: bool = True

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Structural Errors
# ═══════════════════════════════════════════════════════════════

class ConfigLoadError(IgnitionError):
    """A config source is missing or unparseable, or a key's module cannot be loaded."""

    def __init__(self, message: str, path: str | None = None, key: str | None = None):
        self.path = path
        self.key = key
        super().__init__(message, path=path, key=key)


class CyclicDependencyError(IgnitionError):
    """References between components form a cycle."""

    def __init__(self, cycle: Iterable[str]):
        self.cycle = list(cycle)
        super().__init__(
            "Cyclic dependency: " + " -> ".join(self.cycle),
            cycle=self.cycle,
        )


class AmbiguousDispatchError(IgnitionError):
    """Two ancestors at the same depth register different behavior."""

    def __init__(self, tag: str, op: str, candidates: Iterable[str]):
        self.tag = tag
        self.op = op
        self.candidates = list(candidates)
        super().__init__(
            f"Ambiguous {op!r} behavior for {tag!r}: inherited from {self.candidates}",
            tag=tag, op=op, candidates=self.candidates,
        )


class UnregisteredTagError(IgnitionError):
    """No behavior and no default exists for a required operation."""

    def __init__(self, tag: str, op: str):
        self.tag = tag
        self.op = op
        super().__init__(f"No {op!r} behavior registered for {tag!r}", tag=tag, op=op)


class InvalidReferenceError(IgnitionError):
    """A reference or key selection points at a key absent from the config."""

    def __init__(self, key: str, ref: Any = None):
        self.key = key
        self.ref = ref
        if ref is None:
            message = f"Key {key!r} is not present in the configuration"
        else:
            message = f"Invalid reference {ref!r} in {key!r}: target not present in the configuration"
        super().__init__(message, key=key, ref=ref)


# ═══════════════════════════════════════════════════════════════
# Component Errors
# ═══════════════════════════════════════════════════════════════

class ComponentError(IgnitionError):
    """
    A component's own behavior raised. The original exception is chained
    as __cause__.
    """
    structural = False

    def __init__(self, key: str, op: str, cause: BaseException,
                 partial_system: dict[str, Any] | None = None):
        self.key = key
        self.op = op
        self.partial_system = partial_system
        super().__init__(
            f"Error on {op} of {key!r}: {type(cause).__name__}: {cause}",
            key=key, op=op,
        )
