"""
Ignition - System Graph Operations

Pure-ish operations over config and system maps:

  expand(config, keys)          → config with each key's expand behavior applied
  build(config, keys, system)   → Outcome(system, failure) in dependency order
  init(config, keys)            → system map (raises ComponentError on failure)
  halt(system, keys)            → Outcome, reverse init order
  suspend(system, keys)         → Outcome, reverse init order
  resume(config, system, keys)  → Outcome, init order

Ordering: a system map's insertion order is its init order. build() appends
newly initialised keys after everything they reference, so halt() and
suspend() walk the map backwards and resume() walks the dependency order
of the fresh config.

Structural problems (cycles, dangling refs, missing or ambiguous behavior)
raise before any component behavior runs. A component failure does not
raise from build/halt/suspend/resume: it stops the walk and comes back as
Outcome.failure together with the partial system. Nothing is rolled back.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from ignition.config_loader import ENV_KEY, RESERVED_KEYS
from ignition.errors import (
    ComponentError,
    CyclicDependencyError,
    InvalidReferenceError,
    UnregisteredTagError,
)
from ignition.refs import Ref, RefSet, find_refs, substitute
from ignition.registry import REGISTRY, Registry

logger = logging.getLogger("ignition.system")


# ═══════════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════════

@dataclass
class Failure:
    """A failure plus the system as it stood when it happened."""
    error: Exception
    key: str | None
    partial_system: dict[str, Any] | None


@dataclass
class Outcome:
    """Result of a graph operation: the resulting system and any failure."""
    system: dict[str, Any]
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self) -> dict[str, Any]:
        """Return the system, or raise the failure's ComponentError."""
        if self.failure is not None:
            raise self.failure.error
        return self.system


# ═══════════════════════════════════════════════════════════════════
# Graph helpers
# ═══════════════════════════════════════════════════════════════════

def component_keys(m: dict[str, Any]) -> list[str]:
    """Keys of a config or system map, minus the reserved metadata."""
    return [k for k in m if k not in RESERVED_KEYS]


def _metadata(m: dict[str, Any]) -> dict[str, Any]:
    return {k: m[k] for k in RESERVED_KEYS if k in m}


def select_keys(available: list[str], keys: Iterable[str] | None,
                registry: Registry, strict: bool = True) -> list[str]:
    """
    Expand a key selection through the taxonomy: each requested key picks
    every available key that is it or derives from it.
    """
    if keys is None:
        return list(available)
    selected: list[str] = []
    for k in keys:
        matched = registry.select(available, k)
        if not matched and strict:
            raise InvalidReferenceError(k)
        for m in matched:
            if m not in selected:
                selected.append(m)
    return selected


def ref_target(available: list[str], owner: str, ref: Ref, registry: Registry) -> str:
    """Key a Ref points at: the key itself, else its single descendant."""
    if ref.key in available:
        return ref.key
    matched = registry.select(available, ref.key)
    if len(matched) != 1:
        raise InvalidReferenceError(owner, ref)
    return matched[0]


def dependencies(config: dict[str, Any], key: str, registry: Registry) -> list[str]:
    """Keys that `key`'s config value references, in order of appearance."""
    available = component_keys(config)
    deps: list[str] = []
    for r in find_refs(config[key]):
        if isinstance(r, Ref):
            targets = [ref_target(available, key, r, registry)]
        else:
            targets = [t for t in registry.select(available, r.selector) if t != key]
        for t in targets:
            if t not in deps:
                deps.append(t)
    return deps


def dependency_order(config: dict[str, Any], keys: Iterable[str] | None,
                     registry: Registry | None = None) -> list[str]:
    """
    Selected keys plus their transitive dependencies, every key after all
    keys it references.

    Raises:
        InvalidReferenceError: a selection or Ref points nowhere
        CyclicDependencyError: references form a cycle
    """
    registry = registry or REGISTRY
    selected = select_keys(component_keys(config), keys, registry)

    order: list[str] = []
    done: set[str] = set()
    path: list[str] = []

    def visit(key: str) -> None:
        if key in done:
            return
        if key in path:
            raise CyclicDependencyError(path[path.index(key):] + [key])
        path.append(key)
        for dep in dependencies(config, key, registry):
            visit(dep)
        path.pop()
        done.add(key)
        order.append(key)

    for key in selected:
        visit(key)
    return order


def closure(config: dict[str, Any], keys: Iterable[str], registry: Registry) -> set[str]:
    found: set[str] = set()
    stack = list(select_keys(component_keys(config), keys, registry))
    while stack:
        key = stack.pop()
        if key in found:
            continue
        found.add(key)
        stack.extend(dependencies(config, key, registry))
    return found


def _behavior(registry: Registry, key: str, op: str, required: bool = False):
    fn = registry.resolve(key, op)
    if fn is None and required:
        raise UnregisteredTagError(key, op)
    return fn


def _resolver(system: dict[str, Any], registry: Registry):
    available = component_keys(system)

    def resolve(placeholder: Ref | RefSet) -> Any:
        if isinstance(placeholder, Ref):
            return system[ref_target(available, "<system>", placeholder, registry)]
        return {k: system[k] for k in registry.select(available, placeholder.selector)}

    return resolve


def _fail(system: dict[str, Any], key: str, op: str, exc: Exception) -> Outcome:
    error = ComponentError(key, op, exc, partial_system=system)
    error.__cause__ = exc
    logger.warning("Component %s failed during %s: %s", key, op, exc)
    return Outcome(system, Failure(error, key, system))


# ═══════════════════════════════════════════════════════════════════
# Expand
# ═══════════════════════════════════════════════════════════════════

def expand(config: dict[str, Any], keys: Iterable[str] | None = None,
           registry: Registry | None = None) -> dict[str, Any]:
    """
    Apply each selected key's expand behavior (default: identity). A key
    selection also covers the selected keys' transitive dependencies;
    other keys and the reserved metadata are copied through unchanged.
    """
    registry = registry or REGISTRY
    if keys is None:
        targets = set(component_keys(config))
    else:
        targets = closure(config, keys, registry)

    result: dict[str, Any] = {}
    for key, value in config.items():
        if key in targets:
            fn = _behavior(registry, key, "expand")
            result[key] = fn(key, value) if fn else value
        else:
            result[key] = value
    return result


# ═══════════════════════════════════════════════════════════════════
# Init
# ═══════════════════════════════════════════════════════════════════

def build(config: dict[str, Any], keys: Iterable[str] | None = None,
          system: dict[str, Any] | None = None,
          registry: Registry | None = None) -> Outcome:
    """
    Instantiate the selected keys and their dependencies. Keys already in
    `system` are reused; new ones are appended in dependency order.
    """
    registry = registry or REGISTRY
    order = dependency_order(config, keys, registry)

    new_system: dict[str, Any] = dict(system or {})
    new_system.update(_metadata(config))
    pending = [k for k in order if k not in new_system]
    behaviors = {k: _behavior(registry, k, "init", required=True) for k in pending}

    resolve = _resolver(new_system, registry)
    for key in pending:
        value = substitute(config[key], resolve)
        try:
            instance = behaviors[key](key, value)
        except Exception as e:
            return _fail(new_system, key, "init", e)
        new_system[key] = instance
        resolve = _resolver(new_system, registry)
        logger.debug("Initialised %s", key)
    return Outcome(new_system)


def init(config: dict[str, Any], keys: Iterable[str] | None = None,
         registry: Registry | None = None) -> dict[str, Any]:
    """Like build() on an empty system, but raises ComponentError on failure."""
    return build(config, keys, registry=registry).unwrap()


# ═══════════════════════════════════════════════════════════════════
# Halt / Suspend / Resume
# ═══════════════════════════════════════════════════════════════════

def halt(system: dict[str, Any], keys: Iterable[str] | None = None,
         registry: Registry | None = None) -> Outcome:
    """
    Halt selected keys (default: all) in reverse init order. Halted keys
    are removed from the returned system; default halt is a no-op.
    """
    registry = registry or REGISTRY
    present = component_keys(system)
    targets = set(select_keys(present, keys, registry, strict=False))
    return _halt_exact(system, [k for k in reversed(present) if k in targets], registry)


def _halt_exact(system: dict[str, Any], ordered: list[str], registry: Registry) -> Outcome:
    """Halt exactly `ordered`, in the order given."""
    behaviors = {k: _behavior(registry, k, "halt") for k in ordered}

    remaining = dict(system)
    for key in ordered:
        fn = behaviors[key]
        if fn is not None:
            try:
                fn(key, remaining[key])
            except Exception as e:
                return _fail(remaining, key, "halt", e)
        del remaining[key]
        logger.debug("Halted %s", key)
    return Outcome(remaining)


def suspend(system: dict[str, Any], keys: Iterable[str] | None = None,
            registry: Registry | None = None) -> Outcome:
    """
    Suspend selected keys in reverse init order. Keys without a suspend
    behavior stay fully live. A behavior returning None keeps the value.
    """
    registry = registry or REGISTRY
    present = component_keys(system)
    targets = set(select_keys(present, keys, registry, strict=False))
    ordered = [k for k in reversed(present) if k in targets]
    behaviors = {k: _behavior(registry, k, "suspend") for k in ordered}

    new_system = dict(system)
    for key in ordered:
        fn = behaviors[key]
        if fn is None:
            continue
        try:
            result = fn(key, new_system[key])
        except Exception as e:
            return _fail(new_system, key, "suspend", e)
        if result is not None:
            new_system[key] = result
        logger.debug("Suspended %s", key)
    return Outcome(new_system)


def resume(config: dict[str, Any], system: dict[str, Any],
           keys: Iterable[str] | None = None,
           registry: Registry | None = None) -> Outcome:
    """
    Resume a suspended system against a (possibly refreshed) expanded
    config, in init order. Existing keys go through resume(tag, prior,
    fresh), which defaults to keeping `prior`; keys new to the config are
    initialised. On a full resume, keys no longer in the config are halted.
    """
    registry = registry or REGISTRY
    order = dependency_order(config, keys, registry)
    behaviors = {
        k: _behavior(registry, k, "resume") if k in system
        else _behavior(registry, k, "init", required=True)
        for k in order
    }

    new_system = dict(system)
    if keys is None:
        gone = [k for k in reversed(component_keys(system)) if k not in config]
        if gone:
            outcome = _halt_exact(new_system, gone, registry)
            if not outcome.ok:
                return outcome
            new_system = outcome.system
    new_system.update(_metadata(config))

    for key in order:
        value = substitute(config[key], _resolver(new_system, registry))
        fn = behaviors[key]
        try:
            if key in system:
                instance = fn(key, system[key], value) if fn else system[key]
            else:
                instance = fn(key, value)
        except Exception as e:
            return _fail(new_system, key, "resume", e)
        new_system[key] = instance
        logger.debug("Resumed %s", key)
    return Outcome(new_system)


# ═══════════════════════════════════════════════════════════════════
# Process-wide bindings ("vars")
# ═══════════════════════════════════════════════════════════════════

def resolve_symbol(symbol: str) -> Any:
    """'package.module:attr.sub' → the named attribute."""
    module_name, sep, attr = str(symbol).partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {symbol!r}")
    target: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)
    return target


def make_var(tag: str, value: Any) -> Any:
    """Bind `value` to the attribute named by `tag` ('module:name')."""
    module_name, sep, name = str(tag).partition(":")
    if not sep or not module_name or not name:
        raise ValueError(f"Expected 'module:name', got {tag!r}")
    module = importlib.import_module(module_name)
    setattr(module, name.replace("-", "_"), value)
    return value


@dataclass(frozen=True)
class VarHandle:
    """A resolved but not yet dereferenced 'module:attr' binding."""
    module: str
    attr: str

    @classmethod
    def from_symbol(cls, symbol: Any) -> "VarHandle":
        if isinstance(symbol, VarHandle):
            return symbol
        module_name, sep, attr = str(symbol).partition(":")
        if not sep or not module_name or not attr:
            raise ValueError(f"Expected 'module:attribute', got {symbol!r}")
        importlib.import_module(module_name)
        return cls(module_name, attr)

    def deref(self) -> Any:
        return resolve_symbol(f"{self.module}:{self.attr}")


# ═══════════════════════════════════════════════════════════════════
# Built-in base tags
# ═══════════════════════════════════════════════════════════════════

KEY = "ignition.system:key"
FUNCTION = "ignition.system:function"
NIL = "ignition.system:nil"
VALUE = "ignition.system:value"
VAR = "ignition.system:var"
VAR_MAKE = "ignition.system:var-make"
PREPPED_VAR = "ignition.system:prepped-var"
PROPERTIES = "ignition.system:properties"
ENV = ENV_KEY


def _init_function(tag, value):
    fn = resolve_symbol(value) if isinstance(value, str) else value
    if not callable(fn):
        raise TypeError(f"{tag}: expected a callable, got {type(fn).__name__}")
    return fn(tag)


def _deref(tag, value):
    if isinstance(value, VarHandle):
        return value.deref()
    return resolve_symbol(value)


def install_builtins(registry: Registry) -> Registry:
    """Register the base tags on `registry`. Safe to call repeatedly."""
    registry.register(KEY, "init", lambda tag, value: tag)
    registry.register(FUNCTION, "init", _init_function)
    registry.register(NIL, "init", lambda tag, value: None)
    registry.register(VALUE, "init", lambda tag, value: value)
    registry.register(VALUE, "halt", lambda tag, value: value)
    registry.register(VAR, "init", _deref)
    registry.register(VAR_MAKE, "init", make_var)
    registry.register(VAR_MAKE, "halt", lambda tag, value: make_var(tag, None))
    registry.register(PREPPED_VAR, "expand", lambda tag, value: VarHandle.from_symbol(value))
    registry.register(PREPPED_VAR, "init", _deref)
    registry.register(ENV, "init", lambda tag, value: value)
    registry.derive(PROPERTIES, VALUE)
    return registry


install_builtins(REGISTRY)
