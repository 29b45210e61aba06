"""
Ignition - Application Lifecycle Orchestrator

Declarative component systems: configuration merged from YAML and env
files, expanded, instantiated in dependency order, and stopped, suspended
or resumed under one lock-protected phase state machine.

Usage:
    from ignition import App, registry

    @registry.init("myapp.db:pool")
    def init_pool(tag, config):
        return Pool(**config)

    @registry.halt("myapp.db:pool")
    def halt_pool(tag, pool):
        pool.close()

    app = App(resource_dirs=["config"])
    app.start()
"""

from ignition.app import App, ChangeDetector, Phase, TransitionRecord, get_app, reset_app
from ignition.config_loader import (
    KEYS_KEY,
    SOURCES_KEY,
    ConfigLoader,
    deep_merge,
    load,
    subsystems,
)
from ignition.errors import (
    AmbiguousDispatchError,
    ComponentError,
    ConfigLoadError,
    CyclicDependencyError,
    IgnitionError,
    InvalidReferenceError,
    UnregisteredTagError,
)
from ignition.refs import Ref, RefSet
from ignition.registry import REGISTRY, Registry
from ignition.system import (
    Failure,
    Outcome,
    VarHandle,
    build,
    expand,
    halt,
    init,
    resume,
    suspend,
)

__all__ = [
    "App", "ChangeDetector", "Phase", "TransitionRecord", "get_app", "reset_app",
    "KEYS_KEY", "SOURCES_KEY", "ConfigLoader", "deep_merge", "load", "subsystems",
    "AmbiguousDispatchError", "ComponentError", "ConfigLoadError",
    "CyclicDependencyError", "IgnitionError", "InvalidReferenceError",
    "UnregisteredTagError",
    "Ref", "RefSet", "REGISTRY", "Registry",
    "Failure", "Outcome", "VarHandle",
    "build", "expand", "halt", "init", "resume", "suspend",
]
