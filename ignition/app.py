"""
Ignition - Application Lifecycle

One process-wide state holder for a component system:

  config           merged configuration read from files
  expanded_config  config after expansion, ready to instantiate
  system           instantiated components (while running or suspended)
  failure          last failure with whatever partial system it left behind
  phase            stopped | starting | running | stopping |
                   suspended | suspending | resuming | failed

Every transition and every phase read happens under one re-entrant lock,
including the time spent inside component callbacks. Any exception raised
during a transition moves the phase to `failed` and is recorded; recovery
is an explicit stop() followed by start().

Usage:
    from ignition.app import App

    app = App(local_config="local.yaml", resource_dirs=["config"])
    app.start()
    app.suspend()
    app.configure()   # pick up refreshed config while suspended
    app.resume()
    app.stop()
"""

from __future__ import annotations

import importlib
import logging
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol

from ignition import config_loader
from ignition import system as graph
from ignition.config_loader import KEYS_KEY
from ignition.errors import ComponentError, ConfigLoadError, IgnitionError
from ignition.logging import log_event
from ignition.registry import REGISTRY, Registry
from ignition.system import Failure

logger = logging.getLogger("ignition.app")


class Phase(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    SUSPENDED = "suspended"
    SUSPENDING = "suspending"
    RESUMING = "resuming"
    FAILED = "failed"


@dataclass
class TransitionRecord:
    """Immutable record of a phase change."""
    from_phase: Phase
    to_phase: Phase
    operation: str
    keys: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


class ChangeDetector(Protocol):
    """Reports which modules changed on disk since the last call."""

    def changed_modules(self) -> Iterable[str]:
        ...


def reload_modules(detector: ChangeDetector | None) -> list[str]:
    """Reload every module the detector reports. Returns their names."""
    if detector is None:
        return []
    reloaded = []
    for name in detector.changed_modules():
        module = sys.modules.get(name)
        if module is None:
            importlib.import_module(name)
        else:
            importlib.reload(module)
        reloaded.append(name)
    if reloaded:
        logger.info("Reloaded modules: %s", reloaded)
    return reloaded


class App:
    """
    Phase state machine over a component system.

    The `*_app` methods take explicit config sources; `configure`,
    `start`, `restart`, `resume` and `reload` use the sources given to
    the constructor, `*_dev` the development override file and `*_admin`
    the administrative resource directories.
    """

    HISTORY_LIMIT = 200

    def __init__(
        self,
        local_config: str | None = None,
        resource_dirs: Iterable[str] | str | None = ("config",),
        admin_dirs: Iterable[str] | str | None = None,
        dev_config: str | None = "config.local.yaml",
        registry: Registry | None = None,
        reloader: ChangeDetector | None = None,
    ):
        self.local_config = local_config
        self.resource_dirs = _as_list(resource_dirs)
        self.admin_dirs = _as_list(admin_dirs) if admin_dirs is not None else self.resource_dirs
        self.dev_config = dev_config
        self.registry = registry or REGISTRY
        self.reloader = reloader

        self._lock = threading.RLock()
        self._config: dict[str, Any] | None = None
        self._expanded: dict[str, Any] | None = None
        # Keys whose expansion is current; None means all of them.
        self._expanded_keys: set[str] | None = None
        self._system: dict[str, Any] | None = None
        self._failure: Failure | None = None
        self._phase = Phase.STOPPED
        self._history: deque[TransitionRecord] = deque(maxlen=self.HISTORY_LIMIT)

    # ── Predicates ───────────────────────────────────────────

    def is_stopped(self) -> bool:
        with self._lock:
            return self._phase is Phase.STOPPED

    def is_starting(self) -> bool:
        with self._lock:
            return self._phase is Phase.STARTING

    def is_running(self) -> bool:
        with self._lock:
            return self._phase is Phase.RUNNING

    def is_stopping(self) -> bool:
        with self._lock:
            return self._phase is Phase.STOPPING

    def is_suspended(self) -> bool:
        with self._lock:
            return self._phase is Phase.SUSPENDED

    def is_suspending(self) -> bool:
        with self._lock:
            return self._phase is Phase.SUSPENDING

    def is_resuming(self) -> bool:
        with self._lock:
            return self._phase is Phase.RESUMING

    def is_failed(self) -> bool:
        with self._lock:
            return self._phase is Phase.FAILED

    def is_configured(self) -> bool:
        with self._lock:
            return self._expanded is not None

    # ── Snapshots ────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def config(self) -> dict[str, Any] | None:
        with self._lock:
            return self._config

    @property
    def expanded_config(self) -> dict[str, Any] | None:
        with self._lock:
            return self._expanded

    @property
    def system(self) -> dict[str, Any] | None:
        with self._lock:
            return self._system

    @property
    def failure(self) -> Failure | None:
        with self._lock:
            return self._failure

    @property
    def exception(self) -> Exception | None:
        with self._lock:
            return self._failure.error if self._failure else None

    @property
    def history(self) -> list[TransitionRecord]:
        with self._lock:
            return list(self._history)

    def snapshot(self) -> dict[str, Any]:
        """Consistent view of the whole state tuple."""
        with self._lock:
            return {
                "phase": self._phase,
                "config": self._config,
                "expanded_config": self._expanded,
                "system": self._system,
                "failure": self._failure,
            }

    def status(self, *keys: str) -> dict[str, Any]:
        """Phase plus a per-component view (all live components by default)."""
        with self._lock:
            live = graph.component_keys(self._system or {})
            wanted = list(keys) if keys else live
            return {
                "phase": self._phase.value,
                "configured": self._expanded is not None,
                "components": {
                    k: (self._phase.value if k in live else Phase.STOPPED.value)
                    for k in wanted
                },
                "error": str(self._failure.error) if self._failure else None,
            }

    # ── Internals (lock held) ────────────────────────────────

    def _set_phase(self, to: Phase, operation: str, keys: Iterable[str] = ()) -> None:
        record = TransitionRecord(self._phase, to, operation, list(keys))
        self._history.append(record)
        log_event(
            logger, logging.INFO, "phase_transition",
            **{
                "phase.from": record.from_phase.value,
                "phase.to": to.value,
                "operation": operation,
                "keys": record.keys,
            },
        )
        self._phase = to

    def _fail(self, error: Exception, operation: str, keys: Iterable[str] = ()) -> None:
        if isinstance(error, ComponentError):
            failure = Failure(error, error.key, error.partial_system)
        else:
            failure = Failure(error, None, self._live_system())
        self._failure = failure
        self._system = None
        logger.error(
            "Exception during %s: %s", self._phase.value, error,
            exc_info=(type(error), error, error.__traceback__),
        )
        self._set_phase(Phase.FAILED, operation, keys)

    def _live_system(self) -> dict[str, Any] | None:
        if self._system is not None:
            return self._system
        if self._failure is not None:
            return self._failure.partial_system
        return None

    def _load(self, local_file: str | None, resource_dirs: Any) -> dict[str, Any]:
        if local_file is None and resource_dirs is None:
            if self._config is None:
                raise ConfigLoadError("No configuration sources given and nothing to reload")
            return config_loader.load(config=self._config, registry=self.registry)
        return config_loader.load(
            local_file=local_file, resource_dirs=resource_dirs, registry=self.registry,
        )

    def _expand_missing(self, keys: list[str]) -> None:
        """Expand `keys` and their dependencies where no expansion exists yet."""
        if self._expanded_keys is None:
            return
        missing = graph.closure(self._config, keys, self.registry) - self._expanded_keys
        if not missing:
            return
        fresh = graph.expand(self._config, sorted(missing), self.registry)
        expanded = dict(self._expanded)
        for k in missing:
            expanded[k] = fresh[k]
        self._expanded = expanded
        self._expanded_keys = self._expanded_keys | missing

    # ── Configure ────────────────────────────────────────────

    def configure_app(
        self,
        local_file: str | None = None,
        resource_dirs: Iterable[str] | str | None = None,
        keys: Iterable[str] | None = None,
    ) -> Phase:
        """
        Load and expand configuration. Without sources the previous config
        is reloaded from its provenance record. With keys and an existing
        config, only the expansion for those keys is recomputed.

        Raises:
            ConfigLoadError: sources missing or unusable; state unchanged
        """
        keys = list(keys) if keys else None
        with self._lock:
            if keys and self._config is not None:
                config = dict(self._config)
            else:
                config = self._load(local_file, resource_dirs)
            if keys:
                config[KEYS_KEY] = keys
            try:
                expanded = graph.expand(config, keys, self.registry)
                if keys is None:
                    expanded_keys = None
                elif self._expanded is not None:
                    scope = graph.closure(config, keys, self.registry)
                    expanded = {
                        k: (self._expanded[k]
                            if k not in scope and k in self._expanded else v)
                        for k, v in expanded.items()
                    }
                    expanded_keys = (None if self._expanded_keys is None
                                     else self._expanded_keys | scope)
                else:
                    expanded_keys = graph.closure(config, keys, self.registry)
            except IgnitionError:
                raise
            except Exception as e:
                raise ConfigLoadError(f"Cannot expand configuration: {e}") from e
            self._config = config
            self._expanded = expanded
            self._expanded_keys = expanded_keys
            logger.info("Configured %d components", len(graph.component_keys(config)))
            return self._phase

    def configure(self, *keys: str) -> Phase:
        return self.configure_app(self.local_config, self.resource_dirs, keys)

    def configure_dev(self, *keys: str) -> Phase:
        return self.configure_app(self.dev_config, self.resource_dirs, keys)

    def configure_admin(self, *keys: str) -> Phase:
        return self.configure_app(self.local_config, self.admin_dirs, keys)

    def reconfigure(self) -> Phase:
        """Reload the current config from the sources it was read from."""
        return self.configure_app(None, None)

    # ── Start ────────────────────────────────────────────────

    def start_app(
        self,
        local_file: str | None = None,
        resource_dirs: Iterable[str] | str | None = None,
        keys: Iterable[str] | None = None,
    ) -> Phase:
        """
        Start all components (from stopped) or the given keys (merged into
        the live system). A suspended system is resumed instead; a failed
        one must be stopped first.
        """
        keys = list(keys) if keys else []
        with self._lock:
            if self._phase is Phase.SUSPENDED:
                return self.resume(*keys)
            if self._phase is Phase.FAILED:
                logger.warning("Start ignored: system failed, stop it first")
                return self._phase
            if self._expanded is None:
                self.configure_app(local_file, resource_dirs, keys)

            if not keys and self._phase is not Phase.STOPPED:
                return self._phase

            was_stopped = self._phase is Phase.STOPPED
            try:
                if was_stopped:
                    self._set_phase(Phase.STARTING, "start", keys)
                self._expand_missing(keys or graph.component_keys(self._config))
                outcome = graph.build(
                    self._expanded, keys or None, self._system, self.registry,
                )
                self._system = outcome.unwrap()
                if was_stopped:
                    self._set_phase(Phase.RUNNING, "start", keys)
                self._failure = None
            except Exception as e:
                self._fail(e, "start", keys)
            return self._phase

    def start(self, *keys: str) -> Phase:
        return self.start_app(self.local_config, self.resource_dirs, keys)

    def start_dev(self, *keys: str) -> Phase:
        return self.start_app(self.dev_config, self.resource_dirs, keys)

    def start_admin(self, *keys: str) -> Phase:
        return self.start_app(self.local_config, self.admin_dirs, keys)

    # ── Stop ─────────────────────────────────────────────────

    def stop(self, *keys: str) -> Phase:
        """
        Full stop: halt everything (the live system, or the partial system
        left by a failure) and clear config and state. Partial stop: halt
        the keys, drop them from the system, keep the current phase.
        """
        keys = list(keys)
        with self._lock:
            if self._phase is Phase.STOPPED:
                return self._phase
            previous = self._phase
            try:
                self._set_phase(Phase.STOPPING, "stop", keys)
                target = self._live_system()
                if keys:
                    if target is not None:
                        remaining = graph.halt(target, keys, self.registry).unwrap()
                        if self._system is not None:
                            self._system = remaining
                        else:
                            self._failure.partial_system = remaining
                    self._set_phase(previous, "stop", keys)
                else:
                    if target is not None:
                        graph.halt(target, None, self.registry).unwrap()
                    self._system = None
                    self._expanded = None
                    self._expanded_keys = None
                    self._config = None
                    self._failure = None
                    self._set_phase(Phase.STOPPED, "stop")
            except Exception as e:
                self._fail(e, "stop", keys)
            return self._phase

    def restart(self, *keys: str) -> Phase:
        with self._lock:
            self.stop(*keys)
            return self.start(*keys)

    # ── Suspend / Resume ─────────────────────────────────────

    def suspend(self, *keys: str) -> Phase:
        """Suspend a running system; components without suspend stay live."""
        keys = list(keys)
        with self._lock:
            if self._phase is not Phase.RUNNING:
                return self._phase
            try:
                self._set_phase(Phase.SUSPENDING, "suspend", keys)
                self._system = graph.suspend(
                    self._system, keys or None, self.registry,
                ).unwrap()
                self._set_phase(Phase.SUSPENDED, "suspend", keys)
                self._failure = None
            except Exception as e:
                self._fail(e, "suspend", keys)
            return self._phase

    def resume(self, *keys: str) -> Phase:
        """Resume a suspended system with the current expanded config; start a stopped one."""
        keys = list(keys)
        with self._lock:
            if self._phase is Phase.STOPPED:
                return self.start(*keys)
            if self._phase is not Phase.SUSPENDED:
                return self._phase
            try:
                self._set_phase(Phase.RESUMING, "resume", keys)
                self._expand_missing(keys or graph.component_keys(self._config))
                self._system = graph.resume(
                    self._expanded, self._system, keys or None, self.registry,
                ).unwrap()
                self._set_phase(Phase.RUNNING, "resume", keys)
                self._failure = None
            except Exception as e:
                self._fail(e, "resume", keys)
            return self._phase

    # ── Reload ───────────────────────────────────────────────

    def reload(self, *keys: str) -> Phase:
        """
        Stopped: reload changed code only. Otherwise stop, reload changed
        code and start again.
        """
        with self._lock:
            if self._phase is Phase.STOPPED:
                reload_modules(self.reloader)
                return self._phase
            self.stop(*keys)
            reload_modules(self.reloader)
            return self.start(*keys)


def _as_list(value: Iterable[str] | str | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# ═══════════════════════════════════════════════════════════════════
# Singleton / Module-level Access
# ═══════════════════════════════════════════════════════════════════

_instance: App | None = None
_instance_lock = threading.Lock()


def get_app(**kwargs: Any) -> App:
    """
    Get or create the process-wide app. Keyword arguments are passed to
    App() on first call only.
    """
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = App(**kwargs)
        return _instance


def reset_app() -> None:
    """Reset singleton for testing."""
    global _instance
    with _instance_lock:
        _instance = None


def configure(*keys: str) -> Phase:
    return get_app().configure(*keys)


def start(*keys: str) -> Phase:
    return get_app().start(*keys)


def stop(*keys: str) -> Phase:
    return get_app().stop(*keys)


def restart(*keys: str) -> Phase:
    return get_app().restart(*keys)


def suspend(*keys: str) -> Phase:
    return get_app().suspend(*keys)


def resume(*keys: str) -> Phase:
    return get_app().resume(*keys)


def reload(*keys: str) -> Phase:
    return get_app().reload(*keys)
