"""
Ignition - Configuration Loader

Builds one merged config map from resource directories and an optional
local override file.

Merge order (later overrides earlier):
  1. YAML resource files (*.yaml, *.yml), sorted by file name per directory
  2. Env resource files (*.env), materialised into nested maps
  3. Local override file (YAML or env)

Maps merge recursively key by key; lists and scalars are replaced.

The merged map carries a provenance record under SOURCES_KEY so the same
merge can be recomputed later without naming the sources again:

    config = load(local_file="local.yaml", resource_dirs=["config"])
    again = load(config=config)

Resource directories are file-system paths, or "package:subdir" for
directories shipped inside an installed package.

Top-level keys that only env files define (and that are not qualified)
are derived from the env base tag, so they instantiate as their value.

YAML tags:
    !ref myapp.db:pool        → Ref("myapp.db:pool")
    !refset myapp.http:route  → RefSet("myapp.http:route")
    !re ^/api/.*              → compiled regular expression
"""

from __future__ import annotations

import copy
import importlib
import importlib.resources
import logging
import re
from pathlib import Path
from typing import Any, Iterable

import yaml

from ignition import envfile
from ignition.errors import ConfigLoadError
from ignition.refs import Ref, RefSet
from ignition.registry import REGISTRY, Registry

logger = logging.getLogger("ignition.config")

KEYS_KEY = "ignition.system:keys"
SOURCES_KEY = "ignition.system:config-sources"
RESERVED_KEYS = frozenset({KEYS_KEY, SOURCES_KEY})

# Base tag for top-level keys that only env files define.
ENV_KEY = "ignition.system:env"

YAML_EXTENSIONS = (".yaml", ".yml")
ENV_EXTENSIONS = (".env",)


# ═══════════════════════════════════════════════════════════════════
# YAML with reference tags
# ═══════════════════════════════════════════════════════════════════

class ConfigYamlLoader(yaml.SafeLoader):
    """SafeLoader that understands !ref, !refset and !re."""


def _construct_ref(loader: yaml.SafeLoader, node: yaml.Node) -> Ref:
    return Ref(str(loader.construct_scalar(node)))


def _construct_refset(loader: yaml.SafeLoader, node: yaml.Node) -> RefSet:
    return RefSet(str(loader.construct_scalar(node)))


def _construct_regex(loader: yaml.SafeLoader, node: yaml.Node) -> re.Pattern:
    return re.compile(str(loader.construct_scalar(node)))


ConfigYamlLoader.add_constructor("!ref", _construct_ref)
ConfigYamlLoader.add_constructor("!refset", _construct_refset)
ConfigYamlLoader.add_constructor("!re", _construct_regex)


def parse_yaml(content: str, source: str = "<string>") -> dict[str, Any]:
    try:
        data = yaml.load(content, Loader=ConfigYamlLoader)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Cannot parse {source}: {e}", path=source) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Top level of {source} must be a mapping, got {type(data).__name__}",
            path=source,
        )
    return data


def is_yaml_path(p: Any) -> bool:
    return bool(p) and str(p).endswith(YAML_EXTENSIONS)


def is_env_path(p: Any) -> bool:
    return bool(p) and str(p).endswith(ENV_EXTENSIONS)


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep merge overlay into base. Overlay values win.
    Dicts are merged recursively. Lists and scalars are replaced.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ═══════════════════════════════════════════════════════════════════
# Resource lookup
# ═══════════════════════════════════════════════════════════════════

def _package_resource(ref: str):
    package, _, sub = ref.partition(":")
    try:
        root = importlib.resources.files(package)
    except (ModuleNotFoundError, TypeError) as e:
        raise ConfigLoadError(f"Cannot locate package resource {ref!r}: {e}", path=ref) from e
    return root.joinpath(sub) if sub else root


def _is_package_ref(ref: str) -> bool:
    head, sep, _ = ref.partition(":")
    return bool(sep) and bool(head) and not Path(ref).exists() and "/" not in head and "\\" not in head


def list_resource_files(*dirs: str) -> list[str]:
    """
    List YAML and env files directly inside each directory (no recursion),
    sorted by file name per directory, directories kept in the given order.
    """
    files: list[str] = []
    for d in dirs:
        if not d:
            continue
        d = str(d)
        if _is_package_ref(d):
            root = _package_resource(d)
            if not root.is_dir():
                raise ConfigLoadError(f"Resource directory not found: {d}", path=d)
            names = sorted(
                entry.name for entry in root.iterdir()
                if entry.is_file() and (is_yaml_path(entry.name) or is_env_path(entry.name))
            )
            prefix = d if d.endswith((":", "/")) else d + "/"
            files.extend(prefix + name for name in names)
        else:
            path = Path(d)
            if not path.is_dir():
                raise ConfigLoadError(f"Resource directory not found: {d}", path=d)
            names = sorted(
                entry.name for entry in path.iterdir()
                if entry.is_file() and (is_yaml_path(entry.name) or is_env_path(entry.name))
            )
            files.extend(str(path / name) for name in names)
    return files


def read_source(ref: str) -> str:
    """Read a config file from the file system or a package resource."""
    path = Path(ref)
    try:
        if path.is_file():
            return path.read_text(encoding="utf-8")
        if _is_package_ref(ref):
            resource = _package_resource(ref)
            if resource.is_file():
                return resource.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigLoadError(f"Cannot read {ref}: {e}", path=ref) from e
    raise ConfigLoadError(f"Config source not found: {ref}", path=ref)


# ═══════════════════════════════════════════════════════════════════
# Module loading for qualified keys
# ═══════════════════════════════════════════════════════════════════

def owning_module(key: Any) -> str | None:
    """'myapp.db:pool' → 'myapp.db'; unqualified keys → None."""
    if not isinstance(key, str) or key in RESERVED_KEYS:
        return None
    module, sep, name = key.partition(":")
    if not sep or not module or not name:
        return None
    return module


def load_modules(config: dict[str, Any]) -> dict[str, Any]:
    """
    Import the owning module of every qualified top-level key so that its
    behaviors are registered. Returns the config unchanged.
    """
    for key in config:
        module = owning_module(key)
        if module is None:
            continue
        try:
            importlib.import_module(module)
        except ImportError as e:
            raise ConfigLoadError(
                f"No implementation for {key!r}: cannot import {module!r} ({e})",
                key=key,
            ) from e
    return config


def subsystems(config: dict[str, Any], keys: Iterable[str] | None = None) -> dict[str, Any]:
    """Select top-level branches; all of them when `keys` is None."""
    if keys is None:
        return dict(config)
    keys = set(keys)
    return {k: v for k, v in config.items() if k in keys}


# ═══════════════════════════════════════════════════════════════════
# Loader
# ═══════════════════════════════════════════════════════════════════

class ConfigLoader:
    """
    Hierarchical config loader with deep merge and a provenance record.

    `resource_files` may be given to pin the exact file list (as recorded by
    a previous load); otherwise the directories are scanned. Top-level keys
    that only env files define are derived from ENV_KEY on `registry`, so
    they instantiate as their plain value.
    """

    def __init__(
        self,
        local_file: str | None = None,
        resource_dirs: Iterable[str] | str | None = None,
        resource_files: Iterable[str] | None = None,
        registry: Registry | None = None,
    ):
        if isinstance(resource_dirs, (str, Path)):
            resource_dirs = [resource_dirs]
        self.local_file = str(local_file) if local_file else None
        self.resource_dirs = [str(d) for d in (resource_dirs or []) if d]
        self.resource_files = [str(f) for f in (resource_files or []) if f]
        self.registry = registry or REGISTRY
        self._source_log: list[str] = []

    @classmethod
    def from_config(cls, config: dict[str, Any],
                    registry: Registry | None = None) -> "ConfigLoader":
        """Rebuild a loader from the provenance record of a loaded config."""
        sources = config.get(SOURCES_KEY) if isinstance(config, dict) else None
        if not sources:
            raise ConfigLoadError("Config carries no provenance record to reload from")
        return cls(
            local_file=sources.get("local_file"),
            resource_dirs=sources.get("resource_dirs"),
            resource_files=sources.get("resource_files"),
            registry=registry,
        )

    def load(self) -> dict[str, Any]:
        """Load and merge all sources. Returns the merged dict."""
        if not self.local_file and not self.resource_dirs and not self.resource_files:
            raise ConfigLoadError("No configuration sources given")

        self._source_log = []
        files = self.resource_files or list_resource_files(*self.resource_dirs)

        data: dict[str, Any] = {}
        for f in files:
            if is_yaml_path(f):
                data = deep_merge(data, parse_yaml(read_source(f), source=f))
                self._source_log.append(f"yaml:{f}")

        env_flat: dict[str, Any] = {}
        for f in files:
            if is_env_path(f):
                env_flat.update(envfile.parse(read_source(f), source=f))
                self._source_log.append(f"env:{f}")

        local_data: dict[str, Any] = {}
        if self.local_file:
            local = self.local_file
            if is_yaml_path(local):
                local_data = parse_yaml(read_source(local), source=local)
            elif is_env_path(local):
                env_flat.update(envfile.parse(read_source(local), source=local))
            else:
                raise ConfigLoadError(
                    f"Unsupported local config format: {local}", path=local,
                )
            self._source_log.append(f"local:{local}")

        env_data = envfile.derive_keys(env_flat)
        env_only = [k for k in env_data if k not in data and k not in local_data]
        data = deep_merge(data, env_data)
        data = deep_merge(data, local_data)

        load_modules(data)
        self._derive_env_keys(env_only)

        data[SOURCES_KEY] = {
            "local_file": self.local_file,
            "resource_dirs": list(self.resource_dirs),
            "resource_files": list(files),
        }
        logger.info(
            "Config loaded: keys=%d sources=%s",
            len(data) - 1, self._source_log,
        )
        return data

    def _derive_env_keys(self, keys: Iterable[str]) -> None:
        for key in keys:
            if owning_module(key) is not None or key in RESERVED_KEYS:
                continue
            # Keys with their own taxonomy or init are left alone.
            if self.registry.parents(key) or self.registry.is_registered(key, "init"):
                continue
            self.registry.derive(key, ENV_KEY)
            logger.debug("Derived env key %s from %s", key, ENV_KEY)

    @property
    def sources(self) -> list[str]:
        """Which config sources were loaded."""
        return list(self._source_log)


def load(
    local_file: str | None = None,
    resource_dirs: Iterable[str] | str | None = None,
    config: dict[str, Any] | None = None,
    registry: Registry | None = None,
) -> dict[str, Any]:
    """
    Load a merged config. With only `config` given, re-derive the sources
    from its provenance record.
    """
    if config is not None and local_file is None and resource_dirs is None:
        return ConfigLoader.from_config(config, registry).load()
    return ConfigLoader(
        local_file=local_file, resource_dirs=resource_dirs, registry=registry,
    ).load()
