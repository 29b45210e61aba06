"""
Ignition - Flat Env Files

Parses shell-style KEY=VALUE files into nested config maps.

Supported:
  - blank lines and comments (# ...)
  - optional leading `export `
  - whitespace around key and '='
  - values: unquoted, 'single-quoted', "double-quoted" (with \\n \\r \\t \\" \\\\)
  - inline comments on unquoted values: KEY=val # comment

Not supported: shell variable expansion, multiline values.

Key paths are separated by double underscores; the first segment is the
top-level config key:

    myapp.db:pool__max_size=10   →  {"myapp.db:pool": {"max_size": 10}}

Unquoted values get scalar inference (bool, int, else str).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from ignition.errors import ConfigLoadError

PATH_SEPARATOR = "__"

_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_.:\-]*")
_INT_RE = re.compile(r"[+-]?\d+")
_INLINE_COMMENT_RE = re.compile(r"^(.*?)(?:\s+#.*)?$")

_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "\\": "\\"}


def _unescape(s: str) -> str:
    return re.sub(r'\\([nrt"\\])', lambda m: _ESCAPES[m.group(1)], s)


def infer_scalar(value: str) -> Any:
    """'true'/'false' → bool, integers → int, everything else unchanged."""
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _INT_RE.fullmatch(value):
        return int(value)
    return value


def parse_value(raw: str) -> Any:
    v = raw.strip()
    if len(v) >= 2 and v[0] == v[-1] == "'":
        return v[1:-1]
    if len(v) >= 2 and v[0] == v[-1] == '"':
        return _unescape(v[1:-1])
    v = _INLINE_COMMENT_RE.match(v).group(1).strip()
    return infer_scalar(v)


def parse_line(line: str, source: str = "<string>", lineno: int = 0) -> tuple[str, Any] | None:
    """Parse one line. Returns (key, value) or None for blanks/comments."""
    s = line.strip()
    if not s or s.startswith("#"):
        return None
    if s.startswith("export "):
        s = s[len("export "):].strip()
    key, sep, raw = s.partition("=")
    if not sep:
        raise ConfigLoadError(
            f"Invalid env line (missing '=') at {source}:{lineno}: {line!r}", path=source,
        )
    key = key.strip()
    if not _KEY_RE.fullmatch(key):
        raise ConfigLoadError(
            f"Invalid env key {key!r} at {source}:{lineno}", path=source, key=key,
        )
    return key, parse_value(raw)


def parse(content: str, source: str = "<string>") -> dict[str, Any]:
    """Parse env-file content into a flat {key: value} map. Later lines win."""
    result: dict[str, Any] = {}
    for lineno, line in enumerate(content.splitlines(), start=1):
        parsed = parse_line(line, source, lineno)
        if parsed is not None:
            result[parsed[0]] = parsed[1]
    return result


def read(*paths: str | Path) -> dict[str, Any]:
    """Read and parse one or more env files; later files win."""
    result: dict[str, Any] = {}
    for p in paths:
        try:
            content = Path(p).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigLoadError(f"Cannot read env file {p}: {e}", path=str(p)) from e
        result.update(parse(content, source=str(p)))
    return result


def derive_keys(flat: dict[str, Any]) -> dict[str, Any]:
    """Materialise flat `a__b__c` keys into nested maps."""
    result: dict[str, Any] = {}
    for flat_key, value in flat.items():
        keys = [k for k in flat_key.split(PATH_SEPARATOR) if k]
        if not keys:
            continue
        current = result
        for k in keys[:-1]:
            nxt = current.get(k)
            if not isinstance(nxt, dict):
                nxt = current[k] = {}
            current = nxt
        current[keys[-1]] = value
    return result
