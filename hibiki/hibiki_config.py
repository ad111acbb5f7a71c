"""
Runtime configuration.

Configuration comes from a mapping, a JSON/YAML document, or a file path.
Keys may be written snake_case, kebab-case or camelCase; unknown keys are
ignored. Debug output is also enabled by the HIBIKI_DEBUG environment
variable.
"""

import collections.abc
import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from hibiki.hibiki_serialize import deserialize, detect_format


SEVERITIES = ("log", "raise")

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _norm_key(key: Any) -> str:
    return _CAMEL_RE.sub("_", str(key)).replace("-", "_").lower()


@dataclass
class HibikiConfig:
    no_usage_img: bool = False
    no_welcome_message: bool = False
    fetch_timeout: float = 5.0
    fetch_retries: int = 0
    fetch_backoff: float = 0.2
    # action kind -> 'log' | 'raise'
    action_severity: Dict[str, str] = field(default_factory=dict)
    debug: bool = False
    fe_client_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, m: Optional[collections.abc.Mapping]) -> 'HibikiConfig':
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, val in (m or {}).items():
            name = _norm_key(key)
            if name in known:
                kwargs[name] = val
        cfg = cls(**kwargs)
        cfg.fetch_timeout = float(cfg.fetch_timeout)
        cfg.fetch_retries = int(cfg.fetch_retries)
        cfg.fetch_backoff = float(cfg.fetch_backoff)
        cfg.action_severity = {str(k): str(v).lower() for k, v in (cfg.action_severity or {}).items()}
        for kind, sev in cfg.action_severity.items():
            if sev not in SEVERITIES:
                raise ValueError(f"invalid severity {sev!r} for action kind {kind!r}, expected one of {SEVERITIES}")
        return cfg

    def severity_for(self, kind: Optional[str]) -> str:
        if kind is None:
            return self.action_severity.get("*", "log")
        return self.action_severity.get(kind, self.action_severity.get("*", "log"))

    @property
    def debug_enabled(self) -> bool:
        return bool(self.debug) or bool(os.environ.get("HIBIKI_DEBUG"))


def load_config(source: Any = None) -> HibikiConfig:
    """Builds a HibikiConfig from None, a config, a mapping, JSON/YAML text, or a file path."""
    match source:
        case None:
            return HibikiConfig()
        case HibikiConfig():
            return source
        case collections.abc.Mapping():
            return HibikiConfig.from_mapping(source)
        case os.PathLike() | str():
            path = os.fspath(source)
            if isinstance(source, os.PathLike) or (os.path.isfile(path) and "\n" not in path):
                with open(path, "rb") as f:
                    raw = f.read()
                fmt = "json" if path.lower().endswith(".json") else "yaml"
                data = deserialize(raw, fmt=fmt)
            else:
                data = deserialize(source, fmt=detect_format(None, source) or "yaml")
            if data is None:
                return HibikiConfig()
            if not isinstance(data, collections.abc.Mapping):
                raise ValueError(f"config must be a mapping, got {type(data).__name__}")
            return HibikiConfig.from_mapping(data)
        case _:
            raise TypeError(f"cannot load config from {type(source).__name__}")
