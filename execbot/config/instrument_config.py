"""Load per-instrument configuration overrides from YAML.

Optional file path via env `EXEC_INSTRUMENT_CONFIG`, default `configs/instruments.yaml`.
Returns a dict mapping symbol -> dict of overrides. Keys that are not
LifecycleConfig/WorkerConfig fields are dropped with a warning.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Dict, List, TypeVar

import yaml

log = logging.getLogger("execbot")

T = TypeVar("T")


def load_instrument_overrides(path: str | None = None) -> Dict[str, Dict[str, Any]]:
    if path is None:
        path = os.getenv("EXEC_INSTRUMENT_CONFIG", "configs/instruments.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        log.warning(json.dumps({"event": "instrument_config_unreadable", "path": str(p), "error": str(exc)}))
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k).upper(): v for k, v in data.items() if isinstance(v, dict)}


def apply_overrides(base: T, overrides: Dict[str, Any]) -> T:
    """Return a copy of dataclass `base` with the known keys replaced."""
    known = {f.name for f in fields(base)}  # type: ignore[arg-type]
    picked = {k: v for k, v in overrides.items() if k in known}
    return replace(base, **picked)  # type: ignore[type-var]


def unknown_keys(overrides: Dict[str, Any], *configs: Any) -> List[str]:
    known = set()
    for cfg in configs:
        known.update(f.name for f in fields(cfg))
    return sorted(k for k in overrides if k not in known)
