from __future__ import annotations

import gzip
import json
import logging
import math
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, TextIO

logger = logging.getLogger(__name__)


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def log2_ratio(observed: float, expected: float, *, eps: float = 0.5) -> float:
    # eps keeps empty bins finite
    return math.log2((observed + eps) / (expected + eps))


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def dataclass_to_jsonable(dc: Any) -> Dict[str, Any]:
    """Flatten a dataclass into JSON-friendly primitives (enums by value, tuples as lists)."""
    if not is_dataclass(dc):
        raise TypeError(f"Expected a dataclass instance, got {type(dc).__name__}")
    return {k: _jsonable(v) for k, v in asdict(dc).items()}


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def read_json(path: str | Path) -> Mapping[str, Any]:
    with open(path, "rt", encoding="utf-8") as f:
        return json.load(f)
