"""Filesystem, YAML/JSON and logging helpers shared by the CLIs and the package."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import yaml

LOGGER = logging.getLogger("facegate.io")

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp"}


def ensure_dir(path: Path) -> Path:
    """Create directory (and parents) if it does not exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping; an empty file yields an empty dict."""
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    LOGGER.debug("Loaded YAML %s -> sections=%s", path, list(data.keys()))
    return data


def dump_yaml(path: Path, data: Dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, sort_keys=False)
    LOGGER.debug("Wrote YAML %s", path)


def _json_default(obj: Any) -> Any:
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def dump_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON, accepting dataclasses, enums and numpy values."""
    with path.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=indent, default=_json_default)
    LOGGER.debug("Wrote JSON %s", path)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure root logging once; later calls only adjust the level."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s",
    )


def list_images(directory: Path) -> List[Path]:
    """Image files directly under `directory`, sorted by name."""
    if not directory.exists():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)
