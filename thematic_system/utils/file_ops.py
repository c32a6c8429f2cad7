"""Atomic file operations for run outputs."""

import json
import os
import tempfile
from typing import Any, Dict, List


def atomic_write_bytes(path: str, data: bytes) -> None:
    """Write bytes atomically using temp file + rename."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path) or ".", prefix=".tmp.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def atomic_write_json(path: str, obj: Dict[str, Any], indent: int = 2) -> None:
    """Write JSON atomically."""
    atomic_write_bytes(path, json.dumps(obj, indent=indent, ensure_ascii=False).encode("utf-8"))


def read_json_records(path: str) -> List[Dict[str, Any]]:
    """Read a JSON file holding a list of objects, or an object with a "tasks" list."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("tasks", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of tasks")
    return data
