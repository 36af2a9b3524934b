"""Read bulk booking rows from spreadsheet-like files."""

from __future__ import annotations

import csv
import json
import re
from pathlib import Path
from typing import Any, Dict, List

import yaml

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATORS = re.compile(r"[\s_]+")


def _snake(key: str) -> str:
    key = _CAMEL_BOUNDARY.sub("_", key.strip())
    return _SEPARATORS.sub("_", key).lower()


def _clean_row(row: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in row.items():
        if key is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if value == "":
                continue
        cleaned[_snake(key)] = value
    return cleaned


def load_batch_rows(path: Path) -> List[Dict[str, Any]]:
    """Return one dict per appointment row in ``path``.

    CSV, JSON and YAML files are supported. Column names may be written
    as ``doctorId``, ``doctor_id`` or ``Doctor Id``; blank cells are dropped
    so optional fields fall back to their defaults.
    """
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with open(path, newline="", encoding="utf-8-sig") as f:
            rows = list(csv.DictReader(f))
    elif suffix == ".json":
        with open(path, encoding="utf-8") as f:
            rows = json.load(f)
    elif suffix in (".yaml", ".yml"):
        with open(path, encoding="utf-8") as f:
            rows = yaml.safe_load(f) or []
    else:
        raise ValueError(f"Unsupported batch file type: {path.suffix}")

    if isinstance(rows, dict):
        rows = rows.get("appointments", [])
    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise ValueError("Batch file must contain a list of appointment rows")
    return [_clean_row(row) for row in rows]
