"""Atomic persistence for calibration state."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

PathLike = Union[str, Path]


def atomic_write_json(path: PathLike, obj: Dict[str, Any], indent: int = 2) -> None:
    """Write JSON next to ``path`` and rename it into place.

    Readers see either the previous document or the new one, never a torn write.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(obj, indent=indent, ensure_ascii=False, sort_keys=True).encode("utf-8")
    fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def read_json(path: PathLike) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
