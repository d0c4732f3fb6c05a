"""
Helpers for the JSON documents kept under the state directory.
"""
import json
import os
import tempfile
from typing import Any, Optional


def read_json(path: str) -> Optional[Any]:
    """
    Loads a JSON document, returning None when it does not exist.
    """
    if not os.path.exists(path):
        return None
    with open(path, 'r') as f:
        return json.load(f)


def write_json(path: str, data: Any) -> None:
    """
    Writes a JSON document atomically (temp file + rename in the same directory).
    """
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def remove_file(path: str) -> bool:
    """Deletes a file if present."""
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
