"""File helpers shared by the JSON-backed stores."""

import json
import os
from pathlib import Path
from typing import Any


def atomic_write_text(path: Path, content: str) -> None:
    """Persist content atomically using the write-replace pattern."""
    temp_path = path.with_name(f"{path.name}.tmp")

    try:
        # Write to temporary file in same directory
        temp_path.write_text(content)
        # Atomic replace operation
        os.replace(temp_path, path)
    except Exception:
        # Clean up temp file on any exception
        temp_path.unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any | None:
    """Load a JSON document, returning None when missing or corrupt."""
    if path.exists():
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError:
            pass
    return None
