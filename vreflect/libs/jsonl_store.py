"""JSON and JSON-lines files written with write-then-rename."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

LOG = logging.getLogger(__name__)

PathLike = Union[str, Path]


class JsonlDecodeError(ValueError):
    """A line of a JSON-lines file could not be decoded."""

    def __init__(self, path: PathLike, line_number: int, message: str):
        super().__init__(f"{path}:{line_number}: {message}")
        self.path = str(path)
        self.line_number = line_number


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + "~")
    with open(temp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp_path, path)


def load_jsonl(path: PathLike, default: Optional[List[Any]] = None) -> List[Any]:
    """
    Load a file with one JSON object per line.

    Blank lines are skipped.

    Args:
        path: Path to the input file
        default: Returned when the file doesn't exist. Without it the
            FileNotFoundError propagates.

    Raises:
        JsonlDecodeError: If a line is not valid JSON
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        if default is None:
            raise
        return default

    records = []
    for line_number, line in enumerate(text.split("\n"), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise JsonlDecodeError(path, line_number, str(e)) from e
    return records


def save_jsonl(path: PathLike, records: Iterable[Any]) -> None:
    """Save records one JSON object per line, replacing the file atomically."""
    content = "\n".join(json.dumps(record, ensure_ascii=False) for record in records)
    _atomic_write_text(Path(path), content)
    LOG.debug("Saved %s", path)


def load_json(path: PathLike, default: Any = None) -> Any:
    """Load a file holding one JSON value, or return default when it is missing."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        if default is None:
            raise
        return default


def save_json(path: PathLike, data: Any, indent: int = 4) -> None:
    """Save one JSON value, replacing the file atomically."""
    _atomic_write_text(Path(path), json.dumps(data, indent=indent, ensure_ascii=False))
