"""Checkpoint files for the segment collection and the comment ledger."""

import logging
from typing import List, Sequence

from pydantic import ValidationError

from vreflect.libs.jsonl_store import JsonlDecodeError, load_jsonl, save_jsonl
from vreflect.libs.references import reference_sort_key
from .errors import CheckpointError
from .models import ReflectionComment, Segment
from .settings import ReflectionSettings

LOG = logging.getLogger(__name__)


def _load_records(path: str, missing_ok: bool) -> list:
    try:
        return load_jsonl(path, default=[] if missing_ok else None)
    except JsonlDecodeError as e:
        raise CheckpointError.from_decode_error(e) from e


def load_segments(path: str, missing_ok: bool = False) -> List[Segment]:
    """
    Load a segment collection, one segment per line.

    Raises:
        FileNotFoundError: If the file is missing and missing_ok is False
        CheckpointError: If a line isn't a valid segment
    """
    segments = []
    for line_number, record in enumerate(_load_records(path, missing_ok), start=1):
        try:
            segments.append(Segment.model_validate(record))
        except ValidationError as e:
            raise CheckpointError(path, line_number, str(e)) from e
    LOG.debug("Loaded %d segments from %s", len(segments), path)
    return segments


def sort_segments(segments: Sequence[Segment], settings: ReflectionSettings) -> List[Segment]:
    """Return the segments in canonical reference order."""
    return sorted(segments, key=lambda s: reference_sort_key(s.get_path(settings.reference_key)))


def save_segments(path: str, segments: Sequence[Segment], settings: ReflectionSettings) -> None:
    """Save the collection sorted by reference, leaving the caller's list as is."""
    save_jsonl(path, [s.to_record() for s in sort_segments(segments, settings)])


def load_comments(path: str) -> List[ReflectionComment]:
    """Load the comment ledger; a missing file is an empty ledger."""
    comments = []
    for line_number, record in enumerate(_load_records(path, missing_ok=True), start=1):
        try:
            comments.append(ReflectionComment.model_validate(record))
        except ValidationError as e:
            raise CheckpointError(path, line_number, str(e)) from e
    return comments


def save_comments(path: str, comments: Sequence[ReflectionComment]) -> None:
    save_jsonl(path, [c.model_dump(mode="json") for c in comments])
