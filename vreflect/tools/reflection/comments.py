"""Reviewer comment ledger: merging annotation threads and indexing by reference."""

import logging
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from pydantic import ValidationError

from .models import AnnotationThread, ReflectionComment

LOG = logging.getLogger(__name__)

UNKNOWN_AUTHOR = "<unknown>"


def parse_threads(raw: Any) -> List[AnnotationThread]:
    """Parse an annotation file's JSON into threads, skipping ones that don't validate."""
    if not isinstance(raw, list):
        raise ValueError(f"Annotation file must hold a list of threads, got {type(raw).__name__}")
    threads = []
    for i, item in enumerate(raw):
        try:
            threads.append(AnnotationThread.model_validate(item))
        except ValidationError as e:
            LOG.warning("Skipping malformed annotation thread %d: %s", i, e)
    return threads


def _ids_by_body(pairs: Iterable[Tuple[str, str]]) -> Dict[str, List[str]]:
    result: Dict[str, List[str]] = {}
    for body, ref in pairs:
        ids = result.setdefault(body, [])
        if ref not in ids:
            ids.append(ref)
    return result


def merge_annotations(threads: Sequence[AnnotationThread],
                      ledger: Sequence[ReflectionComment]) -> Tuple[List[ReflectionComment], List[str]]:
    """
    Bring the comment ledger up to date with the annotation threads.

    Comments are matched by body text. A reference that gained or lost a
    comment is "touched". Comments left without references are dropped, and
    new comments are named after the author who wrote them on their first
    reference.

    Args:
        threads: Current annotation threads; deleted threads and comments are ignored
        ledger: Previously stored comments (not modified)

    Returns:
        The updated ledger and the touched references in first-seen order
    """
    incoming_pairs = []
    authors: Dict[Tuple[str, str], str] = {}
    for thread in threads:
        if thread.deleted:
            continue
        ref = thread.cell.cell_id
        for comment in thread.comments:
            if comment.deleted:
                continue
            incoming_pairs.append((comment.body, ref))
            authors[(comment.body, ref)] = comment.author.name or UNKNOWN_AUTHOR
    incoming = _ids_by_body(incoming_pairs)
    current = _ids_by_body((c.comment, ref) for c in ledger for ref in c.ids)

    touched: List[str] = []
    additions: Dict[str, List[str]] = {}
    removals: Dict[str, List[str]] = {}
    for new, old, changes in ((incoming, current, additions), (current, incoming, removals)):
        for body, ids in new.items():
            for ref in ids:
                if ref not in old.get(body, []):
                    changes.setdefault(body, []).append(ref)
                    if ref not in touched:
                        touched.append(ref)

    merged: List[ReflectionComment] = []
    for comment in ledger:
        ids = list(comment.ids)
        for ref in additions.pop(comment.comment, []):
            if ref not in ids:
                ids.append(ref)
        ids = [ref for ref in ids if ref not in removals.get(comment.comment, [])]
        if ids:
            merged.append(comment.model_copy(update={"ids": ids}))

    for body, ids in additions.items():
        merged.append(ReflectionComment(comment=body, ids=ids,
                                        name=authors.get((body, ids[0]), UNKNOWN_AUTHOR)))

    return merged, touched


def index_comments(ledger: Iterable[ReflectionComment]) -> Dict[str, List[ReflectionComment]]:
    """Group comments by the references they apply to."""
    indexed: Dict[str, List[ReflectionComment]] = {}
    for comment in ledger:
        for ref in comment.ids:
            indexed.setdefault(ref, []).append(comment)
    return indexed
