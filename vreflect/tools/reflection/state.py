"""Segment state transitions: rounds, finalization and resets."""

import logging
from typing import Any, Optional, Sequence

from .grades import compute_verse_grade
from .models import AdaptationResponse, CorrectionSummary, Grade, ReflectionLoop, ReflectionResponse, Segment
from .settings import ITERATIONS_PASS_COMMENT_DEFAULT, ReflectionSettings

LOG = logging.getLogger(__name__)


def reference_of(segment: Segment, settings: ReflectionSettings) -> Optional[str]:
    return segment.get_path(settings.reference_key)


def source_of(segment: Segment, settings: ReflectionSettings) -> Optional[str]:
    return segment.get_path(settings.source_key)


def translation_of(segment: Segment, settings: ReflectionSettings) -> Optional[str]:
    return segment.get_path(settings.translation_key)


def translation_comment_of(segment: Segment, settings: ReflectionSettings) -> Optional[str]:
    if not settings.translation_comment_key:
        return None
    return segment.get_path(settings.translation_comment_key)


def set_translation(segment: Segment, settings: ReflectionSettings, text: Any,
                    comment: Any = None) -> None:
    """Write the translation and, when a comment key is configured, its comment."""
    segment.set_path(settings.translation_key, text)
    if settings.translation_comment_key:
        segment.set_path(settings.translation_comment_key, comment)


def record_graded_verse(loop: ReflectionLoop, segment: Segment, settings: ReflectionSettings) -> None:
    """Copy the segment's current translation and comment into the round."""
    loop.record_graded_verse(
        translation_of(segment, settings),
        translation_comment_of(segment, settings),
        with_comment=bool(settings.translation_comment_key),
    )


def rounds_needed(segment: Segment, settings: ReflectionSettings) -> int:
    """
    Number of rounds the segment needs before it can be finalized.

    A comment change records the round count at that moment in
    comment_mod_loop_count; the segment then needs iterations_pass_comment
    rounds past that point, or the configured per-segment count if larger.
    """
    baseline = segment.comment_mod_loop_count
    if baseline is None:
        baseline = -ITERATIONS_PASS_COMMENT_DEFAULT
    return max(baseline + settings.iterations_pass_comment, settings.reflection_loops_per_verse)


def unanswered_grades(segment: Segment, settings: ReflectionSettings) -> int:
    """
    Grades in the newest round that no correction has answered yet.

    A round that already recorded its graded text has been answered, so it
    counts as zero unless it is the last round the segment needs.
    """
    last = segment.last_loop
    if last is None:
        return 0
    if last.has_graded_verse and rounds_needed(segment, settings) > len(segment.reflection_loops):
        return 0
    return len(last.grades)


def needs_finalization(segment: Segment, settings: ReflectionSettings) -> bool:
    """Whether the segment has all its rounds and the newest one is fully graded."""
    loops = segment.reflection_loops
    if len(loops) < max(1, rounds_needed(segment, settings)):
        return False
    return len(loops[-1].grades) >= settings.grades_per_reflection_loop


def finalize_segment(segment: Segment, settings: ReflectionSettings) -> bool:
    """
    Promote the best-graded round since the last comment change to the official translation.

    Ties go to the later round. Calling this on a finalized segment, or on one
    that doesn't need finalization yet, changes nothing.

    Returns:
        Whether the segment was finalized by this call
    """
    if segment.reflection_is_finalized or not needs_finalization(segment, settings):
        return False

    # memoizes the newest round's average
    compute_verse_grade(segment, settings)

    best_loop = None
    for loop in segment.reflection_loops[segment.comment_mod_loop_count or 0:]:
        if loop.average_grade is None:
            continue
        if best_loop is None or best_loop.average_grade <= loop.average_grade:
            best_loop = loop

    if best_loop is None:
        return False

    last = segment.last_loop
    if not last.has_graded_verse:
        record_graded_verse(last, segment, settings)

    set_translation(segment, settings, best_loop.graded_verse, best_loop.graded_verse_comment)
    segment.reflection_is_finalized = True
    segment.reflection_finalized_grade = best_loop.average_grade
    segment.reflection_finalized_comment = best_loop.graded_verse_comment
    return True


def oldest_translation(segment: Segment, settings: ReflectionSettings) -> Optional[str]:
    """The first draft the segment's history knows about."""
    loops = segment.reflection_loops
    if loops and loops[0].has_graded_verse:
        return loops[0].graded_verse
    return translation_of(segment, settings)


def reset_segment_to(segment: Segment, settings: ReflectionSettings, translation: Optional[str]) -> None:
    """Drop the segment's history and make translation its current text."""
    segment.reflection_loops = []
    segment.reflection_is_finalized = False
    segment.reflection_finalized_grade = None
    segment.reflection_finalized_comment = None
    segment.comment_mod_loop_count = 0
    if translation is not None:
        segment.set_path(settings.translation_key, translation)


def mark_comment_change(segment: Segment) -> None:
    """Record that history up to the current round predates a comment change."""
    previous = segment.comment_mod_loop_count or 0
    segment.comment_mod_loop_count = max(previous, len(segment.reflection_loops))


def append_grades(segment: Segment, grades: Sequence[Grade]) -> ReflectionLoop:
    """
    Add grades to the round being graded, opening a new round when the newest
    one already recorded its text.
    """
    last = segment.last_loop
    if last is None or last.has_graded_verse:
        last = segment.append_loop()
    last.add_grades(grades)
    segment.unfinalize()
    segment.clear_human_reviewed()
    return last


def apply_adaptation(segment: Segment, settings: ReflectionSettings, result: AdaptationResponse) -> None:
    """Stash the pre-adaptation text in a round and take the adapted text."""
    last = segment.last_loop
    if last is None or last.has_graded_verse:
        last = segment.append_loop()
    record_graded_verse(last, segment, settings)
    last.is_adaptation = True

    set_translation(segment, settings, result.updated_translation, result.planning_thoughts)
    segment.clear_human_reviewed()
    segment.adapted = True


def apply_reflection(segment: Segment, settings: ReflectionSettings, result: ReflectionResponse,
                     summary: Optional[CorrectionSummary] = None) -> None:
    """Record the graded text in the newest round and take the corrected text."""
    last = segment.last_loop or segment.append_loop()
    if not last.has_graded_verse:
        record_graded_verse(last, segment, settings)
    set_translation(segment, settings, result.updated_translation, result.planning_thoughts)
    segment.clear_human_reviewed()
    if summary is not None:
        last.correction_summarization = summary
