"""Grade aggregation for rounds, segments and the whole collection."""

from typing import Optional, Sequence

from .models import ReflectionLoop, Segment
from .settings import ReflectionSettings


def compute_loop_grade(loop: ReflectionLoop, settings: ReflectionSettings) -> Optional[float]:
    """
    Average grade of one round, or None if it has no grades yet.

    Once the round holds grades_per_reflection_loop grades the average is
    stored on the round and returned as is from then on.
    """
    if loop.average_grade is not None:
        return loop.average_grade

    if not loop.grades:
        return None

    average = sum(g.grade for g in loop.grades) / len(loop.grades)
    if len(loop.grades) >= settings.grades_per_reflection_loop:
        loop.average_grade = average
    return average


def compute_verse_grade(segment: Segment, settings: ReflectionSettings) -> Optional[float]:
    """
    Current grade of a segment.

    A finalized segment reports its finalized grade. Otherwise this is the
    grade of the newest round that has any grades, or None if none do.
    """
    if segment.get_path(settings.reference_key) is None:
        return None
    if not segment.reflection_loops:
        return None

    if segment.reflection_is_finalized:
        return segment.reflection_finalized_grade

    for loop in reversed(segment.reflection_loops):
        grade = compute_loop_grade(loop, settings)
        if grade is not None:
            return grade
    return None


def compute_translation_grade(segments: Sequence[Segment], settings: ReflectionSettings) -> float:
    """Mean segment grade over the configured line range, 0 when nothing is graded."""
    total = 0.0
    count = 0
    for index, segment in enumerate(segments):
        if settings.past_range(index):
            break
        if not settings.in_range(index):
            continue
        grade = compute_verse_grade(segment, settings)
        if grade is not None:
            total += grade
            count += 1
    return total / count if count else 0.0
