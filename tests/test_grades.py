"""Tests for grade aggregation."""

from vreflect.tools.reflection.grades import (
    compute_loop_grade, compute_translation_grade, compute_verse_grade,
)
from vreflect.tools.reflection.models import Grade, ReflectionLoop, Segment
from vreflect.tools.reflection.settings import ReflectionSettings


def loop_with(*scores, **kwargs):
    return ReflectionLoop(grades=[Grade(grade=s, comment=f"score {s}") for s in scores], **kwargs)


def test_partial_round_is_not_memoized():
    settings = ReflectionSettings(grades_per_reflection_loop=3)
    loop = loop_with(40, 60)

    assert compute_loop_grade(loop, settings) == 50
    assert loop.average_grade is None


def test_full_round_is_memoized():
    settings = ReflectionSettings(grades_per_reflection_loop=2)
    loop = loop_with(40, 60)

    assert compute_loop_grade(loop, settings) == 50
    assert loop.average_grade == 50

    loop.add_grades([Grade(grade=100)])
    assert compute_loop_grade(loop, settings) == 50


def test_empty_round():
    assert compute_loop_grade(ReflectionLoop(), ReflectionSettings()) is None


def test_verse_grade_uses_newest_graded_round():
    settings = ReflectionSettings(grades_per_reflection_loop=2)
    segment = Segment(vref="GEN 1:1", reflection_loops=[
        loop_with(40, 60, graded_verse="first"),
        loop_with(80),
        ReflectionLoop(),
    ])

    assert compute_verse_grade(segment, settings) == 80


def test_verse_grade_without_grades():
    settings = ReflectionSettings()

    assert compute_verse_grade(Segment(vref="GEN 1:1"), settings) is None
    assert compute_verse_grade(Segment(vref="GEN 1:1", reflection_loops=[ReflectionLoop()]), settings) is None


def test_verse_grade_without_reference():
    segment = Segment(reflection_loops=[loop_with(50)])
    assert compute_verse_grade(segment, ReflectionSettings()) is None


def test_finalized_grade_wins_over_later_rounds():
    settings = ReflectionSettings(grades_per_reflection_loop=1)
    segment = Segment(
        vref="GEN 1:1",
        reflection_loops=[loop_with(95), loop_with(10)],
        reflection_is_finalized=True,
        reflection_finalized_grade=95,
    )

    assert compute_verse_grade(segment, settings) == 95


def test_translation_grade_in_range():
    settings = ReflectionSettings(grades_per_reflection_loop=1, start_line=2, end_line=3)
    segments = [
        Segment(vref="GEN 1:1", reflection_loops=[loop_with(10)]),
        Segment(vref="GEN 1:2", reflection_loops=[loop_with(60)]),
        Segment(vref="GEN 1:3", reflection_loops=[loop_with(80)]),
        Segment(vref="GEN 1:4", reflection_loops=[loop_with(0)]),
    ]

    assert compute_translation_grade(segments, settings) == 70


def test_translation_grade_skips_ungraded():
    settings = ReflectionSettings(grades_per_reflection_loop=1)
    segments = [Segment(vref="GEN 1:1", reflection_loops=[loop_with(60)]), Segment(vref="GEN 1:2")]

    assert compute_translation_grade(segments, settings) == 60


def test_translation_grade_nothing_graded():
    segments = [Segment(vref="GEN 1:1"), Segment(vref="GEN 1:2")]
    assert compute_translation_grade(segments, ReflectionSettings()) == 0.0
    assert compute_translation_grade([], ReflectionSettings()) == 0.0
