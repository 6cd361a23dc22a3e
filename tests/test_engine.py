"""Tests for the reflection engine."""

import csv
from typing import Dict, List

import pytest
from unittest.mock import patch

from vreflect.tools.reflection.audit import AuditTrail
from vreflect.tools.reflection.checkpoint import load_segments, save_segments
from vreflect.tools.reflection.engine import ReflectionEngine, load_run
from vreflect.tools.reflection.errors import ConfigurationError
from vreflect.tools.reflection.models import (
    AdaptationResponse, Grade, ReflectionLoop, ReflectionResponse, Segment, SummarizeResponse,
)
from vreflect.tools.reflection.settings import ReflectionSettings
from vreflect.tools.reflection.state import translation_of


class FakeEvaluator:
    """Scripted evaluation service: grades and corrected texts are queued per reference."""

    def __init__(self, grades: Dict[str, List[int]] = None, corrections: Dict[str, List[str]] = None):
        self.grades = {ref: list(scores) for ref, scores in (grades or {}).items()}
        self.corrections = {ref: list(texts) for ref, texts in (corrections or {}).items()}
        self.calls = []

    async def grade_n(self, prompt, count, reference=""):
        self.calls.append(("grade", reference, count))
        return [Grade(grade=self.grades[reference].pop(0), comment=f"review of {reference}")
                for _ in range(count)]

    async def correct(self, prompt, reference=""):
        self.calls.append(("correct", reference))
        return ReflectionResponse(planning_thoughts=f"fixed {reference}", reference=reference,
                                  updated_translation=self.corrections[reference].pop(0))

    async def summarize_corrections(self, prompt, reference=""):
        self.calls.append(("summarize", reference))
        return SummarizeResponse(planning_thoughts="prioritised", summary=f"summary for {reference}")

    async def adapt(self, prompt, reference=""):
        self.calls.append(("adapt", reference))
        return AdaptationResponse(planning_thoughts="adapted", reference=reference, draft_translation_1="d1",
                                  draft_translation_2="d2", updated_translation=f"adapted {reference}")

    async def summarize_review(self, prompt, reference=""):
        self.calls.append(("summarize_review", reference))
        return "summary"


def segment(ref, text, **kwargs):
    return Segment(vref=ref, source=f"source of {ref}", fresh_translation={"text": text}, **kwargs)


def full_loop(*scores, **kwargs):
    grades = [Grade(grade=s) for s in scores]
    return ReflectionLoop(grades=grades, **kwargs)


def make_engine(tmp_path, segments, evaluator, **settings_kwargs):
    values = dict(summarize_corrections=False, save_timeout=20)
    values.update(settings_kwargs)
    settings = ReflectionSettings(project_dir=str(tmp_path), **values)
    return ReflectionEngine(settings, evaluator, segments, str(tmp_path / "checkpoint.jsonl"),
                            clock=lambda: 0.0)


@pytest.mark.asyncio
async def test_two_segment_run(tmp_path):
    """Grade both segments, correct the weaker one, finalize each in turn."""
    settings = dict(grades_per_reflection_loop=2, reflection_loops_per_verse=2, grade_mode_enabled=False,
                    highest_grade_to_reflect=98)
    evaluator = FakeEvaluator(
        grades={"GEN 1:1": [40, 60, 95, 95], "GEN 1:2": [97, 97, 90, 90]},
        corrections={"GEN 1:1": ["a1"], "GEN 1:2": ["b1"]},
    )
    a, b = segment("GEN 1:1", "a0"), segment("GEN 1:2", "b0")
    engine = make_engine(tmp_path, [a, b], evaluator, **settings)

    actions = []
    while not engine.done:
        actions.append(await engine.step())

    assert actions == [
        "added grade number 1 on loop 1 of grade 40 to verse GEN 1:1",
        "added grade number 2 on loop 1 of grade 60 to verse GEN 1:1",
        "added grade number 1 on loop 1 of grade 97 to verse GEN 1:2",
        "added grade number 2 on loop 1 of grade 97 to verse GEN 1:2",
        "reflected on verse GEN 1:1",
        "added grade number 1 on loop 2 of grade 95 to verse GEN 1:1",
        "added grade number 2 on loop 2 of grade 95 to verse GEN 1:1",
        "finalized verse GEN 1:1",
        "reflected on verse GEN 1:2",
        "added grade number 1 on loop 2 of grade 90 to verse GEN 1:2",
        "added grade number 2 on loop 2 of grade 90 to verse GEN 1:2",
        "finalized verse GEN 1:2",
        "Didn't find a verse to reflect on.  So done.",
    ]
    engine_settings = engine.settings
    assert translation_of(a, engine_settings) == "a1"
    assert a.reflection_finalized_grade == 95
    # the first draft of B graded better than its correction
    assert translation_of(b, engine_settings) == "b0"
    assert b.reflection_finalized_grade == 97
    assert [loop.graded_verse for loop in b.reflection_loops] == ["b0", "b1"]


@pytest.mark.asyncio
async def test_run_saves_checkpoint_at_end(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [95, 95]})
    engine = make_engine(tmp_path, [segment("GEN 1:1", "a0")], evaluator,
                         grades_per_reflection_loop=2, reflection_loops_per_verse=1,
                         highest_grade_to_reflect=100)

    await engine.run_async()

    saved = load_segments(str(tmp_path / "checkpoint.jsonl"))
    assert saved[0].reflection_is_finalized
    assert not engine.dirty


@pytest.mark.asyncio
async def test_failed_finalization_stops_the_run(tmp_path):
    seg = segment("GEN 1:1", "a0", reflection_loops=[full_loop(95, 95)])
    evaluator = FakeEvaluator()
    engine = make_engine(tmp_path, [seg], evaluator, grades_per_reflection_loop=2,
                         reflection_loops_per_verse=1, highest_grade_to_reflect=100)

    with patch("vreflect.tools.reflection.engine.finalize_segment", return_value=False):
        action = await engine.step()

    assert action == "done because verse GEN 1:1 could not be finalized"
    assert engine.done
    assert not engine.dirty
    assert not seg.reflection_is_finalized
    assert evaluator.calls == []


class FailingEvaluator(FakeEvaluator):
    """Grades once, then the service goes away."""

    async def grade_n(self, prompt, count, reference=""):
        if self.calls:
            raise RuntimeError("service unavailable")
        return await super().grade_n(prompt, count, reference=reference)


@pytest.mark.asyncio
async def test_run_saves_work_done_before_an_error(tmp_path):
    evaluator = FailingEvaluator(grades={"GEN 1:1": [55]})
    engine = make_engine(tmp_path, [segment("GEN 1:1", "a0")], evaluator,
                         grades_per_reflection_loop=2, grade_mode_enabled=False)

    with pytest.raises(RuntimeError, match="service unavailable"):
        await engine.run_async()

    saved = load_segments(str(tmp_path / "checkpoint.jsonl"))
    assert [g.grade for g in saved[0].reflection_loops[0].grades] == [55]
    assert not engine.dirty


@pytest.mark.asyncio
async def test_requests_only_the_shortfall(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [70]})
    seg = segment("GEN 1:1", "a0", reflection_loops=[full_loop(60, 80)])
    engine = make_engine(tmp_path, [seg], evaluator, grades_per_reflection_loop=3)

    action = await engine.step()

    assert evaluator.calls == [("grade", "GEN 1:1", 1)]
    assert [g.grade for g in seg.reflection_loops[0].grades] == [60, 80, 70]
    assert action == "added grade number 3 on loop 1 of grade 70 to verse GEN 1:1"


@pytest.mark.asyncio
async def test_grade_mode_requests_whole_round(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [70, 80, 90]})
    seg = segment("GEN 1:1", "a0")
    engine = make_engine(tmp_path, [seg], evaluator, grades_per_reflection_loop=3)

    action = await engine.step()

    assert evaluator.calls == [("grade", "GEN 1:1", 3)]
    assert action == "added 3 up to grade number 3 on loop 1 of grades [70, 80, 90] to verse GEN 1:1"


@pytest.mark.asyncio
async def test_ai_halted_segment_is_never_touched(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:2": [50, 50, 95, 95]}, corrections={"GEN 1:2": ["b1"]})
    halted = segment("GEN 1:1", "a0", ai_halted=True)
    engine = make_engine(tmp_path, [halted, segment("GEN 1:2", "b0")], evaluator,
                         grades_per_reflection_loop=2, reflection_loops_per_verse=2)

    await engine.run_async()

    assert all(call[1] == "GEN 1:2" for call in evaluator.calls)
    assert halted.reflection_loops == []
    assert translation_of(halted, engine.settings) == "a0"


@pytest.mark.asyncio
async def test_grade_only_segment_is_graded_but_not_corrected(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [10, 10]})
    seg = segment("GEN 1:1", "a0", grade_only=True)
    engine = make_engine(tmp_path, [seg], evaluator, grades_per_reflection_loop=2)

    await engine.run_async()

    assert [c[0] for c in evaluator.calls] == ["grade"]
    assert not seg.reflection_is_finalized


@pytest.mark.asyncio
async def test_stops_above_highest_grade_to_reflect(tmp_path):
    seg = segment("GEN 1:1", "a0", reflection_loops=[full_loop(95, 95)])
    engine = make_engine(tmp_path, [seg], FakeEvaluator(), grades_per_reflection_loop=2,
                         highest_grade_to_reflect=90.0)

    action = await engine.step()

    assert engine.done
    assert action == "lowest unfinalized grade 95.0 is above highest grade to reflect 90.0"


@pytest.mark.asyncio
async def test_manual_edit_mode_only_grades(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [40, 40]})
    engine = make_engine(tmp_path, [segment("GEN 1:1", "a0")], evaluator,
                         grades_per_reflection_loop=2, manual_edit_mode=True)

    await engine.run_async()

    assert [c[0] for c in evaluator.calls] == ["grade"]
    assert engine.done


@pytest.mark.asyncio
async def test_stops_without_improvement(tmp_path):
    seg = segment("GEN 1:1", "a0", reflection_loops=[full_loop(50, 50)])
    engine = make_engine(tmp_path, [seg], FakeEvaluator(), grades_per_reflection_loop=2,
                         iterations_without_improvement_max=0)

    action = await engine.step()

    assert action == "done because of iterations without improvement"
    assert engine.iterations_without_improvement == 1


@pytest.mark.asyncio
async def test_adaptation_runs_once_per_segment(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [50]})
    a, b = segment("GEN 1:1", "a0"), segment("GEN 1:2", "b0")
    engine = make_engine(tmp_path, [a, b], evaluator, adaptation_prompt="Simplify {vref}.",
                         grades_per_reflection_loop=1, grade_mode_enabled=False)

    assert await engine.step() == "adapted verse GEN 1:1"
    assert a.adapted and a.reflection_loops[0].graded_verse == "a0"

    # grading GEN 1:1 adapts its neighbour for the context window first
    assert await engine.step() == "added grade number 1 on loop 2 of grade 50 to verse GEN 1:1"
    assert b.adapted
    assert [c[0] for c in evaluator.calls] == ["adapt", "adapt", "grade"]
    assert translation_of(b, engine.settings) == "adapted GEN 1:2"


@pytest.mark.asyncio
async def test_comment_change_catch_up(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [70, 70]})
    seg = segment("GEN 1:1", "current", comment_mod_loop_count=1,
                  reflection_loops=[full_loop(60, 60)], reflection_is_finalized=True,
                  reflection_finalized_grade=60)
    engine = make_engine(tmp_path, [seg], evaluator, grades_per_reflection_loop=2)

    assert await engine.step() == "Skipped reflection on loop 1 for verse GEN 1:1"
    assert seg.reflection_loops[0].graded_verse == "current"
    assert not seg.reflection_is_finalized

    await engine.step()
    assert len(seg.reflection_loops) == 2
    assert [g.grade for g in seg.reflection_loops[1].grades] == [70, 70]


@pytest.mark.asyncio
async def test_comment_change_reverts_finalization(tmp_path):
    seg = segment("GEN 1:1", "current", comment_mod_loop_count=1,
                  reflection_loops=[full_loop(60, 60, graded_verse="current")],
                  reflection_is_finalized=True, reflection_finalized_grade=60)
    engine = make_engine(tmp_path, [seg], FakeEvaluator(), grades_per_reflection_loop=2)

    assert await engine.step() == "Reverted finalization on loop 1 for verse GEN 1:1"
    assert not seg.reflection_is_finalized


@pytest.mark.asyncio
async def test_summarized_correction(tmp_path):
    evaluator = FakeEvaluator(corrections={"GEN 1:1": ["better"]})
    seg = segment("GEN 1:1", "a0", reflection_loops=[full_loop(40, 40)])
    engine = make_engine(tmp_path, [seg], evaluator, grades_per_reflection_loop=2,
                         summarize_corrections=True)

    assert await engine.step() == "reflected on verse GEN 1:1"
    assert [c[0] for c in evaluator.calls] == ["summarize", "correct"]
    assert seg.reflection_loops[0].correction_summarization.summary == "summary for GEN 1:1"
    assert translation_of(seg, engine.settings) == "better"


class TestSelection:

    def test_lowest_with_ties_in_document_order(self, tmp_path):
        segments = [
            segment("GEN 1:1", "a", reflection_loops=[full_loop(80, 80)]),
            segment("GEN 1:2", "b", reflection_loops=[full_loop(60, 60)]),
            segment("GEN 1:3", "c", reflection_loops=[full_loop(60, 60)]),
        ]
        engine = make_engine(tmp_path, segments, FakeEvaluator(), grades_per_reflection_loop=2)

        index, selected, grade = engine.select_lowest()

        assert (index, grade) == (1, 60)
        assert selected is segments[1]

    def test_skips_overridden_and_out_of_range(self, tmp_path):
        segments = [
            segment("GEN 1:1", "a", reflection_loops=[full_loop(10, 10)]),
            segment("GEN 1:2", "b", reflection_loops=[full_loop(20, 20)]),
            segment("GEN 1:3", "c", reflection_loops=[full_loop(30, 30)]),
        ]
        engine = make_engine(tmp_path, segments, FakeEvaluator(), grades_per_reflection_loop=2, start_line=2)
        engine.overridden_references = {"GEN 1:2": "GEN 1:3"}

        index, _, grade = engine.select_lowest()

        assert (index, grade) == (2, 30)

    def test_debug_force_vref(self, tmp_path):
        segments = [
            segment("GEN 1:1", "a", reflection_loops=[full_loop(10, 10)]),
            segment("GEN 1:2", "b", reflection_loops=[full_loop(90, 90)]),
        ]
        engine = make_engine(tmp_path, segments, FakeEvaluator(), grades_per_reflection_loop=2,
                             debug_force_vref="GEN 1:2")

        assert engine.select_lowest()[0] == 1

    def test_debug_force_vref_respects_filters(self, tmp_path):
        segments = [
            segment("GEN 1:1", "a", reflection_loops=[full_loop(10, 10)], ai_halted=True),
            segment("GEN 1:2", "b", reflection_loops=[full_loop(20, 20)], grade_only=True),
            segment("GEN 1:3", "c", reflection_loops=[full_loop(30, 30)]),
        ]
        for forced in ["GEN 1:1", "GEN 1:2", "GEN 9:9"]:
            engine = make_engine(tmp_path, segments, FakeEvaluator(), grades_per_reflection_loop=2,
                                 debug_force_vref=forced)
            assert engine.select_lowest() == (None, None, None)

    @pytest.mark.asyncio
    async def test_forced_halted_segment_is_not_corrected(self, tmp_path):
        halted = segment("GEN 1:1", "a0", reflection_loops=[full_loop(10, 10)], ai_halted=True)
        evaluator = FakeEvaluator(corrections={"GEN 1:1": ["new"]})
        engine = make_engine(tmp_path, [halted], evaluator, grades_per_reflection_loop=2,
                             debug_force_vref="GEN 1:1")

        action = await engine.step()

        assert action == "Didn't find a verse to reflect on.  So done."
        assert evaluator.calls == []
        assert translation_of(halted, engine.settings) == "a0"


@pytest.mark.asyncio
async def test_save_cadence(tmp_path):
    now = [0.0]
    evaluator = FakeEvaluator(grades={"GEN 1:1": [50, 50, 50]})
    settings = ReflectionSettings(grades_per_reflection_loop=3, grade_mode_enabled=False, save_timeout=20)
    checkpoint = tmp_path / "checkpoint.jsonl"
    engine = ReflectionEngine(settings, evaluator, [segment("GEN 1:1", "a0")], str(checkpoint),
                              clock=lambda: now[0])

    now[0] = 5.0
    await engine.step()
    assert not checkpoint.exists()

    now[0] = 25.0
    await engine.step()
    assert checkpoint.exists()
    assert not engine.dirty


@pytest.mark.asyncio
async def test_audit_trail_row_per_tick(tmp_path):
    evaluator = FakeEvaluator(grades={"GEN 1:1": [50, 70]})
    audit_path = tmp_path / "average_grades.csv"
    settings = ReflectionSettings(grades_per_reflection_loop=2, grade_mode_enabled=False)
    engine = ReflectionEngine(settings, evaluator, [segment("GEN 1:1", "a0")], str(tmp_path / "c.jsonl"),
                              audit_trail=AuditTrail(audit_path))

    await engine.step()
    await engine.step()

    with open(audit_path, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 2
    assert rows[1]["average_grade"] == "60.0"
    assert rows[0]["action_done"].startswith("added grade number 1")


class TestLoadRun:

    def test_resumes_from_output(self, tmp_path):
        settings = ReflectionSettings(project_dir=str(tmp_path), reflection_input="in.jsonl",
                                      reflection_output="out.jsonl")
        save_segments(str(tmp_path / "in.jsonl"), [segment("GEN 1:1", "input")], settings)
        save_segments(str(tmp_path / "out.jsonl"), [segment("GEN 1:1", "output")], settings)

        run = load_run(settings)

        assert translation_of(run.segments[0], settings) == "output"
        assert run.checkpoint_path == str(tmp_path / "out.jsonl")

    def test_merges_ranges_and_resolves_line_range(self, tmp_path):
        settings = ReflectionSettings(project_dir=str(tmp_path), reflection_input="in.jsonl",
                                      reflection_output="out.jsonl", first_verse_ref="GEN 1:3")
        save_segments(str(tmp_path / "in.jsonl"), [
            segment("GEN 1:1", "one and two"),
            segment("GEN 1:2", "<range>"),
            segment("GEN 1:3", "three"),
        ], settings)

        run = load_run(settings)

        refs = [s.get_path(["vref"]) for s in run.segments]
        assert refs == ["GEN 1:1-2", "GEN 1:3"]
        assert run.settings.start_line == 2
        assert len(load_segments(str(tmp_path / "out.jsonl"))) == 2

    def test_unknown_first_reference(self, tmp_path):
        settings = ReflectionSettings(project_dir=str(tmp_path), reflection_input="in.jsonl",
                                      reflection_output="out.jsonl", first_verse_ref="GEN 9:9")
        save_segments(str(tmp_path / "in.jsonl"), [segment("GEN 1:1", "a")], settings)

        with pytest.raises(ConfigurationError, match="Did you mean GEN 1:1"):
            load_run(settings)
