"""The reflection loop: grade, correct and finalize segments lowest grade first."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tqdm import tqdm

from vreflect.libs.references import get_overridden_references, normalize_ranges
from .audit import AuditTrail
from .checkpoint import load_comments, load_segments, save_segments, sort_segments
from .comments import index_comments
from .evaluator import EvaluationService
from .grades import compute_translation_grade, compute_verse_grade
from .models import CorrectionSummary, ReflectionComment, Segment
from .prompts import adaptation_prompt, common_context, grade_prompt, reflection_prompt, summarize_prompt
from .settings import ReflectionSettings, resolve_line_range
from .state import (
    append_grades, apply_adaptation, apply_reflection, finalize_segment, needs_finalization,
    record_graded_verse, reference_of, source_of, translation_of, unanswered_grades,
)

LOG = logging.getLogger(__name__)


@dataclass
class LoadedRun:
    """Everything the engine needs from disk, prepared for one run."""
    settings: ReflectionSettings
    segments: List[Segment]
    checkpoint_path: str
    overridden_references: Dict[str, str] = field(default_factory=dict)
    indexed_comments: Dict[str, List[ReflectionComment]] = field(default_factory=dict)


def load_run(settings: ReflectionSettings) -> LoadedRun:
    """
    Load the collection and comments for a run.

    Resumes from reflection_output when it exists, otherwise starts from a
    copy of reflection_input. Range markers are merged, the override table is
    built, the collection is put in reference order and the configured line
    range is resolved against it.

    Raises:
        ConfigurationError: If first_verse_ref or last_verse_ref isn't in the collection
        CheckpointError: If a checkpoint line is corrupt
    """
    output_path = settings.resolve_path(settings.reflection_output)
    input_path = settings.resolve_path(settings.reflection_input)

    if os.path.exists(output_path):
        segments = load_segments(output_path)
    else:
        segments = [s.model_copy(deep=True) for s in load_segments(input_path)]

    records = [s.to_record() for s in segments]
    overridden = get_overridden_references(records, settings.reference_key, settings.override_key)

    if settings.normalize_ranges:
        normalized = normalize_ranges(records, settings.reference_key, settings.translation_key,
                                      settings.source_key)
        if len(normalized) != len(records):
            LOG.info(f"Merged {len(records) - len(normalized)} range markers")
            segments = [Segment.model_validate(r) for r in normalized]
            save_segments(output_path, segments, settings)

    segments = sort_segments(segments, settings)
    settings = resolve_line_range(settings, segments)

    comments_path = settings.resolve_path(settings.collected_comments_file)
    return LoadedRun(
        settings=settings,
        segments=segments,
        checkpoint_path=output_path,
        overridden_references=overridden,
        indexed_comments=index_comments(load_comments(comments_path)),
    )


class ReflectionEngine:
    """
    Drives grading, correction and finalization across a segment collection.

    Each tick does exactly one thing. A sweep in document order first makes
    sure every segment in range is adapted and fully graded; the first
    segment that needs work wins the tick. When nothing needs grading, the
    lowest-graded unfinalized segment is finalized if it has all its rounds,
    or corrected otherwise. The run stops when the lowest grade clears
    highest_grade_to_reflect, when the average stops improving, or when
    nothing is left to select.

    The collection is checkpointed at most once per save_timeout and always
    when the run ends.
    """

    def __init__(self, settings: ReflectionSettings, evaluator: EvaluationService,
                 segments: List[Segment], checkpoint_path: str,
                 overridden_references: Optional[Mapping[str, str]] = None,
                 indexed_comments: Optional[Mapping[str, Sequence[ReflectionComment]]] = None,
                 audit_trail: Optional[AuditTrail] = None,
                 clock: Callable[[], float] = time.monotonic,
                 show_progress: bool = False):
        self.settings = settings
        self.evaluator = evaluator
        self.segments = segments
        self.checkpoint_path = checkpoint_path
        self.overridden_references = dict(overridden_references or {})
        self.indexed_comments = dict(indexed_comments or {})
        self.audit_trail = audit_trail
        self.clock = clock
        self.show_progress = show_progress

        self.dirty = False
        self.done = False
        self.last_save = clock()
        self.best_grade_found = compute_translation_grade(segments, settings)
        self.iterations_without_improvement = 0

    @classmethod
    def from_run(cls, run: LoadedRun, evaluator: EvaluationService, **kwargs) -> "ReflectionEngine":
        return cls(run.settings, evaluator, run.segments, run.checkpoint_path,
                   overridden_references=run.overridden_references,
                   indexed_comments=run.indexed_comments, **kwargs)

    def _in_scope(self, index: int) -> bool:
        return self.settings.in_range(index)

    def _is_overridden(self, reference: Optional[str]) -> bool:
        return reference is None or reference in self.overridden_references

    # Persistence

    def save(self) -> None:
        save_segments(self.checkpoint_path, self.segments, self.settings)
        self.last_save = self.clock()
        self.dirty = False
        LOG.debug(f"Saved checkpoint {self.checkpoint_path}")

    def save_if_due(self) -> None:
        if self.dirty and self.clock() - self.last_save > self.settings.save_timeout:
            self.save()

    # Capability-backed steps

    async def _adapt_if_needed(self, segment: Segment) -> bool:
        """Run the one-time adaptation pass on a segment that hasn't had it."""
        if not self.settings.adaptation_prompt or segment.adapted or not segment.status.accepts_ai_work:
            return False

        reference = reference_of(segment, self.settings)
        prompt = adaptation_prompt(reference, translation_of(segment, self.settings), self.settings)
        result = await self.evaluator.adapt(prompt, reference=reference)

        LOG.info(f"Adapting verse {reference}")
        LOG.debug(f"old: {translation_of(segment, self.settings)}")
        LOG.debug(f"new: {result.updated_translation}")
        apply_adaptation(segment, self.settings, result)
        self.dirty = True
        return True

    async def _build_context(self, index: int, segment: Segment) -> str:
        """Objective, comments and the window of neighbouring segments around index."""
        first = max(index - self.settings.num_context_verses_before, 0)
        last = min(index + self.settings.num_context_verses_after, len(self.segments) - 1)

        window = []
        for neighbour in self.segments[first:last + 1]:
            reference = reference_of(neighbour, self.settings)
            if not reference or self._is_overridden(reference):
                continue
            await self._adapt_if_needed(neighbour)
            window.append({
                "reference": reference,
                "source": source_of(neighbour, self.settings),
                "translation": translation_of(neighbour, self.settings),
            })

        return common_context(reference_of(segment, self.settings), window, self.settings,
                              self.indexed_comments)

    async def _grade(self, index: int, segment: Segment, reference: str, unanswered: int) -> str:
        needed = self.settings.grades_per_reflection_loop - unanswered
        if not self.settings.grade_mode_enabled:
            needed = 1

        context = await self._build_context(index, segment)
        grades = await self.evaluator.grade_n(grade_prompt(context, reference, self.settings), needed,
                                              reference=reference)
        loop = append_grades(segment, grades)
        self.dirty = True

        loop_number = len(segment.reflection_loops)
        if len(grades) == 1:
            return (f"added grade number {len(loop.grades)} on loop {loop_number} "
                    f"of grade {grades[0].grade} to verse {reference}")
        return (f"added {len(grades)} up to grade number {len(loop.grades)} on loop {loop_number} "
                f"of grades {[g.grade for g in grades]} to verse {reference}")

    async def _reflect(self, index: int, segment: Segment) -> str:
        settings = self.settings
        reference = reference_of(segment, settings)
        context = await self._build_context(index, segment)

        summary = None
        if settings.summarize_corrections:
            prompt = summarize_prompt(segment, reference, source_of(segment, settings),
                                      translation_of(segment, settings), settings)
            response = await self.evaluator.summarize_corrections(prompt, reference=reference)
            summary = CorrectionSummary(planning_thoughts=response.planning_thoughts, summary=response.summary)

        grades = segment.last_loop.grades if segment.last_loop else []
        prompt = reflection_prompt(context, reference, settings,
                                   summary=summary.summary if summary else None, grades=grades)
        result = await self.evaluator.correct(prompt, reference=reference)

        LOG.info(f"Working on verse {reference} which has grade {compute_verse_grade(segment, settings)}")
        if summary:
            LOG.debug(summary.summary)
        LOG.debug(f"source: {source_of(segment, settings)}")
        LOG.debug(f"old: {translation_of(segment, settings)}")
        LOG.debug(f"new: {result.updated_translation}")

        apply_reflection(segment, settings, result, summary)
        self.dirty = True
        return f"reflected on verse {reference}"

    # Tick phases

    def _catch_up_comment_change(self, segment: Segment, reference: str) -> Optional[str]:
        """
        Give a round invalidated by a comment change a baseline text, and undo
        finalization that was based on it.
        """
        loops = segment.reflection_loops
        boundary = segment.comment_mod_loop_count if segment.comment_mod_loop_count is not None else -1
        if not loops or len(loops) > boundary:
            return None

        last = loops[-1]
        recorded = last.has_graded_verse
        if recorded and not segment.reflection_is_finalized:
            return None

        if not recorded:
            record_graded_verse(last, segment, self.settings)
        segment.unfinalize()
        self.dirty = True
        if not recorded:
            return f"Skipped reflection on loop {len(loops)} for verse {reference}"
        return f"Reverted finalization on loop {len(loops)} for verse {reference}"

    async def _sweep(self) -> Optional[str]:
        """Adapt, catch up or grade the first segment in document order that needs it."""
        for index, segment in enumerate(self.segments):
            if self.settings.past_range(index):
                break
            if not self._in_scope(index) or not segment.status.accepts_ai_work:
                continue
            reference = reference_of(segment, self.settings)
            if self._is_overridden(reference):
                continue

            if await self._adapt_if_needed(segment):
                return f"adapted verse {reference}"

            action = self._catch_up_comment_change(segment, reference)
            if action:
                return action

            unanswered = unanswered_grades(segment, self.settings)
            if unanswered < self.settings.grades_per_reflection_loop:
                return await self._grade(index, segment, reference, unanswered)
        return None

    def select_lowest(self) -> Tuple[Optional[int], Optional[Segment], Optional[float]]:
        """
        The lowest-graded segment that may be corrected, with its position and grade.

        Ties go to the earlier segment. debug_force_vref, when set, selects
        that reference regardless of grade, but only if it could otherwise
        be selected.
        """
        forced = self.settings.debug_force_vref
        lowest: Tuple[Optional[int], Optional[Segment], Optional[float]] = (None, None, None)
        for index, segment in enumerate(self.segments):
            if self.settings.past_range(index):
                break
            if not self._in_scope(index) or not segment.status.selectable_for_reflection:
                continue
            reference = reference_of(segment, self.settings)
            if self._is_overridden(reference):
                continue
            if forced is not None:
                if reference == forced:
                    return index, segment, None
                continue
            grade = compute_verse_grade(segment, self.settings)
            if grade is not None and (lowest[2] is None or grade < lowest[2]):
                lowest = (index, segment, grade)
        return lowest

    def _track_improvement(self, average_grade: float) -> bool:
        """Update the stall counter; True when it has run past its limit."""
        self.iterations_without_improvement += 1
        if average_grade > self.best_grade_found:
            LOG.info(f"New best grade: {average_grade} after {self.iterations_without_improvement} iterations. "
                     f"Improvement of {average_grade - self.best_grade_found}")
            self.best_grade_found = average_grade
            self.iterations_without_improvement = 0
        return self.iterations_without_improvement > self.settings.iterations_without_improvement_max

    async def _reflect_or_finish(self) -> str:
        average_grade = compute_translation_grade(self.segments, self.settings)

        if self.settings.manual_edit_mode:
            self.done = True
            return "done because grading is complete and configuration is in manual_edit_mode."

        if self._track_improvement(average_grade):
            self.done = True
            return "done because of iterations without improvement"

        index, segment, lowest_grade = self.select_lowest()
        if lowest_grade is not None and lowest_grade > self.settings.highest_grade_to_reflect:
            self.done = True
            return (f"lowest unfinalized grade {lowest_grade} is above highest grade to reflect "
                    f"{self.settings.highest_grade_to_reflect}")
        if segment is None:
            self.done = True
            return "Didn't find a verse to reflect on.  So done."

        if needs_finalization(segment, self.settings):
            reference = reference_of(segment, self.settings)
            old_grade = segment.last_loop.average_grade
            if not finalize_segment(segment, self.settings):
                LOG.error(f"Could not finalize verse {reference}: no graded round since the last comment change")
                self.done = True
                return f"done because verse {reference} could not be finalized"
            self.dirty = True
            LOG.info(f"Finalizing {reference}: grade {old_grade} -> {compute_verse_grade(segment, self.settings)}")
            return f"finalized verse {reference}"

        return await self._reflect(index, segment)

    async def step(self) -> str:
        """
        Perform one tick and return a description of what it did.

        Sets ``done`` when a stop condition fires.
        """
        if self.done:
            return "done"

        action = await self._sweep()
        if action is None:
            action = await self._reflect_or_finish()

        self.save_if_due()

        average_grade = compute_translation_grade(self.segments, self.settings)
        LOG.info(f"Average grade: {average_grade:.2f} - {action} - Best grade: {self.best_grade_found:.2f} "
                 f"- Iterations without improvement: {self.iterations_without_improvement}")
        if self.audit_trail is not None:
            self.audit_trail.append(average_grade, action, self.best_grade_found,
                                    self.iterations_without_improvement)
        return action

    # Progress

    def _eligible(self) -> List[Segment]:
        return [
            segment for index, segment in enumerate(self.segments)
            if self._in_scope(index) and segment.status.accepts_ai_work
            and not self._is_overridden(reference_of(segment, self.settings))
        ]

    def _finalized_count(self) -> int:
        return sum(1 for segment in self._eligible() if segment.reflection_is_finalized)

    async def run_async(self) -> None:
        """Tick until a stop condition fires, then save any unsaved work."""
        progress = tqdm(total=len(self._eligible()), desc="Finalized verses", unit="verse",
                        disable=not self.show_progress)
        progress.update(self._finalized_count())
        try:
            while not self.done:
                await self.step()
                progress.n = self._finalized_count()
                progress.refresh()
        finally:
            progress.close()
            if self.dirty:
                self.save()

    def run(self) -> None:
        """Synchronous wrapper for run_async."""
        asyncio.run(self.run_async())
