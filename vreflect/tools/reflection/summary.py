"""Grade summary report for a reflection run."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from vreflect.libs.disk_cache import cached
from .evaluator import EvaluationService
from .grades import compute_translation_grade, compute_verse_grade
from .models import Grade, Segment
from .prompts import raw_review_report, review_summary_prompt
from .settings import ReflectionSettings
from .state import reference_of, source_of, translation_of

LOG = logging.getLogger(__name__)


@dataclass
class VerseSummary:
    """One graded segment as it appears in the report."""
    reference: str
    grade: float
    finalized: bool
    source: Optional[str]
    translation: Optional[str]
    reviews: List[Grade] = field(default_factory=list)
    review_summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        data = {
            'reference': self.reference,
            'grade': round(self.grade, 2),
            'finalized': self.finalized,
            'source': self.source,
            'translation': self.translation,
            'reviews': [{'grade': r.grade, 'comment': r.comment} for r in self.reviews],
        }
        if self.review_summary:
            data['review_summary'] = self.review_summary
        return data


def _latest_reviews(segment: Segment) -> List[Grade]:
    for loop in reversed(segment.reflection_loops):
        if loop.grades:
            return list(loop.grades)
    return []


def build_grade_summary(segments: Sequence[Segment], settings: ReflectionSettings) -> List[VerseSummary]:
    """Graded segments in the line range, lowest grade first."""
    rows = []
    for index, segment in enumerate(segments):
        if settings.past_range(index):
            break
        if not settings.in_range(index):
            continue
        grade = compute_verse_grade(segment, settings)
        if grade is None:
            continue
        rows.append(VerseSummary(
            reference=reference_of(segment, settings),
            grade=grade,
            finalized=segment.reflection_is_finalized,
            source=source_of(segment, settings),
            translation=translation_of(segment, settings),
            reviews=_latest_reviews(segment),
        ))
    rows.sort(key=lambda r: r.grade)
    return rows


async def summarize_reviews(rows: Sequence[VerseSummary], evaluator: EvaluationService,
                            settings: ReflectionSettings, use_cache: bool = True) -> None:
    """
    Condense each row's reviews into one review in the report language.

    Results are cached on disk by report text and language, so re-running a
    report only pays for verses whose reviews changed.
    """
    @cached(settings.resolve_path(settings.summary_cache_file), enabled=use_cache)
    async def run_summary(raw_report: str, language: str) -> str:
        return await evaluator.summarize_review(review_summary_prompt(raw_report, language))

    for row in rows:
        if row.reviews:
            row.review_summary = await run_summary(raw_review_report(row.reviews), settings.report_language)


def save_grade_summary(rows: Sequence[VerseSummary], output_path: Union[str, Path],
                       segments: Sequence[Segment], settings: ReflectionSettings) -> None:
    """
    Save the grade summary to a YAML file.

    Args:
        rows: Rows from build_grade_summary
        output_path: Path to save summary file
        segments: The full collection, for the overall average
        settings: Run settings
    """
    summary = {
        'grade_summary': {
            'timestamp': datetime.now().isoformat(),
            'average_grade': round(compute_translation_grade(segments, settings), 2),
            'verses_graded': len(rows),
            'verses_finalized': sum(1 for r in rows if r.finalized),
            'lowest_grade': rows[0].grade if rows else None,
        },
        'verses': [r.to_dict() for r in rows],
    }

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        yaml.dump(summary, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    LOG.info(f"Summary saved to {output_path}")
