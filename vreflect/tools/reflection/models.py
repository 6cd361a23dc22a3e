"""Pydantic models for segments, reflection history and service responses."""

from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from vreflect.libs.key_path import look_up_key, set_key


class Grade(BaseModel):
    """One scored evaluation of a translation."""
    model_config = ConfigDict(extra="allow")

    grade: int = Field(description="Score from 0 (failing) to 100 (perfect)")
    comment: str = Field(default="", description="Reviewer rationale for the score")


class CorrectionSummary(BaseModel):
    """Condensed corrections produced from a round's grade comments."""
    model_config = ConfigDict(extra="allow")

    planning_thoughts: str = ""
    summary: str = ""


class ReflectionLoop(BaseModel):
    """
    One round of evaluation for a segment.

    Only fields that were loaded or assigned are written back out, so
    ``has_graded_verse`` distinguishes a round that never recorded its text
    from one that recorded an empty or null text.
    """
    model_config = ConfigDict(extra="allow")

    grades: List[Grade] = Field(default_factory=list)
    graded_verse: Optional[str] = None
    graded_verse_comment: Optional[str] = None
    average_grade: Optional[float] = None
    correction_summarization: Optional[CorrectionSummary] = None
    is_adaptation: bool = False

    @property
    def has_graded_verse(self) -> bool:
        return "graded_verse" in self.model_fields_set

    def add_grades(self, grades: Sequence[Grade]) -> None:
        self.grades = [*self.grades, *grades]

    def record_graded_verse(self, text: Optional[str], comment: Optional[str] = None,
                            with_comment: bool = False) -> None:
        """Store the text (and optionally its comment) that this round graded."""
        if with_comment:
            self.graded_verse_comment = comment
        self.graded_verse = text


class SegmentStatus(BaseModel):
    """Immutable snapshot of the flags that gate engine work on a segment."""
    model_config = ConfigDict(frozen=True)

    finalized: bool = False
    ai_halted: bool = False
    grade_only: bool = False
    human_reviewed: bool = False
    adapted: bool = False

    @property
    def accepts_ai_work(self) -> bool:
        """Whether grading, adaptation or correction may touch the segment."""
        return not self.ai_halted

    @property
    def selectable_for_reflection(self) -> bool:
        """Whether the segment may be picked as the next one to correct or finalize."""
        return not (self.ai_halted or self.grade_only or self.finalized)


class Segment(BaseModel):
    """
    A translatable unit ("verse").

    Reference, source, translation and translation comment live at key paths
    chosen by configuration, so they are kept as extra fields and reached with
    ``get_path`` / ``set_path``. Everything the engine itself tracks is a
    typed field.
    """
    model_config = ConfigDict(extra="allow")

    reflection_loops: List[ReflectionLoop] = Field(default_factory=list)
    reflection_is_finalized: bool = False
    reflection_finalized_grade: Optional[float] = None
    reflection_finalized_comment: Optional[str] = None
    comment_mod_loop_count: Optional[int] = None
    ai_halted: bool = False
    grade_only: bool = False
    human_reviewed: bool = False
    adapted: bool = False

    @property
    def status(self) -> SegmentStatus:
        return SegmentStatus(
            finalized=self.reflection_is_finalized,
            ai_halted=self.ai_halted,
            grade_only=self.grade_only,
            human_reviewed=self.human_reviewed,
            adapted=self.adapted,
        )

    @property
    def last_loop(self) -> Optional[ReflectionLoop]:
        return self.reflection_loops[-1] if self.reflection_loops else None

    def append_loop(self, loop: Optional[ReflectionLoop] = None) -> ReflectionLoop:
        """Open a new round and return it."""
        loop = loop if loop is not None else ReflectionLoop(grades=[])
        self.reflection_loops = [*self.reflection_loops, loop]
        return loop

    def get_path(self, keys: Sequence[Union[str, int]], default: Any = None) -> Any:
        """Look up a configured key path among the segment's free-form fields."""
        if not keys:
            return default
        return look_up_key(self.__pydantic_extra__ or {}, keys, default)

    def set_path(self, keys: Sequence[str], value: Any) -> None:
        """Set a configured key path among the segment's free-form fields."""
        if keys[0] in type(self).model_fields:
            raise ValueError(f"Key path {list(keys)} collides with the tracked field {keys[0]}")
        extra = self.__pydantic_extra__
        set_key(extra, keys, value)
        self.model_fields_set.add(keys[0])

    def clear_human_reviewed(self) -> None:
        if self.human_reviewed:
            self.human_reviewed = False

    def unfinalize(self) -> None:
        if self.reflection_is_finalized:
            self.reflection_is_finalized = False

    def to_record(self) -> Dict[str, Any]:
        """Dump for a checkpoint line, keeping only fields that were present or assigned."""
        return self.model_dump(mode="json", exclude_unset=True)


class ReflectionComment(BaseModel):
    """A reviewer comment and the segment references it applies to."""
    model_config = ConfigDict(extra="allow")

    comment: str
    ids: List[str] = Field(default_factory=list)
    name: str = ""


class AnnotationAuthor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""


class AnnotationComment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    body: str = ""
    deleted: bool = False
    author: AnnotationAuthor = Field(default_factory=AnnotationAuthor)


class AnnotationCell(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    cell_id: str = Field(default="", alias="cellId")


class AnnotationThread(BaseModel):
    """A comment thread attached to one segment in the host editor's annotation file."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    deleted: bool = False
    comments: List[AnnotationComment] = Field(default_factory=list)
    cell: AnnotationCell = Field(default_factory=AnnotationCell, alias="cellId")


# Structured outputs requested from the evaluation service

class GradeResponse(BaseModel):
    """A single grade for a translation."""
    comment: str = Field(description="Explanation of the grade and what should be corrected")
    grade: int = Field(ge=0, le=100, description="Grade from 0 (failing) to 100 (perfection)")


class SummarizeResponse(BaseModel):
    """Prioritised summary of peer review corrections."""
    planning_thoughts: str = Field(description="Reasoning used to prioritise the corrections")
    summary: str = Field(description="The corrections to apply, most important first")


class ReflectionResponse(BaseModel):
    """A corrected translation."""
    planning_thoughts: str = Field(description="How the corrections were applied")
    reference: str = Field(description="Reference of the verse being corrected")
    updated_translation: str = Field(description="The corrected translation")


class AdaptationResponse(BaseModel):
    """A one-time rewrite of a translation."""
    planning_thoughts: str = Field(description="How the adaptation was approached")
    reference: str = Field(description="Reference of the verse being adapted")
    draft_translation_1: str = Field(description="First draft")
    draft_translation_2: str = Field(description="Second draft")
    updated_translation: str = Field(description="The final adapted translation")


class ReviewSummaryResponse(BaseModel):
    """Review comments condensed for a report."""
    updated_report: str = Field(description="The condensed review")
