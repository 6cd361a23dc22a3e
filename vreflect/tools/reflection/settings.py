"""Run settings for the reflection engine."""

import logging
import math
import os
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from vreflect.libs.config_loader import ConfigType, get_config
from vreflect.libs.references import find_closest_reference
from .errors import ConfigurationError

LOG = logging.getLogger(__name__)

DEFAULT_TRANSLATION_OBJECTIVE = (
    "Purpose: This translation is designed to support Bible translation efforts by providing a clear, "
    "accurate, and accessible text in {target_language}. Here are key criteria to assess the translation "
    "quality of individual verses:\n"
    "Literal Faithfulness: The translation should closely mirror the source language, preserving the "
    "structure and phrasing to the extent possible without compromising clarity.\n"
    "Clarity and Simplicity: The language used should be straightforward and easy to understand, avoiding "
    "complex or archaic terms to ensure accessibility for a broad audience.\n"
    "Consistency in Terminology: Key terms and theological concepts should be translated uniformly "
    "throughout the text to maintain coherence and aid in comprehension.\n"
    "Minimal Interpretive Bias: The translation should avoid inserting interpretive or doctrinal biases, "
    "allowing readers to engage with the text without undue influence from the translator's perspective.\n"
    "Support for Exegetical Work: The translation should serve as a reliable foundation for further study, "
    "teaching, and translation, providing a text that is both accurate and conducive to in-depth analysis."
)

ITERATIONS_PASS_COMMENT_DEFAULT = 5

KeyPathTuple = Tuple[str, ...]


class ReflectionSettings(BaseModel):
    """
    Every tunable of a reflection run, fully populated.

    Built once per run by ``resolve_config``. Only ``start_line`` and
    ``end_line`` are derived afterwards, by ``resolve_line_range``.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    # Record layout
    reference_key: KeyPathTuple = ("vref",)
    source_key: KeyPathTuple = ("source",)
    translation_key: KeyPathTuple = ("fresh_translation", "text")
    translation_comment_key: Optional[KeyPathTuple] = ("translation_notes",)
    override_key: Optional[KeyPathTuple] = None

    # Files, relative to project_dir unless absolute
    project_dir: str = "."
    reflection_input: str = ".project/reflection/reflection.jsonl"
    reflection_output: str = ".project/reflection/reflection.jsonl"
    collected_comments_file: str = ".project/reflection/comments.jsonl"
    average_grade_csv_log: Optional[str] = ".project/reflection/average_grades.csv"
    summary_cache_file: str = ".project/reflection/cache/review_summaries.json"

    # Staleness tracking
    source_dir: str = ".project/sourceTexts"
    source_suffix: str = ".source"
    target_dir: str = "files/target"
    target_suffix: str = ".codex"
    annotations_file: str = ".project/comments.json"
    mod_times_file: str = ".project/reflection/observed_mod_times.json"
    reset_reflection_loops_on_update: bool = True

    # Models
    model: str = "gpt-4.1-mini"
    reflection_model: Optional[str] = None
    adaptation_model: Optional[str] = None
    temperature: float = 1.2
    top_p: float = 0.9

    # Loop tuning
    grades_per_reflection_loop: int = Field(default=6, ge=1)
    reflection_loops_per_verse: int = 10
    iterations_pass_comment: int = ITERATIONS_PASS_COMMENT_DEFAULT
    highest_grade_to_reflect: float = 90
    iterations_without_improvement_max: float = math.inf
    num_context_verses_before: int = 10
    num_context_verses_after: int = 10
    summarize_corrections: bool = True
    grade_mode_enabled: bool = True
    manual_edit_mode: bool = False
    normalize_ranges: bool = True
    save_timeout: float = 20.0
    retry_backoff_seconds: float = 5.0
    request_timeout: float = 120.0

    # Prompting
    translation_objective: str = DEFAULT_TRANSLATION_OBJECTIVE
    target_language: str = "the target language"
    report_language: str = "English"
    adaptation_prompt: Optional[str] = None
    grading_prompt: Optional[str] = None
    summarize_instructions: Optional[str] = None
    dictionary: Any = None
    dictionary_description: Optional[str] = None

    # Range selection
    first_verse_ref: Optional[str] = None
    last_verse_ref: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    debug_force_vref: Optional[str] = None

    @field_validator("reference_key", "source_key", "translation_key", "translation_comment_key",
                     "override_key", mode="before")
    @classmethod
    def _key_path(cls, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, str):
            return (value,)
        if isinstance(value, Sequence) and value and all(isinstance(k, str) for k in value):
            return tuple(value)
        raise ValueError(f"must be a key name or a non-empty list of key names, got {value!r}")

    @field_validator("iterations_without_improvement_max", mode="before")
    @classmethod
    def _unlimited_when_unset(cls, value: Any) -> Any:
        return math.inf if value is None else value

    @field_validator("grades_per_reflection_loop", "reflection_loops_per_verse", "iterations_pass_comment",
                     "num_context_verses_before", "num_context_verses_after", "start_line", "end_line",
                     "temperature", "top_p", "highest_grade_to_reflect", "iterations_without_improvement_max",
                     "save_timeout", "retry_backoff_seconds", "request_timeout", mode="before")
    @classmethod
    def _not_a_boolean(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError(f"must be a number, got {value!r}")
        return value

    def resolve_path(self, path: str) -> str:
        """Resolve a configured path against project_dir."""
        return path if os.path.isabs(path) else os.path.join(self.project_dir, path)

    def in_range(self, index: int) -> bool:
        """Whether a 0-based position in the collection lies within start_line..end_line."""
        if self.start_line is not None and index < self.start_line - 1:
            return False
        if self.end_line is not None and index > self.end_line - 1:
            return False
        return True

    def past_range(self, index: int) -> bool:
        return self.end_line is not None and index > self.end_line - 1


# Spellings accepted for compatibility with older configuration files
_ALIASES = {
    "adaption_model": "adaptation_model",
    "reflection-model": "reflection_model",
}


def resolve_config(raw: Optional[Mapping[str, Any]]) -> ReflectionSettings:
    """
    Build the run settings from the ``reflection`` section of the configs.

    Missing keys take their defaults, values are validated against the
    declared types and unknown keys are logged and ignored. The input is not
    modified.

    Raises:
        ConfigurationError: If a value has the wrong shape
    """
    values: Dict[str, Any] = {}
    for key, value in (raw or {}).items():
        name = _ALIASES.get(key, key)
        if name not in ReflectionSettings.model_fields:
            LOG.warning("Ignoring unknown reflection setting %s", key)
            continue
        values[name] = value

    try:
        return ReflectionSettings.model_validate(values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid reflection settings: {e}") from e


def load_settings(configs: ConfigType) -> ReflectionSettings:
    return resolve_config(get_config("reflection", configs, default={}) or {})


def require_credentials(configs: ConfigType) -> str:
    """
    Return the configured OpenAI API key.

    Raises:
        ConfigurationError: If the key is missing or empty
    """
    api_key = get_config("openai.api_key", configs, default=None)
    if not isinstance(api_key, str) or not api_key.strip():
        raise ConfigurationError("openai.api_key must be set (for example in config/local.yaml)")
    return api_key


def _find_line(reference: str, references: Sequence[Any], which: str) -> int:
    try:
        return references.index(reference) + 1
    except ValueError:
        closest, _ = find_closest_reference(reference, references)
        message = f"The {which} id {reference} doesn't match any references."
        if closest:
            message += f" Did you mean {closest}?"
        raise ConfigurationError(message) from None


def resolve_line_range(settings: ReflectionSettings, segments: Sequence[Any]) -> ReflectionSettings:
    """
    Derive start_line and end_line (1-based) from first_verse_ref and last_verse_ref.

    Args:
        settings: Settings from resolve_config
        segments: The collection in document order

    Returns:
        A copy of settings with the line range filled in

    Raises:
        ConfigurationError: If a configured reference isn't in the collection
    """
    references = [segment.get_path(settings.reference_key) for segment in segments]
    changes: Dict[str, Any] = {}
    if settings.first_verse_ref is not None:
        changes["start_line"] = _find_line(settings.first_verse_ref, references, "starting")
        LOG.info("Focusing on and after line %d (%s)", changes["start_line"], settings.first_verse_ref)
    if settings.last_verse_ref is not None:
        changes["end_line"] = _find_line(settings.last_verse_ref, references, "last")
        LOG.info("Focusing on and before line %d (%s)", changes["end_line"], settings.last_verse_ref)
    return settings.model_copy(update=changes) if changes else settings
