"""Prompt text for each evaluation capability."""

import json
from typing import Dict, List, Mapping, Optional, Sequence

from .models import Grade, ReflectionComment, Segment
from .settings import ReflectionSettings

GRADE_SYSTEM_PROMPT = (
    "You are a teacher grading a student's translation of the Bible from a conservative Christian viewpoint."
)

SUMMARIZE_SYSTEM_PROMPT = (
    "You are a teacher compiling a summary of corrections from a peer review of the Bible "
    "from a conservative Christian viewpoint."
)

REFLECTION_SYSTEM_PROMPT = (
    "You are a gifted Bible student, who is implementing corrections from your teachers, on your Bible "
    "translation. Both you and your teachers operate from a Conservative Christian perspective."
)

ADAPTATION_SYSTEM_PROMPT = (
    "You are a conservative Bible Translator who is translating the Bible from a Christian perspective."
)

REVIEW_SUMMARY_SYSTEM_PROMPT = (
    "You are translation consultant, who is compiling correction for review from a Conservative "
    "Christian perspective."
)


def translation_objective(reference: str, settings: ReflectionSettings,
                          indexed_comments: Mapping[str, Sequence[ReflectionComment]]) -> str:
    """The configured objective followed by any reviewer comments on this reference."""
    objective = settings.translation_objective.replace("{target_language}", settings.target_language)
    comments = [c.comment for c in indexed_comments.get(reference, [])]
    return "\n".join([objective, *comments])


def common_context(reference: str, window: Sequence[Dict[str, Optional[str]]],
                   settings: ReflectionSettings,
                   indexed_comments: Mapping[str, Sequence[ReflectionComment]]) -> str:
    """
    Context shared by grading and correction prompts.

    Args:
        reference: The segment being worked on
        window: ``{reference, source, translation}`` for the segment and its neighbours
        settings: Run settings
        indexed_comments: Reviewer comments by reference
    """
    return "".join([
        "Translation Objective: ",
        translation_objective(reference, settings, indexed_comments),
        "\n\n",
        f"Source and target text of {reference} and its surrounding context:\n",
        json.dumps(list(window), indent=2, ensure_ascii=False),
        "\n",
    ])


def _dictionary_block(settings: ReflectionSettings) -> List[str]:
    if not settings.dictionary:
        return []
    parts = []
    if settings.dictionary_description:
        parts.append(f"\n{settings.dictionary_description}\n")
    parts.append(json.dumps(settings.dictionary, ensure_ascii=False) + "\n\n")
    return parts


def _corrections_block(grades: Sequence[Grade]) -> List[str]:
    return [f"Correction #{i}:\n```\n{grade.comment}\n```\n\n" for i, grade in enumerate(grades, start=1)]


def grade_prompt(context: str, reference: str, settings: ReflectionSettings) -> str:
    parts = [context, "\n", *_dictionary_block(settings)]
    parts.append(
        f"Instructions: Review the student's work translating {reference} from a conservative "
        "Christian perspective and give it a grade comment and a grade from 0 to 100 where 0 is "
        "failing and 100 is perfection.\n"
    )
    if settings.grading_prompt:
        parts.append(settings.grading_prompt.replace("{vref}", reference) + "\n")
    return "".join(parts)


def summarize_prompt(segment: Segment, reference: str, source: Optional[str],
                     translation: Optional[str], settings: ReflectionSettings) -> str:
    """
    Ask for the newest round's grade comments to be prioritised into one correction.

    Rounds since the last comment change are shown as edit history, with the
    fixes that produced them, so already-reverted corrections aren't requested again.
    """
    parts: List[str] = []
    history = segment.reflection_loops[segment.comment_mod_loop_count or 0:-1]
    if history:
        parts.append("##Edit History:\n")
        for i, loop in enumerate(history, start=1):
            parts.append(f"{reference} version {i}:\n```\n{loop.graded_verse or ''}\n```\n")
            if loop.correction_summarization and loop.correction_summarization.summary:
                parts.append(f"Past Fix: {i}:\n```\n{loop.correction_summarization.summary}\n```\n\n")

    parts.append(f"Source: {source or ''}\n")
    parts.append(f"Current Translation: {translation or ''}\n\n")

    parts.append(f"##Peer review comments for {reference}:\n")
    parts.extend(_corrections_block(segment.last_loop.grades if segment.last_loop else []))

    if settings.summarize_instructions:
        parts.append(f"{settings.summarize_instructions}\n")
    else:
        parts.append(
            "Instructions: Review the peer review comments, prioritize and summarize the most important "
            "corrections. Comments which request removing content are highest priority. "
            "Comments which request fixing content are the second highest priority. "
            "Comments which request adding new content are the lowest priority. "
        )

    if history:
        parts.append(
            "Review the edit history to prevent repeating history, for example requesting adding "
            "content which was intentionally removed."
        )
    return "".join(parts)


def reflection_prompt(context: str, reference: str, settings: ReflectionSettings,
                      summary: Optional[str] = None, grades: Sequence[Grade] = ()) -> str:
    """Ask for a corrected translation from either a summarized correction or the raw grade comments."""
    parts = [context, "\n\n", f"The current verse is {reference}\n", *_dictionary_block(settings)]
    if summary is not None:
        parts.append(f"Correction:\n```\n{summary}\n```\n\n")
    else:
        parts.extend(_corrections_block(grades))
    parts.append(
        f"Instructions: Attempt to satisfy all provided instructions for {reference} to the best of your "
        "ability. If the instructions are contradictory or mutually exclusive, use your own "
        "logic to resolve the conflict while prioritizing consistency and alignment with the "
        f"overall goal. Output your planning_thoughts, the reference {reference}, and the updated "
        f"translation for {reference}.\n"
    )
    return "".join(parts)


def adaptation_prompt(reference: str, translation: Optional[str], settings: ReflectionSettings) -> str:
    parts = [
        f"The current translation of {reference} is:\n\n```\n{translation}\n```\n\n",
        (settings.adaptation_prompt or "").replace("{vref}", reference),
        "\n\n",
        "Run two draft translations before the final updated translation.\n",
        "Don't add any parenthetical comment to the translation.\n",
        *_dictionary_block(settings),
    ]
    return "".join(parts)


def raw_review_report(grades: Sequence[Grade]) -> str:
    return "".join(
        f"**Review {i}** _(Grade {grade.grade})_: {grade.comment}\n\n" for i, grade in enumerate(grades, start=1)
    )


def review_summary_prompt(raw_report: str, language: str) -> str:
    """Ask for several reviews to be merged into one, written in the report language."""
    return "".join([
        "The following report was generated for a translated verse of the Bible.\n",
        f"Combine the multiple reviews into a single review in {language} combining the essence of "
        "the individual reviews.\n",
        "Don't add any new content to the report, except for the summarization.\n",
        "Don't put a heading on the summarized report.\n",
        "\n\n**raw report**:\n",
        "```\n",
        raw_report,
        "\n```\n",
    ])
