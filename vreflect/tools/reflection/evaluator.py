"""Evaluation service adapter: LLM capability calls with structured output."""

import logging
from typing import Any, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel

from vreflect.libs.config_loader import ConfigType
from vreflect.libs.llm import create_agent
from vreflect.libs.retry import RetryPolicy
from .models import (
    AdaptationResponse, Grade, GradeResponse, ReflectionResponse, ReviewSummaryResponse, SummarizeResponse,
)
from .prompts import (
    ADAPTATION_SYSTEM_PROMPT, GRADE_SYSTEM_PROMPT, REFLECTION_SYSTEM_PROMPT, REVIEW_SUMMARY_SYSTEM_PROMPT,
    SUMMARIZE_SYSTEM_PROMPT,
)
from .settings import ReflectionSettings

LOG = logging.getLogger(__name__)


class EvaluationService(Protocol):
    """The capabilities the reflection engine needs from a text-evaluation service."""

    async def grade_n(self, prompt: str, count: int, reference: str = "") -> List[Grade]:
        ...

    async def correct(self, prompt: str, reference: str = "") -> ReflectionResponse:
        ...

    async def summarize_corrections(self, prompt: str, reference: str = "") -> SummarizeResponse:
        ...

    async def adapt(self, prompt: str, reference: str = "") -> AdaptationResponse:
        ...

    async def summarize_review(self, prompt: str, reference: str = "") -> str:
        ...


def retry_policy_for(settings: ReflectionSettings) -> RetryPolicy:
    return RetryPolicy(
        backoff_seconds=settings.retry_backoff_seconds,
        timeout_seconds=settings.request_timeout or None,
    )


class ReflectionEvaluator:
    """
    Evaluation service backed by pydantic-ai agents on OpenAI models.

    There is one agent per capability, each validating the model's answer
    against a fixed response model. Agents don't retry on their own; every
    call goes through the retry policy, so a malformed answer is retried the
    same way as a network failure.
    """

    def __init__(self, configs: ConfigType, settings: ReflectionSettings,
                 retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize the evaluator.

        Args:
            configs: Configuration dictionary holding the ``openai`` section
            settings: Run settings (models, temperature, top_p)
            retry_policy: Retry policy for every call (defaults from settings)
        """
        self.configs = configs
        self.settings = settings
        self.retry_policy = retry_policy or retry_policy_for(settings)

        sampling = {"temperature": settings.temperature, "top_p": settings.top_p}
        self.grade_agent = self._agent(settings.model, sampling, GRADE_SYSTEM_PROMPT, GradeResponse)
        self.summarize_agent = self._agent(settings.model, sampling, SUMMARIZE_SYSTEM_PROMPT, SummarizeResponse)
        self.reflection_agent = self._agent(settings.reflection_model or settings.model, sampling,
                                            REFLECTION_SYSTEM_PROMPT, ReflectionResponse)
        self.adaptation_agent = self._agent(settings.adaptation_model or settings.model, sampling,
                                            ADAPTATION_SYSTEM_PROMPT, AdaptationResponse)
        self.review_agent = self._agent(settings.model, sampling, REVIEW_SUMMARY_SYSTEM_PROMPT,
                                        ReviewSummaryResponse)

    def _agent(self, model: str, sampling: Dict[str, Any], system_prompt: str, output_type: Type[BaseModel]):
        return create_agent(
            configs=self.configs,
            model=model,
            settings_dict=sampling,
            system_prompt=system_prompt,
            output_type=output_type,
        )

    async def _run(self, agent, prompt: str, description: str) -> Any:
        async def attempt():
            result = await agent.run(prompt)
            return result.output

        return await self.retry_policy.call(attempt, description=description)

    async def grade_n(self, prompt: str, count: int, reference: str = "") -> List[Grade]:
        """Request count independent grades for the same prompt, one call at a time."""
        responses = []
        for _ in range(count):
            responses.append(await self._run(self.grade_agent, prompt, f"grading {reference}"))
        return [Grade(grade=r.grade, comment=r.comment) for r in responses]

    async def correct(self, prompt: str, reference: str = "") -> ReflectionResponse:
        return await self._run(self.reflection_agent, prompt, f"reflecting on {reference}")

    async def summarize_corrections(self, prompt: str, reference: str = "") -> SummarizeResponse:
        return await self._run(self.summarize_agent, prompt, f"summarizing corrections for {reference}")

    async def adapt(self, prompt: str, reference: str = "") -> AdaptationResponse:
        return await self._run(self.adaptation_agent, prompt, f"adapting {reference}")

    async def summarize_review(self, prompt: str, reference: str = "") -> str:
        response = await self._run(self.review_agent, prompt, f"summarizing review for {reference}")
        return response.updated_report
