from typing import Callable, Optional, Tuple

from .availability import AvailabilityTracker
from .errors import MergeFailure
from .providers import ProviderClient
from .schemas import ProviderResult, QuerySettings, SourceKind
from .stage_log import MERGE_RESPONSES, StageLog, elapsed_since
from .timeouts import with_timeout


ERROR_MARKER = "Error querying"
MIN_MERGE_TEMPERATURE = 0.3
MERGE_TEMPERATURE_DROP = 0.2

SYNTHESIS_PROMPT = """I have asked the following question to two different AI models:

QUESTION: "{query}"

RESPONSE FROM MODEL 1 ({label_a}):
{text_a}

RESPONSE FROM MODEL 2 ({label_b}):
{text_b}

Please analyze both responses and create a comprehensive merged answer that:
1. Combines the unique insights from both models
2. Resolves any contradictions between the responses
3. Organizes the information in a clear, logical structure
4. Provides a balanced perspective that leverages the strengths of each model
5. Format your response in Markdown for readability

Your merged response should be more valuable than either individual response alone.
"""


def merge_temperature(temperature: float) -> float:
    return round(max(MIN_MERGE_TEMPERATURE, temperature - MERGE_TEMPERATURE_DROP), 2)


def has_error_marker(text: Optional[str]) -> bool:
    return bool(text) and ERROR_MARKER in text


def build_synthesis_prompt(query: str, text_a: str, text_b: str, label_a: str, label_b: str) -> str:
    return SYNTHESIS_PROMPT.format(
        query=query,
        text_a=text_a,
        text_b=text_b,
        label_a=label_a.upper(),
        label_b=label_b.upper(),
    )


def fallback_concatenation(query: str, text_a: str, text_b: str, label_a: str, label_b: str) -> str:
    return (
        f'# Combined AI Response to: "{query}"\n\n'
        f"## {label_a} Response\n{text_a}\n\n"
        f"## {label_b} Response\n{text_b}\n\n"
        "## Summary\n"
        "Both models have provided their perspectives on your question. "
        "Consider the strengths of each response to form a more comprehensive understanding.\n"
    )


def sole_source_answer(query: str, text: str, label: str) -> str:
    return f'# Response to: "{query}"\n\n{text}\n\n*Note: This response is from {label} only.*\n'


def all_failed_answer(query: str, reason_a: str, reason_b: str, label_a: str, label_b: str) -> str:
    return (
        f'# Unable to answer: "{query}"\n\n'
        "Sorry, neither AI provider was able to answer this question.\n\n"
        f"- **{label_a}**: {reason_a}\n"
        f"- **{label_b}**: {reason_b}\n\n"
        "Please try again later.\n"
    )


class MergeStrategySelector:
    def __init__(
        self,
        synthesizer: ProviderClient,
        availability: AvailabilityTracker,
        *,
        label_a: str = "Provider A",
        label_b: str = "Provider B",
        merge_timeout_ms: int = 9000,
        stage_log: Optional[StageLog] = None,
        on_synthesis_failure: Optional[Callable[[MergeFailure], None]] = None,
    ):
        self.synthesizer = synthesizer
        self.on_synthesis_failure = on_synthesis_failure
        self.availability = availability
        self.label_a = label_a
        self.label_b = label_b
        self.merge_timeout_ms = merge_timeout_ms
        self.stage_log = stage_log or StageLog()

    async def select(
        self,
        query: str,
        settings: QuerySettings,
        result_a: ProviderResult,
        result_b: ProviderResult,
    ) -> Tuple[str, SourceKind]:
        if result_a.ok and result_b.ok:
            return await self._merge_both(query, settings, result_a.text or "", result_b.text or ""), "merged"
        if result_a.ok:
            return sole_source_answer(query, result_a.text or "", self.label_a), "singleProviderA"
        if result_b.ok:
            return sole_source_answer(query, result_b.text or "", self.label_b), "singleProviderB"
        text = all_failed_answer(
            query,
            result_a.failure_reason,
            result_b.failure_reason,
            self.label_a,
            self.label_b,
        )
        return text, "allFailed"

    def should_synthesize(self, text_a: str, text_b: str) -> bool:
        if has_error_marker(text_a) or has_error_marker(text_b):
            return False
        return self.availability.is_available(self.synthesizer.provider_id)

    async def _merge_both(self, query: str, settings: QuerySettings, text_a: str, text_b: str) -> str:
        if not self.should_synthesize(text_a, text_b):
            return fallback_concatenation(query, text_a, text_b, self.label_a, self.label_b)
        try:
            return await self.synthesize(query, settings, text_a, text_b)
        except MergeFailure as failure:
            if self.on_synthesis_failure is not None:
                self.on_synthesis_failure(failure)
            return fallback_concatenation(query, text_a, text_b, self.label_a, self.label_b)

    async def synthesize(self, query: str, settings: QuerySettings, text_a: str, text_b: str) -> str:
        prompt = build_synthesis_prompt(query, text_a, text_b, self.label_a, self.label_b)
        start = self.stage_log.start(MERGE_RESPONSES)
        try:
            merged = await with_timeout(
                self.synthesizer.complete(prompt, temperature=merge_temperature(settings.temperature)),
                self.merge_timeout_ms,
            )
        except Exception as exc:
            self.stage_log.error(MERGE_RESPONSES, exc, elapsed_since(start))
            raise MergeFailure(str(exc), exc) from exc
        self.stage_log.complete(MERGE_RESPONSES, elapsed_since(start))
        return merged

