import asyncio
from typing import Any, Dict, List, Optional

from dualmerge.availability import AvailabilityTracker
from dualmerge.config import AppSettings, ProviderConfig
from dualmerge.orchestrator import Orchestrator
from dualmerge.schemas import QuerySettings
from dualmerge.stage_log import StageLog, StageTracker


class FakeProviderClient:
    """Stands in for a provider client; records every call it receives."""

    def __init__(
        self,
        provider_id: str,
        answer: Optional[str] = "fake answer",
        error: Optional[Exception] = None,
        delay_seconds: float = 0.0,
        merge_answer: Optional[str] = "merged by fake",
        merge_error: Optional[Exception] = None,
        merge_delay_seconds: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self.label = provider_id
        self.answer = answer
        self.error = error
        self.delay_seconds = delay_seconds
        self.merge_answer = merge_answer
        self.merge_error = merge_error
        self.merge_delay_seconds = merge_delay_seconds
        self.calls: List[Dict[str, Any]] = []
        self.merge_calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def query_count(self) -> int:
        return len(self.calls)

    async def query(self, text: str, settings: QuerySettings) -> str:
        self.calls.append(
            {"text": text, "temperature": settings.temperature, "system_prompt": settings.system_prompt}
        )
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return self.answer or ""

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
    ) -> str:
        self.merge_calls.append({"prompt": prompt, "temperature": temperature})
        if self.merge_delay_seconds:
            await asyncio.sleep(self.merge_delay_seconds)
        if self.merge_error is not None:
            raise self.merge_error
        return self.merge_answer or ""

    async def close(self) -> None:
        self.closed = True


def make_settings(**overrides) -> AppSettings:
    settings = AppSettings(
        provider_a=ProviderConfig(
            label="Provider A",
            base_url="http://provider-a.test/v1beta",
            model_id="model-a",
            api_key="key-a",
        ),
        provider_b=ProviderConfig(
            label="Provider B",
            base_url="http://provider-b.test",
            model_id="model-b",
            api_key="key-b",
        ),
        provider_timeout_ms=200,
        merge_timeout_ms=200,
        max_output_tokens=1000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def make_orchestrator(
    fake_a: FakeProviderClient = None,
    fake_b: FakeProviderClient = None,
    availability: AvailabilityTracker = None,
    **settings_overrides,
):
    settings = make_settings(**settings_overrides)
    fake_a = fake_a or FakeProviderClient("a", answer="answer from A")
    fake_b = fake_b or FakeProviderClient("b", answer="answer from B")
    availability = availability or AvailabilityTracker({"a": True, "b": True})
    tracker = StageTracker()
    orchestrator = Orchestrator(fake_a, fake_b, availability, settings, StageLog(tracker))
    return orchestrator, fake_a, fake_b, availability, tracker
