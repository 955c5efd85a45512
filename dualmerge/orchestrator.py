import asyncio
import logging
from typing import Dict, List, Optional

from .availability import AvailabilityTracker
from .config import AppSettings
from .errors import REGION_UNAVAILABLE, UNKNOWN, InvalidRequest, MergeFailure, OperationTimeout, ProviderError
from .merge import MergeStrategySelector
from .providers import ProviderClient
from .schemas import PROVIDER_A, PROVIDER_B, MergedAnswer, ProviderResult, QuerySettings
from .stage_log import API_REQUEST, PROVIDER_A_QUERY, PROVIDER_B_QUERY, StageLog, elapsed_since
from .timeouts import with_timeout


logger = logging.getLogger("uvicorn.error")

PROVIDER_STAGES = {PROVIDER_A: PROVIDER_A_QUERY, PROVIDER_B: PROVIDER_B_QUERY}


def unavailable_placeholder(label: str) -> str:
    return f"{label} is not available in your region."


def not_queried_placeholder(label: str) -> str:
    return f"{label} was not queried because another provider already answered."


def other_provider(provider_id: str) -> str:
    return PROVIDER_B if provider_id == PROVIDER_A else PROVIDER_A


class Orchestrator:
    """Runs one question through both providers and the merge step.

    Per request: validate, call providers (gated by availability, each under
    its own deadline), record region failures, merge, assemble the answer.
    Everything after validation is recovered into text; only
    ``InvalidRequest`` escapes ``run``.
    """

    def __init__(
        self,
        provider_a: ProviderClient,
        provider_b: ProviderClient,
        availability: AvailabilityTracker,
        settings: AppSettings,
        stage_log: Optional[StageLog] = None,
    ):
        self.providers: Dict[str, ProviderClient] = {PROVIDER_A: provider_a, PROVIDER_B: provider_b}
        self.labels: Dict[str, str] = {
            PROVIDER_A: settings.provider_a.label,
            PROVIDER_B: settings.provider_b.label,
        }
        self.availability = availability
        self.settings = settings
        self.stage_log = stage_log or StageLog()
        self.selector = MergeStrategySelector(
            self.providers[settings.synthesis_provider],
            availability,
            label_a=self.labels[PROVIDER_A],
            label_b=self.labels[PROVIDER_B],
            merge_timeout_ms=settings.merge_timeout_ms,
            stage_log=self.stage_log,
            on_synthesis_failure=self.record_synthesis_failure,
        )

    def resolve_settings(self, raw: Optional[QuerySettings]) -> QuerySettings:
        defaults = {
            "temperature": self.settings.default_temperature,
            "system_prompt": self.settings.default_system_prompt,
        }
        if raw is None:
            return QuerySettings(**defaults)
        missing = {k: v for k, v in defaults.items() if k not in raw.model_fields_set}
        if not missing:
            return raw
        return QuerySettings(**{**raw.model_dump(), **missing})

    async def run(self, query: Optional[str], settings: Optional[QuerySettings] = None) -> MergedAnswer:
        start = self.stage_log.start(API_REQUEST)
        text = (query or "").strip()
        if not text:
            self.stage_log.error(API_REQUEST, "Query is required", elapsed_since(start))
            raise InvalidRequest("Query is required")
        query_settings = self.resolve_settings(settings)

        results = await self.call_providers(text, query_settings)
        self.record_availability(results.values())
        result_a, result_b = results[PROVIDER_A], results[PROVIDER_B]
        merged_text, source_kind = await self.selector.select(text, query_settings, result_a, result_b)

        answer = MergedAnswer(
            query=text,
            provider_a_response=self.raw_response(result_a),
            provider_b_response=self.raw_response(result_b),
            merged_text=merged_text,
            source_kind=source_kind,
        )
        self.stage_log.complete(API_REQUEST, elapsed_since(start))
        return answer

    async def call_providers(self, text: str, settings: QuerySettings) -> Dict[str, ProviderResult]:
        # Availability is read once, before dispatch; writes happen after every call settles.
        gate = {pid: self.availability.is_available(pid) for pid in self.providers}
        if self.settings.orchestration_mode == "single_fallback":
            return await self._call_with_fallback(text, settings, gate)
        if self.settings.dispatch == "sequential":
            results: Dict[str, ProviderResult] = {}
            for pid in (PROVIDER_A, PROVIDER_B):
                results[pid] = await self.call_provider(pid, text, settings, gate[pid])
            return results
        result_a, result_b = await asyncio.gather(
            self.call_provider(PROVIDER_A, text, settings, gate[PROVIDER_A]),
            self.call_provider(PROVIDER_B, text, settings, gate[PROVIDER_B]),
        )
        return {PROVIDER_A: result_a, PROVIDER_B: result_b}

    async def _call_with_fallback(
        self,
        text: str,
        settings: QuerySettings,
        gate: Dict[str, bool],
    ) -> Dict[str, ProviderResult]:
        primary = self.settings.primary_provider
        secondary = other_provider(primary)
        first = await self.call_provider(primary, text, settings, gate[primary])
        if first.ok:
            second = ProviderResult(secondary, text=not_queried_placeholder(self.labels[secondary]), skipped=True)
        else:
            logger.info("Primary provider %s failed (%s); trying %s", primary, first.failure_reason, secondary)
            second = await self.call_provider(secondary, text, settings, gate[secondary])
        return {primary: first, secondary: second}

    async def call_provider(
        self,
        provider_id: str,
        text: str,
        settings: QuerySettings,
        available: bool = True,
    ) -> ProviderResult:
        label = self.labels[provider_id]
        if not available:
            return ProviderResult(provider_id, text=unavailable_placeholder(label), skipped=True)
        stage = PROVIDER_STAGES[provider_id]
        client = self.providers[provider_id]
        start = self.stage_log.start(stage)
        try:
            answer = await with_timeout(client.query(text, settings), self.settings.provider_timeout_ms)
        except (ProviderError, OperationTimeout) as exc:
            elapsed = elapsed_since(start)
            self.stage_log.error(stage, exc, elapsed)
            return ProviderResult(provider_id, error=exc, elapsed_ms=elapsed)
        except Exception as exc:
            elapsed = elapsed_since(start)
            self.stage_log.error(stage, exc, elapsed)
            wrapped = ProviderError(UNKNOWN, str(exc) or exc.__class__.__name__, provider_id)
            return ProviderResult(provider_id, error=wrapped, elapsed_ms=elapsed)
        elapsed = elapsed_since(start)
        self.stage_log.complete(stage, elapsed)
        return ProviderResult(provider_id, text=answer, elapsed_ms=elapsed)

    def record_availability(self, results) -> List[str]:
        marked: List[str] = []
        for result in results:
            error = result.error
            if isinstance(error, ProviderError) and error.kind == REGION_UNAVAILABLE:
                self.availability.mark_unavailable(result.provider_id, error.message)
                marked.append(result.provider_id)
        return marked

    def record_synthesis_failure(self, failure: MergeFailure) -> None:
        # Called by the selector, after both provider calls have settled.
        error = failure.error
        if isinstance(error, ProviderError) and error.kind == REGION_UNAVAILABLE:
            self.availability.mark_unavailable(self.selector.synthesizer.provider_id, error.message)

    def raw_response(self, result: ProviderResult) -> str:
        if result.ok:
            return result.text or ""
        if result.skipped:
            return result.text or unavailable_placeholder(self.labels[result.provider_id])
        return f"Error querying {self.labels[result.provider_id]}: {result.failure_reason}"