from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import DEFAULT_SYSTEM_PROMPT
from .errors import OperationTimeout, ProviderError


SourceKind = Literal["merged", "singleProviderA", "singleProviderB", "allFailed"]

PROVIDER_A = "a"
PROVIDER_B = "b"

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 1.0


class QuerySettings(BaseModel):
    temperature: float = 0.7
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="systemPrompt")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data):
        # Null or blank values count as "not supplied" so configured defaults still apply.
        if isinstance(data, dict):
            return {
                key: value
                for key, value in data.items()
                if value is not None and not (isinstance(value, str) and not value.strip())
            }
        return data

    @field_validator("temperature", mode="before")
    @classmethod
    def _clamp_temperature(cls, value):
        value = float(value)
        return min(TEMPERATURE_MAX, max(TEMPERATURE_MIN, value))

    @field_validator("system_prompt", mode="before")
    @classmethod
    def _default_prompt(cls, value):
        if value is None or not str(value).strip():
            return DEFAULT_SYSTEM_PROMPT
        return str(value)


class MergeRequest(BaseModel):
    # Left optional so a missing query reaches the orchestrator and maps to 400, not 422.
    query: Optional[str] = None
    settings: Optional[QuerySettings] = None

    model_config = {"extra": "ignore"}


class MergeResponse(BaseModel):
    query: str
    provider_a_response: str = Field(alias="providerAResponse")
    provider_b_response: str = Field(alias="providerBResponse")
    merged_response: str = Field(alias="mergedResponse")
    source_kind: SourceKind = Field(alias="sourceKind")
    timestamp: str

    model_config = ConfigDict(populate_by_name=True)


ProviderFailure = Union[ProviderError, OperationTimeout]


@dataclass(frozen=True)
class ProviderResult:
    provider_id: str
    text: Optional[str] = None
    error: Optional[ProviderFailure] = None
    elapsed_ms: int = 0
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped and self.text is not None

    @property
    def failure_reason(self) -> str:
        if self.error is not None:
            return str(self.error)
        if self.skipped:
            return self.text or "provider skipped"
        return ""


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MergedAnswer:
    query: str
    provider_a_response: str
    provider_b_response: str
    merged_text: str
    source_kind: SourceKind
    timestamp: str = field(default_factory=utc_timestamp)

    def to_response(self) -> MergeResponse:
        return MergeResponse(
            query=self.query,
            provider_a_response=self.provider_a_response,
            provider_b_response=self.provider_b_response,
            merged_response=self.merged_text,
            source_kind=self.source_kind,
            timestamp=self.timestamp,
        )
