import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


logger = logging.getLogger("uvicorn.error").getChild("stages")

API_REQUEST = "API_REQUEST"
PROVIDER_A_QUERY = "PROVIDER_A_QUERY"
PROVIDER_B_QUERY = "PROVIDER_B_QUERY"
MERGE_RESPONSES = "MERGE_RESPONSES"

STAGE_NAMES: Dict[str, str] = {
    API_REQUEST: "API Request Handler",
    PROVIDER_A_QUERY: "Provider A Query",
    PROVIDER_B_QUERY: "Provider B Query",
    MERGE_RESPONSES: "Response Merger",
}


def stage_name(stage: str) -> str:
    return STAGE_NAMES.get(stage, stage)


@dataclass
class StageStats:
    runs: int = 0
    completed: int = 0
    errors: int = 0
    total_ms: int = 0
    last_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        avg = round(self.total_ms / self.completed, 1) if self.completed else None
        return {
            "runs": self.runs,
            "completed": self.completed,
            "errors": self.errors,
            "avg_ms": avg,
            "last_ms": self.last_ms,
        }


class StageTracker:
    """Running per-stage counters; a log consumer can read ``summary()`` instead of parsing lines."""

    def __init__(self) -> None:
        self.stages: Dict[str, StageStats] = {}

    def _get(self, stage: str) -> StageStats:
        return self.stages.setdefault(stage, StageStats())

    def started(self, stage: str) -> None:
        self._get(stage).runs += 1

    def completed(self, stage: str, elapsed_ms: int) -> None:
        stats = self._get(stage)
        stats.completed += 1
        stats.total_ms += elapsed_ms
        stats.last_ms = elapsed_ms

    def failed(self, stage: str, elapsed_ms: Optional[int] = None) -> None:
        stats = self._get(stage)
        stats.errors += 1
        if elapsed_ms is not None:
            stats.last_ms = elapsed_ms

    def summary(self) -> Dict[str, Dict[str, Any]]:
        return {stage_name(stage): stats.as_dict() for stage, stats in sorted(self.stages.items())}


def elapsed_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class StageLog:
    def __init__(self, tracker: Optional[StageTracker] = None):
        self.tracker = tracker or StageTracker()

    def _emit(self, level: int, stage: str, event: str, message: str, elapsed_ms: Optional[int] = None) -> None:
        extra = {"stage": stage, "event": event, "elapsed_ms": elapsed_ms}
        logger.log(level, "[%s] %s", stage_name(stage), message, extra=extra)

    def start(self, stage: str) -> float:
        self.tracker.started(stage)
        self._emit(logging.INFO, stage, "start", f"Starting {stage_name(stage)}")
        return time.monotonic()

    def complete(self, stage: str, elapsed_ms: int) -> None:
        self.tracker.completed(stage, elapsed_ms)
        self._emit(
            logging.INFO,
            stage,
            "complete",
            f"Completed {stage_name(stage)} (completed in {elapsed_ms}ms)",
            elapsed_ms,
        )

    def error(self, stage: str, error: Any, elapsed_ms: Optional[int] = None) -> None:
        self.tracker.failed(stage, elapsed_ms)
        self._emit(
            logging.ERROR,
            stage,
            "error",
            f"Error in {stage_name(stage)}: {error}",
            elapsed_ms,
        )

