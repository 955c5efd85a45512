import logging
from typing import Any, Dict, Optional


logger = logging.getLogger("uvicorn.error")


class AvailabilityTracker:
    """Per-provider reachability flags for the lifetime of one app instance.

    Only region/availability failures flip a flag, and nothing flips it back
    except ``reset`` or a restart. Writes are idempotent, so concurrent
    requests marking the same provider do not need a lock.
    """

    def __init__(self, initial: Optional[Dict[str, bool]] = None):
        self._initial: Dict[str, bool] = dict(initial or {})
        self._available: Dict[str, bool] = dict(self._initial)
        self._reasons: Dict[str, str] = {}

    def is_available(self, provider_id: str) -> bool:
        return self._available.get(provider_id, True)

    def mark_unavailable(self, provider_id: str, reason: str = "") -> None:
        if self._available.get(provider_id) is False:
            return
        self._available[provider_id] = False
        self._reasons[provider_id] = reason
        logger.warning("Provider %s marked unavailable: %s", provider_id, reason or "region error")

    def reset(self, provider_id: Optional[str] = None) -> None:
        if provider_id is None:
            self._available = dict(self._initial)
            self._reasons.clear()
            return
        self._available[provider_id] = self._initial.get(provider_id, True)
        self._reasons.pop(provider_id, None)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            pid: {"available": flag, "reason": self._reasons.get(pid)}
            for pid, flag in sorted(self._available.items())
        }
