import json
from typing import Any, Dict, List, Optional

import httpx

from .errors import (
    EMPTY_RESPONSE,
    RATE_LIMITED,
    REGION_UNAVAILABLE,
    TRANSPORT,
    UNKNOWN,
    ProviderError,
)
from .schemas import QuerySettings


REGION_ERROR_TOKENS = (
    "user location is not supported",
    "location is not supported",
    "not available in your region",
    "not available in your country",
    "unsupported_country_region_territory",
    "country, region, or territory not supported",
)
MAX_ERROR_DETAIL = 300


def _normalize_error_text(detail: str) -> str:
    text = detail or ""
    for _ in range(2):
        try:
            parsed = json.loads(text)
        except ValueError:
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, dict):
                    val = val.get("message") or json.dumps(val, ensure_ascii=True)
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


def is_region_error(detail: str) -> bool:
    text = _normalize_error_text(detail).lower()
    return any(token in text for token in REGION_ERROR_TOKENS)


class ProviderClient:
    """Shared transport and error classification for one text-generation backend.

    Subclasses build the provider payload and pull the first completion out of
    the response; everything network-shaped is turned into ``ProviderError``
    here so callers only ever see the tagged kinds.
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        model_id: str,
        api_key: Optional[str],
        max_output_tokens: int = 1000,
        timeout_s: float = 30.0,
        label: Optional[str] = None,
    ):
        self.provider_id = provider_id
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.label = label or provider_id
        # Concurrent provider calls share a pool instead of opening a connection per request.
        self.client = httpx.AsyncClient(
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    async def query(self, text: str, settings: QuerySettings) -> str:
        return await self.complete(
            text,
            system_prompt=settings.system_prompt,
            temperature=settings.temperature,
        )

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
    ) -> str:
        if not self.api_key:
            raise ProviderError(UNKNOWN, "missing API key", self.provider_id)
        url = self._url()
        payload = self._build_payload(prompt, system_prompt, temperature)
        data = await self._post(url, payload)
        text = self._extract_text(data)
        if not text or not text.strip():
            raise ProviderError(EMPTY_RESPONSE, "provider returned no content", self.provider_id)
        return text

    def _url(self) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _build_payload(self, prompt: str, system_prompt: Optional[str], temperature: float) -> Dict[str, Any]:
        raise NotImplementedError

    def _extract_text(self, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._classify_status(exc.response) from exc
        except httpx.RequestError as exc:
            detail = str(exc) or exc.__class__.__name__
            raise ProviderError(TRANSPORT, detail, self.provider_id) from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(UNKNOWN, "provider returned invalid JSON", self.provider_id) from exc
        if not isinstance(data, dict):
            raise ProviderError(UNKNOWN, "unexpected response shape", self.provider_id)
        return data

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    def _classify_status(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        raw = self._extract_error_detail(response)
        detail = _normalize_error_text(raw)[:MAX_ERROR_DETAIL] or f"HTTP {status}"
        if status == 429:
            kind = RATE_LIMITED
        elif status == 451 or (status in (400, 403) and is_region_error(raw)):
            kind = REGION_UNAVAILABLE
        elif status >= 500:
            kind = TRANSPORT
        else:
            kind = UNKNOWN
        return ProviderError(kind, f"HTTP {status}: {detail}", self.provider_id, status_code=status)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class GeminiClient(ProviderClient):
    """Google Generative Language ``generateContent`` endpoint."""

    def _url(self) -> str:
        model_path = self.model_id
        if not model_path.startswith("models/"):
            model_path = f"models/{model_path}"
        return f"{self.base_url}/{model_path}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key or ""}

    def _build_payload(self, prompt: str, system_prompt: Optional[str], temperature: float) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }
        if system_prompt:
            payload["system_instruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    def _extract_text(self, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            reason = feedback.get("blockReason")
            if reason:
                raise ProviderError(EMPTY_RESPONSE, f"prompt blocked: {reason}", self.provider_id)
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts: List[str] = [str(p.get("text")) for p in parts if isinstance(p, dict) and p.get("text")]
        return "".join(texts)


class ChatCompletionsClient(ProviderClient):
    """OpenAI-compatible ``/chat/completions`` endpoint (DeepSeek by default)."""

    def _url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def _build_payload(self, prompt: str, system_prompt: Optional[str], temperature: float) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self.model_id,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": self.max_output_tokens,
            "stream": False,
        }

    def _extract_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""
