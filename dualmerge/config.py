import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DUALMERGE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MASK = "********"

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class ProviderConfig(BaseModel):
    label: str
    base_url: str
    model_id: str
    api_key: Optional[str] = None
    available_by_default: bool = True

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    provider_a: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(
            label="Provider A",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            model_id="gemini-2.0-flash",
        )
    )
    provider_b: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(
            label="Provider B",
            base_url="https://api.deepseek.com",
            model_id="deepseek-chat",
        )
    )

    orchestration_mode: Literal["dual", "single_fallback"] = "dual"
    dispatch: Literal["concurrent", "sequential"] = "concurrent"
    primary_provider: Literal["a", "b"] = "b"
    synthesis_provider: Literal["a", "b"] = "a"

    default_temperature: float = 0.7
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    # A request can wait provider_timeout_ms + merge_timeout_ms in the worst case;
    # lower both when the host enforces a shorter request ceiling.
    provider_timeout_ms: int = 8000
    merge_timeout_ms: int = 9000
    max_output_tokens: int = 1000
    http_timeout_s: float = 30.0

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("provider_a", "provider_b"):
            if data[key].get("api_key"):
                data[key]["api_key"] = MASK
        return data

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = ("provider_timeout_ms", "merge_timeout_ms", "max_output_tokens", "port")
_FLOAT_FIELDS = ("default_temperature", "http_timeout_s")
_BOOL_VALUES = ("1", "true", "yes", "on")


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "orchestration_mode": os.getenv("ORCHESTRATION_MODE"),
        "dispatch": os.getenv("DISPATCH"),
        "primary_provider": os.getenv("PRIMARY_PROVIDER"),
        "synthesis_provider": os.getenv("SYNTHESIS_PROVIDER"),
        "default_temperature": os.getenv("DEFAULT_TEMPERATURE"),
        "default_system_prompt": os.getenv("DEFAULT_SYSTEM_PROMPT"),
        "provider_timeout_ms": os.getenv("PROVIDER_TIMEOUT_MS"),
        "merge_timeout_ms": os.getenv("MERGE_TIMEOUT_MS"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "http_timeout_s": os.getenv("HTTP_TIMEOUT_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])

    provider_env = {
        "provider_a": {
            "api_key": os.getenv("GEMINI_API_KEY"),
            "base_url": os.getenv("GEMINI_BASE_URL"),
            "model_id": os.getenv("GEMINI_MODEL"),
            "label": os.getenv("PROVIDER_A_LABEL"),
            "available_by_default": os.getenv("PROVIDER_A_AVAILABLE"),
        },
        "provider_b": {
            "api_key": os.getenv("DEEPSEEK_API_KEY"),
            "base_url": os.getenv("DEEPSEEK_BASE_URL"),
            "model_id": os.getenv("DEEPSEEK_MODEL"),
            "label": os.getenv("PROVIDER_B_LABEL"),
            "available_by_default": os.getenv("PROVIDER_B_AVAILABLE"),
        },
    }
    for key, values in provider_env.items():
        present = {k: v for k, v in values.items() if v not in (None, "")}
        if "available_by_default" in present:
            present["available_by_default"] = str(present["available_by_default"]).lower() in _BOOL_VALUES
        if present:
            cleaned[key] = present
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_provider(
    key: str,
    low: Dict[str, Any],
    high: Dict[str, Any],
) -> Dict[str, Any]:
    defaults = AppSettings().model_dump()[key]
    merged = dict(defaults)
    for layer in (low.get(key), high.get(key)):
        if isinstance(layer, dict):
            merged.update({k: v for k, v in layer.items() if v is not None})
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        low, high = file_data, env_data
    else:
        low, high = env_data, file_data
    merged = {**low, **high}
    for key in ("provider_a", "provider_b"):
        merged[key] = _merge_provider(key, low, high)
        # Secrets normally live only in the environment; never drop one just because config.json is silent.
        env_key = (env_data.get(key) or {}).get("api_key")
        if not merged[key].get("api_key") and env_key:
            merged[key]["api_key"] = env_key
    return AppSettings(**merged)
