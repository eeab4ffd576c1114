import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CREWDESK_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_UPLOAD_MIMES = [
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "text/plain",
    "text/markdown",
    "text/csv",
    "application/json",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
]


class GatewayEndpointConfig(BaseModel):
    base_url: str = "http://127.0.0.1:1234/v1"
    model_id: str = "gemini-2.5-flash"
    image_model_id: str = "imagen-4.0-generate-001"
    api_key: Optional[str] = None
    timeout_s: float = 60.0

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    gateway: GatewayEndpointConfig = Field(default_factory=GatewayEndpointConfig)
    max_output_tokens: Optional[int] = 8192
    temperature: float = 0.7
    database_path: str = "crewdesk.db"
    host: str = "0.0.0.0"
    port: int = 8000
    currency: str = "USD"
    upload_max_mb: int = 4
    allowed_upload_mimes: List[str] = Field(default_factory=lambda: list(DEFAULT_UPLOAD_MIMES))

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("gateway", {}).get("api_key"):
            data["gateway"]["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gateway_base_url": os.getenv("GATEWAY_BASE_URL"),
        "gateway_model": os.getenv("GATEWAY_MODEL"),
        "gateway_image_model": os.getenv("GATEWAY_IMAGE_MODEL"),
        "gateway_api_key": os.getenv("GATEWAY_API_KEY"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "currency": os.getenv("CURRENCY"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "upload_max_mb" in cleaned:
        cleaned["upload_max_mb"] = int(cleaned["upload_max_mb"])
    if "max_output_tokens" in cleaned:
        cleaned["max_output_tokens"] = int(cleaned["max_output_tokens"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _fold_gateway_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Move flat GATEWAY_* values into the nested gateway block."""
    folded = dict(data)
    gateway = dict(folded.get("gateway") or {})
    for flat_key, nested_key in (
        ("gateway_base_url", "base_url"),
        ("gateway_model", "model_id"),
        ("gateway_image_model", "image_model_id"),
        ("gateway_api_key", "api_key"),
    ):
        if flat_key in folded:
            gateway[nested_key] = folded.pop(flat_key)
    if gateway:
        folded["gateway"] = gateway
    return folded


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _fold_gateway_keys(_load_from_env())
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    file_data = _fold_gateway_keys(file_data)
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        first, second = file_data, env_data
    else:
        first, second = env_data, file_data
    merged = {**first, **second}
    merged["gateway"] = {**(first.get("gateway") or {}), **(second.get("gateway") or {})}
    if not merged["gateway"].get("api_key") and (env_data.get("gateway") or {}).get("api_key"):
        merged["gateway"]["api_key"] = env_data["gateway"]["api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
