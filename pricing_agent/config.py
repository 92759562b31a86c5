import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PRICING_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_CATALOG_URL = "https://prices.azure.com/api/retail/prices"
DEFAULT_CATALOG_API_VERSION = "2023-01-01-preview"


class AppSettings(BaseModel):
    # LLM runtime (Responses API)
    llm_endpoint: str = ""
    llm_api_key: Optional[str] = None
    llm_deployment: str = "gpt-5-codex"
    llm_timeout_s: float = 60.0
    reasoning_effort: str = "medium"
    reasoning_summary: str = "auto"
    max_output_tokens: int = 4000

    # Price catalog
    catalog_base_url: str = DEFAULT_CATALOG_URL
    catalog_api_version: str = DEFAULT_CATALOG_API_VERSION
    catalog_page_timeout_s: float = 30.0
    catalog_max_pages: int = 50

    # Agent loop
    max_tool_rounds: int = 6
    max_broaden_attempts: int = 3
    tool_output_max_records: int = 200
    reasoning_steps: int = 3

    # Stream
    turn_timeout_s: float = 120.0
    keepalive_interval_s: float = 15.0
    answer_chunk_chars: int = 400

    # Opaque prompt material
    instructions_path: Optional[str] = None
    reference_tables_path: Optional[str] = None
    reference_tables: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def llm_base_url(self) -> str:
        endpoint = (self.llm_endpoint or "").strip().rstrip("/")
        if not endpoint:
            return ""
        if endpoint.endswith("/v1"):
            return endpoint
        return f"{endpoint}/openai/v1"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("llm_api_key"):
            data["llm_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


_INT_KEYS = ("max_output_tokens", "catalog_max_pages", "max_tool_rounds", "max_broaden_attempts", "port")
_FLOAT_KEYS = ("llm_timeout_s", "catalog_page_timeout_s", "turn_timeout_s", "keepalive_interval_s")


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_endpoint": os.getenv("AZURE_OPENAI_ENDPOINT"),
        "llm_api_key": os.getenv("AZURE_OPENAI_API_KEY"),
        "llm_deployment": os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME"),
        "reasoning_effort": os.getenv("REASONING_EFFORT"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "catalog_base_url": os.getenv("PRICES_API_URL"),
        "catalog_api_version": os.getenv("PRICES_API_VERSION"),
        "catalog_page_timeout_s": os.getenv("CATALOG_PAGE_TIMEOUT_S"),
        "max_tool_rounds": os.getenv("MAX_TOOL_ROUNDS"),
        "max_broaden_attempts": os.getenv("MAX_BROADEN_ATTEMPTS"),
        "turn_timeout_s": os.getenv("TURN_TIMEOUT_S"),
        "keepalive_interval_s": os.getenv("KEEPALIVE_INTERVAL_S"),
        "instructions_path": os.getenv("INSTRUCTIONS_PATH"),
        "reference_tables_path": os.getenv("REFERENCE_TABLES_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_KEYS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_KEYS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("llm_api_key") and env_data.get("llm_api_key"):
        merged["llm_api_key"] = env_data["llm_api_key"]
    return AppSettings(**merged)


def load_instructions(settings: AppSettings, default: str) -> str:
    if settings.instructions_path:
        path = Path(settings.instructions_path)
        if path.exists():
            return path.read_text(encoding="utf-8").strip() or default
    return default


def load_reference_tables(settings: AppSettings) -> Dict[str, Dict[str, str]]:
    """Tables from settings, overlaid by the JSON file at reference_tables_path."""
    tables: Dict[str, Dict[str, str]] = {k: dict(v) for k, v in settings.reference_tables.items()}
    if settings.reference_tables_path:
        path = Path(settings.reference_tables_path)
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                for name, table in data.items():
                    if isinstance(table, dict):
                        tables[str(name)] = {str(k): str(v) for k, v in table.items()}
    return tables
