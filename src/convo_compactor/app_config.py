from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    temperature: float
    map_max_tokens: int
    reduce_max_tokens: int
    token_budget: int
    budget_ladder: list[int] | None
    max_tokens_per_chunk: int
    max_turn_chars: int
    anchor_head: int
    anchor_tail: int
    store_path: str
    transcript_root: str | None
    history_max_sessions_per_key: int
    history_retention_days: int
    log_level: str
    log_consumers: list | None


def load_json_config(path: str | Path | None = None) -> dict:
    """Read config.json (from the working directory by default); missing means defaults."""
    config_path = Path(path or Path.cwd() / "config.json")
    if not config_path.is_file():
        return {}
    return json.loads(config_path.read_text(encoding="utf-8"))


def _to_int_list(value: object) -> list[int] | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    if not isinstance(value, list):
        raise ValueError(f"BudgetLadder must be a list of integers, got {value!r}")
    return [int(part) for part in value]


def _positive(name: str, value: int) -> int:
    if value < 1:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def parse_app_config(config: dict) -> AppConfig:
    transcript_root = str(config.get("TranscriptRoot", "")).strip() or None
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        temperature=float(config.get("Temperature", 0.2)),
        map_max_tokens=_positive("MapMaxTokens", int(config.get("MapMaxTokens", 4096))),
        reduce_max_tokens=_positive("ReduceMaxTokens", int(config.get("ReduceMaxTokens", 8192))),
        token_budget=_positive("TokenBudget", int(config.get("TokenBudget", 8000))),
        budget_ladder=_to_int_list(config.get("BudgetLadder")),
        max_tokens_per_chunk=_positive("MaxTokensPerChunk", int(config.get("MaxTokensPerChunk", 4000))),
        max_turn_chars=_positive("MaxTurnChars", int(config.get("MaxTurnChars", 16_000))),
        anchor_head=max(0, int(config.get("AnchorHead", 3))),
        anchor_tail=max(0, int(config.get("AnchorTail", 5))),
        store_path=str(config.get("StorePath", ".convo_compactor/store.db")),
        transcript_root=transcript_root,
        history_max_sessions_per_key=int(config.get("HistoryMaxSessionsPerKey", 20)),
        history_retention_days=int(config.get("HistoryRetentionDays", 30)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


_API_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    """Look up the API key for the provider; unknown names fall back to Anthropic."""
    env_var = _API_KEY_VARS.get(provider_name, _API_KEY_VARS["anthropic"])
    return RuntimeEnv(provider_api_key=os.environ.get(env_var, ""), provider_env_var=env_var)
