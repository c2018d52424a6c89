"""
Configuration loader for the DialogueGraph runtime.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "openai"                 # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.4
    max_tokens: int = 1024
    max_retries: int = 2                     # extra attempts after the first call
    api_key: str = ""
    timeout_seconds: float = 30.0
    embedding_model: str = "text-embedding-3-small"


@dataclass
class RetrievalConfig:
    backend: str = "memory"                  # "rest" | "memory"
    base_url: str = ""                       # e.g. https://<project>.supabase.co
    api_key: str = ""
    rpc_name: str = "match_documents"
    top_k: int = 6
    timeout_seconds: float = 15.0


@dataclass
class ReviewConfig:
    enabled: bool = True                     # False forces passthrough review
    max_length: int = 1200


@dataclass
class WorkflowConfig:
    definition_path: str = ""                # empty = bundled discovery workflow
    tenant_id: str = "default"


@dataclass
class Settings:
    app_name: str = "DialogueGraph"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _unresolved(value: str) -> str:
    """An unset ${VAR} reference counts as empty."""
    return "" if re.fullmatch(r'\$\{\w+\}', value or "") else value


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DIALOGUE_GRAPH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                provider=llm.get("provider", "openai"),
                model=llm.get("model", "gpt-4o-mini"),
                temperature=llm.get("temperature", 0.4),
                max_tokens=llm.get("max_tokens", 1024),
                max_retries=llm.get("max_retries", 2),
                api_key=_unresolved(llm.get("api_key", "")),
                timeout_seconds=llm.get("timeout_seconds", 30.0),
                embedding_model=llm.get("embedding_model", "text-embedding-3-small"),
            )

        if "retrieval" in raw:
            r = raw["retrieval"]
            settings.retrieval = RetrievalConfig(
                backend=r.get("backend", "memory"),
                base_url=_unresolved(r.get("base_url", "")),
                api_key=_unresolved(r.get("api_key", "")),
                rpc_name=r.get("rpc_name", "match_documents"),
                top_k=r.get("top_k", 6),
                timeout_seconds=r.get("timeout_seconds", 15.0),
            )

        if "review" in raw:
            rv = raw["review"]
            settings.review = ReviewConfig(
                enabled=rv.get("enabled", True),
                max_length=rv.get("max_length", 1200),
            )

        if "workflow" in raw:
            wf = raw["workflow"]
            settings.workflow = WorkflowConfig(
                definition_path=wf.get("definition_path", ""),
                tenant_id=wf.get("tenant_id", "default"),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    """Forget cached settings (tests swap config files between cases)."""
    global _settings
    _settings = None
