"""
Config providers and dynamic config functions for the discovery workflow.

init_config is the legacy provider: graphs that reference it without an
inline `config` block get the config section of the bundled YAML.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

DEFINITION_PATH = Path(__file__).with_name("discovery.graph.yaml")

_EXAMPLES: dict[str, list[str]] = {
    "S1_USE_CASE_GROUP": ["1", "1,3"],
    "S2_USE_CASE_SELECT": ["2", "1 2"],
    "S3_DISCOVERY_QUESTION": [
        "Most requests are handled by email and take two days to resolve",
        "We track it in a spreadsheet that is updated weekly",
    ],
}

_OVERLAY_PREFIXES: dict[str, str] = {
    "executive": "In brief:",
    "technical": "For the technical picture:",
}


@lru_cache(maxsize=1)
def _document() -> dict[str, Any]:
    with open(DEFINITION_PATH, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def init_config() -> dict[str, Any]:
    return dict(_document().get("config") or {})


def example_generator(question_key: str, **values: Any) -> list[str]:
    return list(_EXAMPLES.get(question_key, []))


def overlay_prefix(overlay: str) -> str:
    return _OVERLAY_PREFIXES.get(overlay, "")
