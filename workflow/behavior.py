"""
Behavior configuration — the static payload a compiled graph carries
(prompts, question templates, review policy, acknowledgements ...).

The runtime activates a graph's config in a context variable for the
duration of a turn so handlers can read it without a global; concurrent
turns on different graphs each see their own.
"""
from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from workflow.definition import (
    DeliveryConfig, FlowMeta, GraphConfig, MessagePolicyEntry, ModelConfig,
    ProgressRules, QuestionTemplate, ReadoutConfig, ReadoutVoice, RoutingRule,
)
from utils.text import interpolate

DEFAULT_CLARIFICATION_ACK = "Thank you for the clarification."


@dataclass(frozen=True)
class BehaviorConfig:
    steps: list[str] = field(default_factory=list)
    step_labels: dict[str, str] = field(default_factory=dict)
    models: dict[str, ModelConfig] = field(default_factory=dict)
    model_aliases: dict[str, str] = field(default_factory=dict)
    message_policy: dict[str, MessagePolicyEntry] = field(default_factory=dict)
    ai_prompts: dict[str, str] = field(default_factory=dict)
    strings: dict[str, str] = field(default_factory=dict)
    question_templates: list[QuestionTemplate] = field(default_factory=list)
    clarifier_retry_text: dict[str, str] = field(default_factory=dict)
    clarification_acknowledgement: list[str] = field(default_factory=list)
    readout_voice: ReadoutVoice = field(default_factory=ReadoutVoice)
    readout: ReadoutConfig = field(default_factory=ReadoutConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    meta: FlowMeta = field(default_factory=FlowMeta)
    overlay_prefixes: dict[str, str] = field(default_factory=dict)
    example_templates: dict[str, list[str]] = field(default_factory=dict)
    progress_rules: ProgressRules = field(default_factory=ProgressRules)
    options: dict[str, list[str]] = field(default_factory=dict)
    routing_rules: dict[str, list[RoutingRule]] = field(default_factory=dict)
    example_generator: Optional[Callable[..., Any]] = None
    overlay_prefix: Optional[Callable[..., Any]] = None
    source: str = "default"          # "inline" | "provider" | "default"

    @classmethod
    def from_graph_config(cls, config: GraphConfig, **extra) -> "BehaviorConfig":
        ack = config.clarification_acknowledgement
        phrases = [ack] if isinstance(ack, str) else list(ack)
        return cls(
            steps=[s.id for s in config.steps],
            step_labels={s.id: s.label for s in config.steps},
            models=dict(config.models),
            message_policy=dict(config.message_policy),
            ai_prompts=dict(config.ai_prompts),
            strings=dict(config.strings),
            question_templates=list(config.question_templates),
            clarifier_retry_text=dict(config.clarifier_retry_text),
            clarification_acknowledgement=[p.strip() for p in phrases if p and p.strip()],
            readout_voice=config.readout_voice,
            readout=config.readout,
            delivery=config.delivery,
            meta=config.meta,
            overlay_prefixes=dict(config.overlay_prefixes),
            example_templates=dict(config.example_templates),
            progress_rules=config.progress_rules,
            options=dict(config.options),
            routing_rules=dict(config.routing_rules),
            **extra,
        )

    # ── Lookups ───────────────────────────────────────

    def string(self, key: str, fallback: str = "") -> str:
        value = self.strings.get(key)
        return value if value else fallback

    def question(self, key: str) -> Optional[str]:
        for template in self.question_templates:
            if template.key == key:
                return template.question
        return None

    @property
    def first_question_key(self) -> Optional[str]:
        return self.question_templates[0].key if self.question_templates else None

    def policy_for(self, message_type: Optional[str]) -> MessagePolicyEntry:
        if message_type and message_type in self.message_policy:
            return self.message_policy[message_type]
        return self.message_policy.get("default") or MessagePolicyEntry()

    def model_for(self, purpose: str) -> Optional[ModelConfig]:
        """Model settings by purpose, following modelAliases when present."""
        name = self.model_aliases.get(purpose, purpose)
        return self.models.get(name) or self.models.get("default")

    def acknowledgement(self, counter: int = 0) -> str:
        """Pick a clarification acknowledgement, rotating on counter."""
        phrases = self.clarification_acknowledgement or [DEFAULT_CLARIFICATION_ACK]
        return phrases[abs(counter) % len(phrases)]

    def examples_for(self, key: str, **values: Any) -> list[str]:
        """Inline example templates win over a registered generator for the keys they list."""
        if key in self.example_templates:
            return [interpolate(t, values) for t in self.example_templates[key]]
        if self.example_generator is not None:
            return list(self.example_generator(key, **values) or [])
        return []

    def prefix_for(self, overlay: Optional[str]) -> str:
        if not overlay:
            return ""
        if self.overlay_prefixes:
            return self.overlay_prefixes.get(overlay, self.overlay_prefixes.get("default", ""))
        if self.overlay_prefix is not None:
            return self.overlay_prefix(overlay) or ""
        return ""

    def delivery_targets(self, tenant_id: Optional[str] = None) -> list[str]:
        """Readout output targets, with per-tenant overrides applied."""
        delivery = self.delivery
        targets = (delivery.overrides_by_tenant.get(tenant_id or "")
                   or delivery.output_targets or delivery.default_output_targets)
        return list(targets) if delivery.allow_multi_target else list(targets[:1])


# ──────────────────────────────────────────────────────────────
#  Active config for the running turn
# ──────────────────────────────────────────────────────────────

_EMPTY = BehaviorConfig()
_active: contextvars.ContextVar[Optional[BehaviorConfig]] = contextvars.ContextVar(
    "active_behavior_config", default=None,
)


@contextmanager
def activate(config: BehaviorConfig) -> Iterator[BehaviorConfig]:
    token = _active.set(config)
    try:
        yield config
    finally:
        _active.reset(token)


def current_behavior() -> BehaviorConfig:
    """Config of the graph whose turn is running, or an empty default."""
    return _active.get() or _EMPTY


def config_string(key: str, fallback: str = "") -> str:
    return current_behavior().string(key, fallback)


def question_text(key: str, **values: Any) -> str:
    """Configured question template for key, with {{placeholders}} filled."""
    template = current_behavior().question(key)
    if template is None:
        return ""
    return interpolate(template, values)


def acknowledgement_phrase(counter: int = 0) -> str:
    return current_behavior().acknowledgement(counter)
