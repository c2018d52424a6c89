"""
Text Review Service — final polish on agent messages before they leave a turn.

The runtime calls review() only for message kinds whose policy allows it.
LLMTextReviewService asks the model for a rewrite; PassthroughReviewService
is used when no model is configured or review is disabled in settings. Both
apply the first-person rewrite when the policy forbids first person.
"""
from __future__ import annotations

import abc
import threading
from typing import Optional

import structlog

from config.settings import ReviewConfig, get_settings
from services.llm import TextGenerationClient, get_text_generation_client
from utils.text import remove_first_person
from workflow.behavior import current_behavior
from workflow.definition import MessagePolicyEntry
from workflow.errors import CollaboratorFailure

logger = structlog.get_logger()

DEFAULT_REVIEW_PROMPT = (
    "You review messages an assistant is about to send. Fix grammar and awkward "
    "phrasing, keep the meaning, numbering and any question intact, and return "
    "only the revised message."
)
FIRST_PERSON_RULE = (
    " Rewrite any first-person singular references (I, me, my) so the message "
    "speaks as the team or addresses the user directly."
)


class TextReviewService(abc.ABC):

    @abc.abstractmethod
    async def review(self, text: str, policy: MessagePolicyEntry) -> str:
        """Return the reviewed text; raise CollaboratorFailure on failure."""
        ...


class PassthroughReviewService(TextReviewService):

    async def review(self, text: str, policy: MessagePolicyEntry) -> str:
        return remove_first_person(text) if policy.forbid_first_person else text


class LLMTextReviewService(TextReviewService):

    def __init__(self, client: TextGenerationClient, config: ReviewConfig = None):
        self.client = client
        self.config = config or get_settings().review

    async def review(self, text: str, policy: MessagePolicyEntry) -> str:
        if not text.strip():
            return text

        system = current_behavior().ai_prompts.get("reviewResponse") or DEFAULT_REVIEW_PROMPT
        if policy.forbid_first_person:
            system += FIRST_PERSON_RULE

        revised = await self.client.invoke(system, text, run_name="reviewResponse")
        if not revised or len(revised) > self.config.max_length:
            raise CollaboratorFailure("text_review", "empty or oversized rewrite")
        if policy.forbid_first_person:
            revised = remove_first_person(revised)
        return revised


# ──────────────────────────────────────────────────────────────
#  Lazy singleton
# ──────────────────────────────────────────────────────────────

_lock = threading.Lock()
_service: Optional[TextReviewService] = None


def get_review_service() -> TextReviewService:
    global _service
    if _service is None:
        with _lock:
            if _service is None:
                settings = get_settings()
                client = get_text_generation_client() if settings.review.enabled else None
                _service = (LLMTextReviewService(client, settings.review)
                            if client is not None else PassthroughReviewService())
                logger.info("review_service_initialized", backend=type(_service).__name__)
    return _service


def set_review_service(service: Optional[TextReviewService]):
    global _service
    with _lock:
        _service = service
