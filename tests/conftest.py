"""Shared test fixtures for the workflow compiler and turn runtime."""
import pytest
from typing import Any

from flows.discovery import load_reference_graph
from models.state import ConversationState, create_initial_state
from runtime.patches import push_human
from runtime.reducers import apply_patch
from services.llm import TextGenerationClient, reset_clients, set_text_generation_client
from services.retrieval import InMemoryRetrievalService, set_retrieval_service
from services.review import PassthroughReviewService, TextReviewService, set_review_service
from workflow.errors import CollaboratorFailure
from workflow.registry import RegistryContext


class FakeTextClient(TextGenerationClient):
    """Answers by run_name; an Exception value is raised instead of returned."""

    def __init__(self, responses: dict[str, Any] = None, default: str = ""):
        self.responses = responses or {}
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, system_prompt, user_prompt, *, model=None, temperature=None,
                     max_retries=None, run_name=""):
        self.calls.append({"system": system_prompt, "user": user_prompt,
                           "model": model, "max_retries": max_retries, "run_name": run_name})
        value = self.responses.get(run_name, self.default)
        if isinstance(value, Exception):
            raise value
        return value


class RecordingReviewer(TextReviewService):

    def __init__(self, transform=None, fail: bool = False):
        self.transform = transform
        self.fail = fail
        self.reviewed: list[str] = []

    async def review(self, text, policy):
        self.reviewed.append(text)
        if self.fail:
            raise CollaboratorFailure("text_review", "review unavailable")
        return self.transform(text) if self.transform else text


@pytest.fixture(autouse=True)
def isolated_collaborators():
    """No real model, an empty in-memory vector store and passthrough review."""
    set_text_generation_client(None)
    set_retrieval_service(InMemoryRetrievalService())
    set_review_service(PassthroughReviewService())
    yield
    reset_clients()
    set_retrieval_service(None)
    set_review_service(None)


@pytest.fixture
def registry() -> RegistryContext:
    return RegistryContext()


@pytest.fixture
def fake_llm() -> FakeTextClient:
    client = FakeTextClient()
    set_text_generation_client(client)
    return client


@pytest.fixture
def reviewer() -> RecordingReviewer:
    return RecordingReviewer()


@pytest.fixture
def state() -> ConversationState:
    return create_initial_state("session-1", tenant_id="acme")


@pytest.fixture
def reference_graph(registry):
    return load_reference_graph(registry)


def with_answer(state: ConversationState, text: str) -> ConversationState:
    return apply_patch(state, push_human(state, text))


def noop_handler(state):
    return {}


@pytest.fixture
def minimal_document() -> dict[str, Any]:
    """Two-node graph: greet, then end."""
    return {
        "graph": {"graphId": "mini", "version": "1", "entryPoint": "greet"},
        "stateContractRef": "conversation.v1",
        "nodes": [
            {"id": "greet", "kind": "question", "handlerRef": "mini.greet"},
            {"id": "done", "kind": "terminal", "handlerRef": "mini.done"},
        ],
        "transitions": {
            "static": [
                {"from": "greet", "to": "done"},
                {"from": "done", "terminal": True},
            ],
            "conditional": [],
        },
    }
