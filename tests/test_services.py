"""Tests for settings loading and the collaborator services."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from tenacity import wait_none

from config.settings import (
    LLMConfig, RetrievalConfig, ReviewConfig, get_settings, load_settings, reset_settings,
)
from services.llm import (
    LLMTextGenerationClient, get_text_generation_client, invoke_with_fallback, reset_clients,
    set_text_generation_client,
)
from services.retrieval import (
    InMemoryRetrievalService, RestRetrievalService, RetrievedDocument, create_retrieval_service,
)
from services.review import LLMTextReviewService, PassthroughReviewService
from workflow.definition import MessagePolicyEntry
from workflow.errors import CollaboratorFailure

from conftest import FakeTextClient

SETTINGS_YAML = """
app_name: TestGraph
llm:
  provider: anthropic
  model: claude-test
  api_key: ${TEST_LLM_KEY}
retrieval:
  backend: rest
  base_url: ${TEST_VECTOR_URL}
  top_k: 3
review:
  enabled: false
workflow:
  definition_path: /tmp/graph.yaml
  tenant_id: acme
"""


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS_YAML)
    yield str(path)
    reset_settings()


class TestSettings:
    def test_env_substitution(self, settings_file, monkeypatch):
        monkeypatch.setenv("TEST_LLM_KEY", "sk-test")
        monkeypatch.setenv("TEST_VECTOR_URL", "https://vectors.example")
        settings = load_settings(settings_file)
        assert settings.app_name == "TestGraph"
        assert settings.llm.provider == "anthropic"
        assert settings.llm.api_key == "sk-test"
        assert settings.retrieval.base_url == "https://vectors.example"
        assert settings.retrieval.top_k == 3
        assert settings.review.enabled is False
        assert settings.workflow.tenant_id == "acme"
        assert get_settings() is settings

    def test_unset_variables_become_empty(self, settings_file, monkeypatch):
        monkeypatch.delenv("TEST_LLM_KEY", raising=False)
        monkeypatch.delenv("TEST_VECTOR_URL", raising=False)
        settings = load_settings(settings_file)
        assert settings.llm.api_key == ""
        assert settings.retrieval.base_url == ""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.llm.model == "gpt-4o-mini"
        assert settings.retrieval.backend == "memory"
        reset_settings()

    def test_no_api_key_means_no_client(self, settings_file, monkeypatch):
        monkeypatch.delenv("TEST_LLM_KEY", raising=False)
        load_settings(settings_file)
        reset_clients()
        assert get_text_generation_client() is None


@pytest.mark.asyncio
class TestInvokeWithFallback:
    async def test_returns_model_text(self):
        client = FakeTextClient({"greet": "Hello!"})
        assert await invoke_with_fallback(client, "s", "u", "fb", run_name="greet") == "Hello!"
        assert client.calls[0]["run_name"] == "greet"

    async def test_fallbacks(self):
        assert await invoke_with_fallback(None, "s", "u", "fb") == "fb"
        assert await invoke_with_fallback(FakeTextClient(default="   "), "s", "u", "fb") == "fb"
        failing = FakeTextClient(default=CollaboratorFailure("text_generation", "429"))
        assert await invoke_with_fallback(failing, "s", "u", "fb") == "fb"

    async def test_unexpected_error_falls_back(self):
        client = FakeTextClient(default=TimeoutError("read timed out"))
        assert await invoke_with_fallback(client, "s", "u", "fb", run_name="greet") == "fb"

    async def test_installed_client_is_shared(self):
        client = FakeTextClient()
        set_text_generation_client(client)
        assert get_text_generation_client() is client


@pytest.mark.asyncio
class TestLLMTextGenerationClient:
    @pytest.fixture
    def client(self):
        client = LLMTextGenerationClient(LLMConfig(api_key="k", max_retries=2), wait=wait_none())
        client._call = AsyncMock(return_value=" text ")
        return client

    async def test_passes_model_settings(self, client):
        assert await client.invoke("sys", "usr", model="m", temperature=0.1) == "text"
        client._call.assert_awaited_once_with("sys", "usr", "m", 0.1)

    async def test_retries_until_success(self, client):
        client._call.side_effect = [RuntimeError("503"), "ok"]
        assert await client.invoke("s", "u", max_retries=1) == "ok"
        assert client._call.await_count == 2

    async def test_zero_retries_fails_fast(self, client):
        client._call.side_effect = RuntimeError("503")
        with pytest.raises(CollaboratorFailure):
            await client.invoke("s", "u", max_retries=0)
        assert client._call.await_count == 1

    async def test_config_retries_by_default(self, client):
        client._call.side_effect = TimeoutError("read timed out")
        with pytest.raises(CollaboratorFailure):
            await client.invoke("s", "u")
        assert client._call.await_count == 3


@pytest.mark.asyncio
class TestInMemoryRetrieval:
    @pytest.fixture
    def service(self):
        service = InMemoryRetrievalService([
            {"id": 1, "content": "Invoice automation for finance teams",
             "metadata": {"doc_type": "use_case", "tenant_id": "acme"}},
        ])
        service.add("Fraud detection on payments", doc_type="use_case")
        service.add("Finance onboarding guide", doc_type="guide", tenant_id="other")
        return service

    async def test_ranks_by_term_overlap(self, service):
        results = await service.search("finance invoice", tenant_id="acme")
        assert [r.content for r in results] == ["Invoice automation for finance teams"]
        assert results[0].id == "1"
        assert results[0].similarity == 1.0

    async def test_filters(self, service):
        assert await service.search("finance", tenant_id="acme", doc_types=["guide"]) == []
        shared = await service.search("payments", tenant_id="acme", doc_types=["use_case"])
        assert [r.doc_type for r in shared] == ["use_case"]
        filtered = await service.search("", metadata_filter={"doc_type": "guide"})
        assert len(filtered) == 1

    async def test_top_k(self, service):
        assert len(await service.search("", top_k=2)) == 2


class TestCreateRetrievalService:
    def test_backend_selection(self):
        assert isinstance(create_retrieval_service(RetrievalConfig()), InMemoryRetrievalService)
        rest = create_retrieval_service(RetrievalConfig(backend="rest", base_url="https://x"))
        assert isinstance(rest, RestRetrievalService)
        no_url = create_retrieval_service(RetrievalConfig(backend="rest"))
        assert isinstance(no_url, InMemoryRetrievalService)


class FakeEmbedder:
    async def embed(self, text):
        return [0.1, 0.2]


def mock_http_client(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    client = AsyncMock()
    client.post = AsyncMock(return_value=response)
    client.is_closed = False
    return client


@pytest.mark.asyncio
class TestRestRetrieval:
    def service(self, client):
        config = RetrievalConfig(backend="rest", base_url="https://vectors.example",
                                 api_key="key", rpc_name="match_docs")
        service = RestRetrievalService(config, embedder=FakeEmbedder())
        service.client = client
        return service

    async def test_posts_rpc_payload(self):
        client = mock_http_client([
            {"id": 7, "content": "Fraud detection", "metadata": {"doc_type": "use_case"},
             "similarity": 0.9},
        ])
        service = self.service(client)
        results = await service.search("fraud", tenant_id="acme", doc_types=["use_case"], top_k=2)

        path = client.post.call_args.args[0]
        body = client.post.call_args.kwargs["json"]
        assert path == "/rest/v1/rpc/match_docs"
        assert body["tenant_id"] == "acme"
        assert body["match_count"] == 2
        assert body["query_embedding"] == [0.1, 0.2]
        assert results == [RetrievedDocument(id="7", content="Fraud detection",
                                             metadata={"doc_type": "use_case"}, similarity=0.9)]

    async def test_non_list_response_is_empty(self):
        service = self.service(mock_http_client({"rows": []}))
        assert await service.search("x") == []

    async def test_embedding_error_is_collaborator_failure(self):
        client = mock_http_client([])
        service = self.service(client)
        service._embedder = AsyncMock()
        service._embedder.embed.side_effect = RuntimeError("quota")
        with pytest.raises(CollaboratorFailure) as exc:
            await service.search("x")
        assert exc.value.collaborator == "retrieval"
        client.post.assert_not_called()

    async def test_missing_embedder_is_collaborator_failure(self, tmp_path):
        load_settings(str(tmp_path / "absent.yaml"))
        reset_clients()
        service = RestRetrievalService(RetrievalConfig(backend="rest", base_url="https://x"))
        try:
            with pytest.raises(CollaboratorFailure):
                await service.search("x")
        finally:
            reset_settings()


@pytest.mark.asyncio
class TestReview:
    async def test_passthrough_only_rewrites_first_person(self):
        service = PassthroughReviewService()
        assert await service.review("I can help", MessagePolicyEntry()) == "I can help"
        forbid = MessagePolicyEntry(forbid_first_person=True)
        assert await service.review("I can help with my list", forbid) == "We can help with our list"

    async def test_llm_review(self):
        client = FakeTextClient({"reviewResponse": "Polished text."})
        service = LLMTextReviewService(client, ReviewConfig())
        policy = MessagePolicyEntry(allow_review=True, forbid_first_person=True)
        assert await service.review("rough text", policy) == "Polished text."
        assert "first-person" in client.calls[0]["system"]

    async def test_llm_review_rejects_oversized_rewrite(self):
        client = FakeTextClient({"reviewResponse": "x" * 50})
        service = LLMTextReviewService(client, ReviewConfig(max_length=10))
        with pytest.raises(CollaboratorFailure):
            await service.review("short", MessagePolicyEntry(allow_review=True))

    async def test_blank_text_is_not_sent(self):
        client = FakeTextClient(default="ignored")
        service = LLMTextReviewService(client, ReviewConfig())
        assert await service.review("  ", MessagePolicyEntry()) == "  "
        assert client.calls == []
