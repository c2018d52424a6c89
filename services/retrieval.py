"""
Retrieval Service — similarity search over tenant documents.

Two implementations:
  RestRetrievalService     embeds the query and calls a vector-store RPC
                           (Postgres/pgvector "match_documents" style) over HTTP
  InMemoryRetrievalService ranks an in-process document list by term overlap;
                           used in development and tests

Failures surface as CollaboratorFailure; the primitives that call search()
turn them into their documented fallbacks.
"""
from __future__ import annotations

import abc
import re
import threading
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, field_validator
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import RetrievalConfig, get_settings
from services.llm import EmbeddingClient, get_embedding_client
from workflow.errors import CollaboratorFailure

logger = structlog.get_logger()


class RetrievedDocument(BaseModel):
    id: str = ""
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, v):
        return "" if v is None else str(v)

    @property
    def doc_type(self) -> str:
        return str(self.metadata.get("doc_type", ""))


class RetrievalService(abc.ABC):

    @abc.abstractmethod
    async def search(
        self,
        query_text: str,
        tenant_id: Optional[str] = None,
        doc_types: Optional[list[str]] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        top_k: int = 6,
    ) -> list[RetrievedDocument]:
        """Return up to top_k rows, best match first."""
        ...


class RestRetrievalService(RetrievalService):
    """Vector search through a REST RPC endpoint."""

    def __init__(self, config: RetrievalConfig = None, embedder: EmbeddingClient = None):
        self.config = config or get_settings().retrieval
        self._embedder = embedder
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "apikey": self.config.api_key,
                    "Authorization": f"Bearer {self.config.api_key}",
                },
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _rpc(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        client = await self._get_client()
        response = await client.post(f"/rest/v1/rpc/{self.config.rpc_name}", json=payload)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else []

    async def search(
        self,
        query_text: str,
        tenant_id: Optional[str] = None,
        doc_types: Optional[list[str]] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        top_k: int = 6,
    ) -> list[RetrievedDocument]:
        embedder = self._embedder or get_embedding_client()
        if embedder is None:
            raise CollaboratorFailure("retrieval", "no embedding client configured")
        try:
            embedding = await embedder.embed(query_text)
            rows = await self._rpc({
                "tenant_id": tenant_id,
                "query_embedding": embedding,
                "match_count": top_k,
                "doc_types": doc_types or None,
                "metadata_filter": metadata_filter or {},
                "relationships_filter": {},
            })
        except Exception as e:
            logger.error("collaborator_call_failed",
                         collaborator="retrieval", tenant_id=tenant_id, error=str(e))
            raise CollaboratorFailure("retrieval", str(e)) from e

        logger.debug("vector_search_completed", tenant_id=tenant_id, results=len(rows))
        return [RetrievedDocument.model_validate(row) for row in rows]

    async def close(self):
        if self.client:
            await self.client.aclose()


def _terms(text: str) -> set[str]:
    return {t for t in re.findall(r"[a-z0-9]+", text.lower()) if len(t) > 2}


class InMemoryRetrievalService(RetrievalService):
    """
    Term-overlap search over documents held in memory.
    Documents without a tenant_id in their metadata are visible to all tenants.
    """

    def __init__(self, documents: list[dict[str, Any]] = None):
        self._documents = [RetrievedDocument.model_validate(d) for d in (documents or [])]

    def add(self, content: str, doc_id: str = "", **metadata: Any):
        self._documents.append(RetrievedDocument(
            id=doc_id or str(len(self._documents) + 1), content=content, metadata=metadata))

    async def search(
        self,
        query_text: str,
        tenant_id: Optional[str] = None,
        doc_types: Optional[list[str]] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        top_k: int = 6,
    ) -> list[RetrievedDocument]:
        query = _terms(query_text)
        scored = []
        for doc in self._documents:
            doc_tenant = doc.metadata.get("tenant_id")
            if tenant_id and doc_tenant and doc_tenant != tenant_id:
                continue
            if doc_types and doc.doc_type not in doc_types:
                continue
            if metadata_filter and any(doc.metadata.get(k) != v for k, v in metadata_filter.items()):
                continue
            terms = _terms(doc.content)
            overlap = len(query & terms)
            if query and overlap == 0:
                continue
            score = overlap / max(len(query), 1)
            scored.append(doc.model_copy(update={"similarity": round(score, 4)}))
        scored.sort(key=lambda d: d.similarity, reverse=True)
        return scored[:top_k]


# ──────────────────────────────────────────────────────────────
#  Lazy singleton
# ──────────────────────────────────────────────────────────────

_lock = threading.Lock()
_service: Optional[RetrievalService] = None


def create_retrieval_service(config: RetrievalConfig = None) -> RetrievalService:
    config = config or get_settings().retrieval
    if config.backend == "rest" and config.base_url:
        return RestRetrievalService(config)
    return InMemoryRetrievalService()


def get_retrieval_service() -> RetrievalService:
    global _service
    if _service is None:
        with _lock:
            if _service is None:
                _service = create_retrieval_service()
                logger.info("retrieval_service_initialized", backend=type(_service).__name__)
    return _service


def set_retrieval_service(service: Optional[RetrievalService]):
    global _service
    with _lock:
        _service = service
