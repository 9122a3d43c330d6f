"""
Vector retrieval service: namespaced similarity search and upserts over a
LangChain vector store, plus a small scheduler for best-effort writes.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings
from langchain_core.vectorstores import InMemoryVectorStore, VectorStore

from inbox_triage.config import settings
from inbox_triage.llm import get_embeddings
from inbox_triage.logger import get_logger
from inbox_triage.metrics import retrieval_duration_seconds, retrieval_queries_total, track_time
from inbox_triage.state import RetrievedDocument

logger = get_logger(__name__)

# --- Namespaces ---
EMAIL_PATTERNS = "email-patterns"
EMAIL_SUMMARIES = "email-summaries"
REPLY_PATTERNS = "reply-patterns"
USER_TONE_PROFILES = "user-tone-profiles"


class RagService:
    """
    One vector store per index name; namespaces partition each store by
    the `namespace` metadata key.

    Args:
        embeddings: Optional embedding model (defaults to the configured provider)
        store_factory: Optional callable building a store for an index name
    """

    def __init__(
        self,
        embeddings: Optional[Embeddings] = None,
        store_factory: Optional[Callable[[Embeddings], VectorStore]] = None,
    ):
        self._embeddings = embeddings
        self._store_factory = store_factory or InMemoryVectorStore
        self._stores: dict[str, VectorStore] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def embeddings(self) -> Embeddings:
        """Lazy initialization of the embedding model."""
        if self._embeddings is None:
            self._embeddings = get_embeddings()
        return self._embeddings

    def get_store(self, index_name: Optional[str] = None) -> VectorStore:
        index_name = index_name or settings.vector_index_name
        if index_name not in self._stores:
            logger.info("Creating vector store", extra={"index_name": index_name})
            self._stores[index_name] = self._store_factory(self.embeddings)
        return self._stores[index_name]

    @track_time(retrieval_duration_seconds)
    async def get_context(
        self,
        query: str,
        *,
        namespace: str,
        top_k: int = 3,
        min_score: float = 0.0,
        filter: Optional[dict[str, Any]] = None,
        index_name: Optional[str] = None,
    ) -> list[RetrievedDocument]:
        """
        Similarity search within one namespace.

        Args:
            query: Free-text query
            namespace: Namespace to search
            top_k: Max hits before score filtering
            min_score: Drop hits scoring below this
            filter: Exact-match constraints on document metadata

        Returns:
            Hits ordered by score, best first
        """
        wanted = dict(filter or {})

        def matches(doc: Document) -> bool:
            metadata = doc.metadata
            if metadata.get("namespace") != namespace:
                return False
            return all(metadata.get(key) == value for key, value in wanted.items())

        retrieval_queries_total.labels(namespace=namespace).inc()
        store = self.get_store(index_name)
        hits = await store.asimilarity_search_with_score(query, k=top_k, filter=matches)

        documents = [
            RetrievedDocument(
                id=doc.id,
                content=doc.page_content,
                metadata=dict(doc.metadata),
                score=float(score),
                namespace=namespace,
                query=query,
            )
            for doc, score in hits
            if score >= min_score
        ]
        logger.debug(
            "Retrieved context",
            extra={"namespace": namespace, "hits": len(hits), "kept": len(documents)}
        )
        return documents

    async def process_documents_for_rag(
        self,
        documents: list[dict],
        *,
        namespace: str,
        index_name: Optional[str] = None,
    ) -> None:
        """
        Upsert documents shaped `{id, content, metadata}` into a namespace.
        Re-using an id replaces the stored document.
        """
        if not documents:
            return

        docs = [
            Document(
                id=item["id"],
                page_content=item["content"],
                metadata={**item.get("metadata", {}), "namespace": namespace},
            )
            for item in documents
        ]
        store = self.get_store(index_name)
        await store.aadd_documents(docs, ids=[doc.id for doc in docs])
        logger.info("Stored documents", extra={"namespace": namespace, "count": len(docs)})

    # --- Best-effort writes ---

    def schedule(self, coro: Awaitable, *, label: str) -> asyncio.Task:
        """Run a write in the background; failures are logged, never raised."""
        task = asyncio.ensure_future(self._guard(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guard(self, coro: Awaitable, label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning("Background write failed", extra={"task": label, "error": str(e)})

    @property
    def pending(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for outstanding background writes (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background))
