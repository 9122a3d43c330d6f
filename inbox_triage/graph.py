import asyncio
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Optional, Union

from langgraph.graph import StateGraph, START, END
from pydantic import ValidationError

from inbox_triage.agents import (
    ClassificationAgent,
    ReplyDraftAgent,
    RagReplyDraftAgent,
    SummarizationAgent,
    FALLBACK_CLASSIFICATION,
    FALLBACK_SUMMARY,
    classify_by_keywords,
    fallback_reply,
    summarize_by_sentences,
)
from inbox_triage.config import settings
from inbox_triage.events import TRIAGE_STARTED, TRIAGE_COMPLETED, TRIAGE_FAILED
from inbox_triage.logger import get_logger
from inbox_triage.metrics import (
    emails_classified_total,
    graph_node_duration_seconds,
    graph_node_executions_total,
    retrieval_failures_total,
)
from inbox_triage.patterns import PatternStorageService, QUERY_STOP_WORDS, extract_keywords, is_complete
from inbox_triage.rag import RagService, EMAIL_PATTERNS, EMAIL_SUMMARIES, REPLY_PATTERNS, USER_TONE_PROFILES
from inbox_triage.state import (
    Classification,
    EmailData,
    EmailMetadata,
    EmailSummary,
    ReplyDraft,
    RetrievedDocument,
    TriageError,
    TriageEvent,
    TriageResult,
    TriageState,
    utc_now,
)
from inbox_triage.tone import reconstruct_tone_profile

logger = get_logger(__name__)

# Substituted when the reply stage runs without analysis results
MISSING_CLASSIFICATION = Classification(
    priority="normal",
    category="other",
    confidence=0.0,
    reasoning="Missing classification",
)
MISSING_SUMMARY = EmailSummary(
    problem="Unable to identify problem",
    context="Missing summary",
    ask="Unable to determine request",
    summary="Email processing incomplete",
)


def static_reply(metadata: EmailMetadata) -> ReplyDraft:
    return ReplyDraft(
        subject=f"Re: {metadata.subject}",
        body="Thank you for your email. We have received your message and will get back to you soon.",
        tone="professional",
        next_steps=["Manual review", "Respond within 24 hours"],
    )


@dataclass
class ContextQuery:
    namespace: str
    purpose: str
    query: str
    top_k: int
    filter: dict = field(default_factory=dict)


def context_queries(email: EmailData) -> list[ContextQuery]:
    """The similarity searches run for one email during enrichment."""
    meta = email.metadata
    keywords = extract_keywords(email.body, limit=10, stop_words=QUERY_STOP_WORDS)
    queries = [
        ContextQuery(
            EMAIL_PATTERNS, "historical_patterns",
            f"Subject: {meta.subject or 'Email'} Content: {email.body[:200]}", 3,
        ),
        ContextQuery(
            EMAIL_PATTERNS, "classification_patterns",
            f"Email classification priority category: {meta.subject} from {meta.sender}", 2,
        ),
        ContextQuery(
            EMAIL_SUMMARIES, "summarization_examples",
            f"Email summary analysis: {' '.join(keywords)}", 2,
        ),
        ContextQuery(
            REPLY_PATTERNS, "reply_examples",
            f"Email reply patterns for: {meta.subject}", 2,
        ),
    ]
    if meta.user_id:
        queries.append(ContextQuery(
            USER_TONE_PROFILES, "user_tone_profile",
            f"User tone profile for: {meta.sender}", 1,
            filter={"type": "user_tone_profile", "userId": meta.user_id},
        ))
    return queries


def instrumented(node_name: str):
    """Time a node and record the duration in metrics and processing_metadata."""
    def decorator(func):
        @wraps(func)
        async def wrapper(self, state: TriageState) -> dict:
            graph_node_executions_total.labels(node_name=node_name).inc()
            start = time.perf_counter()
            try:
                update = await func(self, state)
            finally:
                elapsed = time.perf_counter() - start
                graph_node_duration_seconds.labels(node_name=node_name).observe(elapsed)

            update["processing_metadata"] = {
                **update.get("processing_metadata", {}),
                f"{node_name}_ms": round(elapsed * 1000, 2),
            }
            return update
        return wrapper
    return decorator


class TriageGraphNodes:
    """
    Node implementations for the triage graph.

    Every collaborator is optional; a missing one switches its stage to the
    deterministic fallback (keyword classifier, sentence summary, static
    reply, no context, no pattern storage).
    """

    def __init__(
        self,
        rag: Optional[RagService] = None,
        classifier: Optional[ClassificationAgent] = None,
        summarizer: Optional[SummarizationAgent] = None,
        reply_agent: Optional[Union[ReplyDraftAgent, RagReplyDraftAgent]] = None,
        pattern_store: Optional[PatternStorageService] = None,
        max_context_documents: Optional[int] = None,
        context_min_score: Optional[float] = None,
    ):
        self.rag = rag
        self.classifier = classifier
        self.summarizer = summarizer
        self.reply_agent = reply_agent
        self.pattern_store = pattern_store
        self.max_context_documents = max_context_documents or settings.context_max_documents
        self.context_min_score = settings.context_min_score if context_min_score is None else context_min_score

    # --- 1. Initialization ---

    @instrumented("initialization")
    async def initialization(self, state: TriageState) -> dict:
        session_id = state["session_id"]
        raw = state.get("raw_email") or {}
        started = TriageEvent(
            name=TRIAGE_STARTED,
            payload={"session_id": session_id, "email_id": raw.get("id")},
        )

        try:
            email = EmailData.model_validate(raw)
        except ValidationError as e:
            logger.warning("Invalid email input", extra={"session_id": session_id, "error": str(e)})
            return {
                "error": TriageError(
                    message=f"Invalid email data: {e.error_count()} validation error(s)",
                    stage="initialization",
                ),
                "current_step": "initialization_failed",
                "progress": 10,
                "events": [started],
            }

        logger.info("Triage initialized", extra={"session_id": session_id, "email_id": email.id})
        return {
            "email_data": email,
            "classification": None,
            "summary": None,
            "reply_draft": None,
            "retrieved_context": [],
            "user_tone_profile": None,
            "current_step": "initialization_completed",
            "progress": 10,
            "processing_metadata": {"started_at": utc_now().isoformat()},
            "events": [started],
        }

    # --- 2. Context Enrichment ---

    @instrumented("context_enrichment")
    async def context_enrichment(self, state: TriageState) -> dict:
        update = {"current_step": "context_enrichment_completed", "progress": 15}
        if self.rag is None:
            logger.debug("No retrieval service configured, skipping enrichment")
            return {
                **update,
                "retrieved_context": [],
                "context_retrieval": {"total_queries": 0, "total_documents": 0, "namespaces": []},
            }

        queries = context_queries(state["email_data"])
        start = time.perf_counter()
        results = await asyncio.gather(*(self._run_query(query) for query in queries))
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        found = [doc for documents in results for doc in documents]
        context = found[: self.max_context_documents]

        tone_profile = state.get("user_tone_profile")
        if tone_profile is None:
            for doc in found:
                if doc.namespace == USER_TONE_PROFILES:
                    tone_profile = reconstruct_tone_profile(doc)
                    if tone_profile is not None:
                        break

        logger.info(
            "Context retrieved",
            extra={"queries": len(queries), "documents": len(found), "kept": len(context)}
        )
        return {
            **update,
            "retrieved_context": context,
            "user_tone_profile": tone_profile,
            "context_retrieval": {
                "total_queries": len(queries),
                "queries_with_hits": sum(1 for documents in results if documents),
                "total_documents": len(found),
                "kept_documents": len(context),
                "namespaces": sorted({query.namespace for query in queries}),
                "duration_ms": duration_ms,
            },
            "processing_metadata": {"context_retrieval_ms": duration_ms},
        }

    async def _run_query(self, query: ContextQuery) -> list[RetrievedDocument]:
        try:
            documents = await self.rag.get_context(
                query.query,
                namespace=query.namespace,
                top_k=query.top_k,
                min_score=self.context_min_score,
                filter=query.filter or None,
            )
        except Exception as e:
            retrieval_failures_total.labels(namespace=query.namespace).inc()
            logger.warning(
                "Context query failed",
                extra={"namespace": query.namespace, "purpose": query.purpose, "error": str(e)}
            )
            return []
        return [doc.model_copy(update={"purpose": query.purpose}) for doc in documents]

    # --- 3. Parallel Analysis ---
    # Both branches run in one superstep; they only write their own output
    # plus the reducer-backed processing_metadata.

    @instrumented("classification")
    async def classification(self, state: TriageState) -> dict:
        email = state["email_data"]
        source = "agent"
        if self.classifier is None:
            source = "keywords"
            result = classify_by_keywords(email.body, email.metadata)
        else:
            try:
                result = await self.classifier.classify_email(email.body, email.metadata)
            except Exception as e:
                logger.error("Classification agent raised", extra={"error": str(e)})
                result = FALLBACK_CLASSIFICATION.model_copy()

        emails_classified_total.labels(priority=result.priority, category=result.category).inc()
        return {
            "classification": result,
            "processing_metadata": {"classification_source": source},
        }

    @instrumented("summarization")
    async def summarization(self, state: TriageState) -> dict:
        email = state["email_data"]
        source = "agent"
        if self.summarizer is None:
            source = "sentences"
            result = summarize_by_sentences(email.body, email.metadata)
        else:
            try:
                result = await self.summarizer.summarize_email(email.body, email.metadata)
            except Exception as e:
                logger.error("Summarization agent raised", extra={"error": str(e)})
                result = FALLBACK_SUMMARY.model_copy()

        return {
            "summary": result,
            "processing_metadata": {"summarization_source": source},
        }

    @instrumented("coordination")
    async def coordination(self, state: TriageState) -> dict:
        return {
            "current_step": "analysis_completed",
            "progress": 60,
            "processing_metadata": {
                "classification_ready": state.get("classification") is not None,
                "summary_ready": state.get("summary") is not None,
            },
        }

    # --- 4. Reply Drafting ---

    @instrumented("reply_draft")
    async def reply_draft(self, state: TriageState) -> dict:
        email = state["email_data"]
        update = {"current_step": "reply_generation_completed", "progress": 80}

        if self.reply_agent is None:
            return {
                **update,
                "reply_draft": static_reply(email.metadata),
                "processing_metadata": {"reply_source": "static"},
            }

        classification = state.get("classification") or MISSING_CLASSIFICATION
        summary = state.get("summary") or MISSING_SUMMARY
        try:
            draft = await self.reply_agent.generate_reply_draft(
                email.body,
                email.metadata,
                classification,
                summary,
                tone_profile=state.get("user_tone_profile"),
            )
            source = "agent"
        except Exception as e:
            logger.error("Reply agent raised", extra={"error": str(e)})
            draft = fallback_reply(email.metadata)
            source = "fallback"

        return {
            **update,
            "reply_draft": draft,
            "processing_metadata": {"reply_source": source},
        }

    # --- 5. Pattern Storage ---

    @instrumented("pattern_storage")
    async def pattern_storage(self, state: TriageState) -> dict:
        scheduled = False
        if self.pattern_store is not None and is_complete(state):
            self.pattern_store.rag.schedule(
                self.pattern_store.store_email_pattern(dict(state)),
                label="email-pattern",
            )
            scheduled = True

        return {
            "current_step": "pattern_storage_scheduled",
            "progress": 90,
            "processing_metadata": {"pattern_storage_scheduled": scheduled},
        }

    # --- 6. Finalization ---

    @instrumented("finalization")
    async def finalization(self, state: TriageState) -> dict:
        error = state.get("error")
        email = state.get("email_data")
        email_id = email.id if email else (state.get("raw_email") or {}).get("id")
        metadata = dict(state.get("processing_metadata") or {})
        metadata["completed_at"] = utc_now().isoformat()

        result = TriageResult(
            session_id=state["session_id"],
            email_id=email_id,
            status="failed" if error else "completed",
            classification=state.get("classification"),
            summary=state.get("summary"),
            reply_draft=state.get("reply_draft"),
            error=error,
            processing_metadata=metadata,
        )

        if error:
            event = TriageEvent(
                name=TRIAGE_FAILED,
                payload={
                    "session_id": result.session_id,
                    "email_id": email_id,
                    "error": error.model_dump(mode="json"),
                },
            )
        else:
            event = TriageEvent(
                name=TRIAGE_COMPLETED,
                payload={
                    "session_id": result.session_id,
                    "email_id": email_id,
                    "result": result.model_dump(
                        mode="json", include={"classification", "summary", "reply_draft", "status"}
                    ),
                    "metrics": metadata,
                },
            )

        logger.info("Triage finalized", extra={"session_id": result.session_id, "status": result.status})
        return {
            "result": result,
            "current_step": result.status,
            "progress": 100,
            "events": [event],
        }


# --- ROUTING LOGIC ---

def route_after_initialization(state: TriageState) -> str:
    """Invalid input is terminal: skip straight to finalization."""
    if state.get("error"):
        return "finalization"
    return "context_enrichment"


# --- BUILD THE GRAPH ---

def build_triage_graph(nodes: Optional[TriageGraphNodes] = None):
    nodes = nodes or TriageGraphNodes()
    workflow = StateGraph(TriageState)

    workflow.add_node("initialization", nodes.initialization)
    workflow.add_node("context_enrichment", nodes.context_enrichment)
    workflow.add_node("classification", nodes.classification)
    workflow.add_node("summarization", nodes.summarization)
    workflow.add_node("coordination", nodes.coordination)
    workflow.add_node("reply_draft", nodes.reply_draft)
    workflow.add_node("pattern_storage", nodes.pattern_storage)
    workflow.add_node("finalization", nodes.finalization)

    workflow.add_edge(START, "initialization")
    workflow.add_conditional_edges(
        "initialization",
        route_after_initialization,
        {
            "context_enrichment": "context_enrichment",
            "finalization": "finalization",
        }
    )

    # Fan out, then a single join
    workflow.add_edge("context_enrichment", "classification")
    workflow.add_edge("context_enrichment", "summarization")
    workflow.add_edge(["classification", "summarization"], "coordination")

    workflow.add_edge("coordination", "reply_draft")
    workflow.add_edge("reply_draft", "pattern_storage")
    workflow.add_edge("pattern_storage", "finalization")
    workflow.add_edge("finalization", END)

    return workflow.compile()
