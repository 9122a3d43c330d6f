"""
Triage orchestration boundary.

`TriageService` is what the API, the worker and the demo script call: it
runs the dedup check and pre-filter, streams the graph, publishes the
events each node returns, persists the outcome and records metrics.
"""
import asyncio
import time
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from inbox_triage.agents import (
    ClassificationAgent,
    RagReplyDraftAgent,
    RagSummarizationAgent,
    ReplyDraftAgent,
    SummarizationAgent,
)
from inbox_triage.cache import InMemoryProcessingCache, ProcessingCache, create_processing_cache
from inbox_triage.config import settings
from inbox_triage.db import save_session
from inbox_triage.events import EMAIL_FILTERED, EventDispatcher, RedisEventRelay, WILDCARD
from inbox_triage.filters import analyze_email
from inbox_triage.graph import TriageGraphNodes, build_triage_graph
from inbox_triage.logger import bind_triage, get_logger
from inbox_triage.metrics import dedup_hits_total, triage_duration_seconds, triage_runs_total
from inbox_triage.patterns import PatternStorageService
from inbox_triage.rag import RagService
from inbox_triage.state import EmailMetadata, TriageError, TriageResult, TriageState, UserToneProfile
from inbox_triage.tone import ToneAnalysisAgent

logger = get_logger(__name__)


class TriageService:
    """
    Runs one email at a time through dedup, pre-filter and the triage graph.

    Args:
        graph: Compiled triage graph (defaults to one built from `nodes`)
        nodes: Node collaborators used when no graph is given
        cache: Dedup cache (defaults to an in-memory one)
        dispatcher: Event dispatcher events are published to
        rag: Retrieval service whose background writes `shutdown()` drains
        tone_agent: Agent used by `learn_tone_profile`
        prefilter_enabled: Run the rule-based pre-filter first
        persist: Save each result to the session store
    """

    def __init__(
        self,
        graph=None,
        nodes: Optional[TriageGraphNodes] = None,
        cache: Optional[ProcessingCache] = None,
        dispatcher: Optional[EventDispatcher] = None,
        rag: Optional[RagService] = None,
        tone_agent: Optional[ToneAnalysisAgent] = None,
        prefilter_enabled: Optional[bool] = None,
        persist: bool = True,
    ):
        self.graph = graph or build_triage_graph(nodes)
        self.cache = cache if cache is not None else InMemoryProcessingCache()
        self.dispatcher = dispatcher or EventDispatcher()
        self.rag = rag
        self.tone_agent = tone_agent
        self.prefilter_enabled = settings.prefilter_enabled if prefilter_enabled is None else prefilter_enabled
        self.persist = persist

    async def process(
        self,
        email_data: dict[str, Any],
        session_id: Optional[str] = None,
        skip_filter: bool = False,
    ) -> TriageResult:
        """
        Triage one email. Never raises: every outcome is a `TriageResult`
        with status completed, failed, filtered or duplicate.
        """
        session_id = session_id or str(uuid.uuid4())
        email_id = email_data.get("id")
        bind_triage(session_id, email_id)
        start_time = time.time()

        if email_id:
            if await self._seen(email_id):
                dedup_hits_total.inc()
                logger.info("Duplicate email skipped", extra={"email_id": email_id})
                return self._finish(
                    TriageResult(session_id=session_id, email_id=email_id, status="duplicate"),
                    start_time,
                )
            await self._mark(email_id)

        if self.prefilter_enabled and not skip_filter:
            filtered = self._prefilter(session_id, email_data)
            if filtered is not None:
                return self._finish(filtered, start_time)

        result = await self._run_graph(session_id, email_data)

        if self.persist:
            # sqlite is blocking; keep it off the event loop
            await asyncio.to_thread(save_session, result)

        return self._finish(result, start_time)

    # --- Stages ---

    def _prefilter(self, session_id: str, email_data: dict) -> Optional[TriageResult]:
        raw_metadata = email_data.get("metadata") or {}
        try:
            metadata = EmailMetadata.model_validate(raw_metadata)
        except ValidationError:
            # Malformed envelopes are left to initialization to reject
            return None

        decision = analyze_email(
            subject=metadata.subject,
            sender=metadata.sender,
            body=email_data.get("body") or "",
            email_id=email_data.get("id"),
        )
        if decision.should_process:
            return None

        self.dispatcher.emit(
            EMAIL_FILTERED,
            session_id=session_id,
            email_id=email_data.get("id"),
            category=decision.category,
            priority=decision.priority,
            reasoning=decision.reasoning,
            confidence=decision.confidence,
        )
        return TriageResult(
            session_id=session_id,
            email_id=email_data.get("id"),
            status="filtered",
            filter_result=decision,
        )

    async def _seen(self, email_id: str) -> bool:
        try:
            return await self.cache.has(email_id)
        except Exception as e:
            logger.warning("Dedup cache lookup failed, processing anyway", extra={"error": str(e)})
            return False

    async def _mark(self, email_id: str) -> None:
        try:
            await self.cache.set(email_id, settings.dedup_ttl_seconds)
        except Exception as e:
            logger.warning("Dedup cache write failed", extra={"error": str(e)})

    async def _run_graph(self, session_id: str, email_data: dict) -> TriageResult:
        initial_state: TriageState = {
            "session_id": session_id,
            "raw_email": email_data,
            "current_step": "pending",
            "progress": 0,
            "processing_metadata": {},
            "events": [],
        }
        final_state: dict = {}

        try:
            async for mode, chunk in self.graph.astream(
                initial_state,
                {"recursion_limit": settings.recursion_limit},
                stream_mode=["updates", "values"],
            ):
                if mode == "values":
                    final_state = chunk
                    continue
                for node_name, update in chunk.items():
                    logger.debug("Node finished", extra={"node": node_name})
                    for event in (update or {}).get("events", []):
                        self.dispatcher.publish(event)
        except Exception as e:
            logger.error("Triage graph failed", extra={"session_id": session_id, "error": str(e)}, exc_info=True)
            return TriageResult(
                session_id=session_id,
                email_id=email_data.get("id"),
                status="failed",
                error=TriageError(message=f"Triage failed: {e}", stage="orchestration"),
            )

        result = final_state.get("result")
        if result is None:
            return TriageResult(
                session_id=session_id,
                email_id=email_data.get("id"),
                status="failed",
                error=TriageError(message="Graph finished without a result", stage="finalization"),
            )
        return result

    def _finish(self, result: TriageResult, start_time: float) -> TriageResult:
        duration = time.time() - start_time
        triage_runs_total.labels(status=result.status).inc()
        triage_duration_seconds.labels(status=result.status).observe(duration)
        logger.info(
            "Triage finished",
            extra={
                "session_id": result.session_id,
                "email_id": result.email_id,
                "status": result.status,
                "duration_ms": round(duration * 1000, 2),
            }
        )
        return result

    # --- Tone Learning ---

    async def learn_tone_profile(
        self,
        user_id: str,
        user_email: str,
        history: list[tuple[str, EmailMetadata]],
    ) -> UserToneProfile:
        """Analyze a user's past emails and store the resulting profile."""
        if self.tone_agent is None:
            raise RuntimeError("Tone learning is not configured")

        profile = await self.tone_agent.analyze_user_tone(user_id, user_email, history)
        if profile.sample_count > 0:
            await self.tone_agent.store_tone_profile(profile)
        return profile

    async def shutdown(self) -> None:
        """Drain background writes and event handlers, then stop the cache."""
        if self.rag is not None:
            await self.rag.drain()
        await self.dispatcher.flush()
        stop = getattr(self.cache, "stop", None)
        if stop is not None:
            await stop()
        logger.info("Triage service stopped")


def create_triage_service(
    rag: Optional[RagService] = None,
    dispatcher: Optional[EventDispatcher] = None,
    cache: Optional[ProcessingCache] = None,
) -> TriageService:
    """Wire the LLM agents, retrieval and dedup cache from settings."""
    rag = rag or RagService()
    dispatcher = dispatcher or EventDispatcher()
    tone_agent = ToneAnalysisAgent(rag)

    if settings.rag_summary_enabled:
        summarizer = RagSummarizationAgent(rag)
    else:
        summarizer = SummarizationAgent()

    reply_agent = RagReplyDraftAgent(rag, tone_agent=tone_agent, basic_agent=ReplyDraftAgent())

    nodes = TriageGraphNodes(
        rag=rag,
        classifier=ClassificationAgent(),
        summarizer=summarizer,
        reply_agent=reply_agent,
        pattern_store=PatternStorageService(rag),
    )

    if settings.event_relay_enabled:
        dispatcher.subscribe(WILDCARD, RedisEventRelay())

    return TriageService(
        nodes=nodes,
        cache=cache if cache is not None else create_processing_cache(),
        dispatcher=dispatcher,
        rag=rag,
        tone_agent=tone_agent,
    )
