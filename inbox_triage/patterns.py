"""
Learning sink: finished triage runs become `email-patterns` documents that
later runs retrieve during context enrichment.
"""
import re
import time
from collections import Counter
from typing import Iterable, Optional

from inbox_triage.logger import get_logger
from inbox_triage.metrics import pattern_writes_total
from inbox_triage.rag import RagService, EMAIL_PATTERNS
from inbox_triage.state import EmailMetadata, RetrievedDocument, TriageState, utc_now

logger = get_logger(__name__)

QUERY_STOP_WORDS = frozenset({
    "the", "is", "at", "which", "on", "and", "a", "to", "are", "as", "was", "with", "for",
})
PATTERN_STOP_WORDS = QUERY_STOP_WORDS | {
    "this", "that", "have", "has", "been", "will", "would", "can", "could",
}


def extract_keywords(text: str, limit: int = 15, stop_words: Iterable[str] = PATTERN_STOP_WORDS) -> list[str]:
    """Most frequent words longer than three characters, stop words removed."""
    stop_words = frozenset(stop_words)
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    counts = Counter(word for word in words if len(word) > 3 and word not in stop_words)
    return [word for word, _ in counts.most_common(limit)]


def is_complete(state: TriageState) -> bool:
    return bool(
        state.get("email_data")
        and state.get("classification")
        and state.get("summary")
        and state.get("reply_draft")
    )


def pattern_document(state: TriageState) -> dict:
    """Render a finished run as a `{id, content, metadata}` document."""
    email = state["email_data"]
    meta = email.metadata
    classification = state["classification"]
    summary = state["summary"]
    reply = state["reply_draft"]
    keywords = extract_keywords(email.body)
    context_count = len(state.get("retrieved_context") or [])
    pattern_id = f"pattern-{state['session_id']}-{int(time.time() * 1000)}"

    content = f"""Email Pattern Analysis:

Subject: {meta.subject or "Unknown"}
From: {meta.sender or "Unknown"}

Classification:
- Priority: {classification.priority}
- Category: {classification.category}
- Confidence: {classification.confidence}
- Reasoning: {classification.reasoning}

Summary Analysis:
- Problem: {summary.problem}
- Context: {summary.context}
- Ask: {summary.ask}
- Summary: {summary.summary}

Reply Approach:
- Tone: {reply.tone}
- Next Steps: {", ".join(reply.next_steps)}

Email Content Keywords: {", ".join(keywords)}
Processing Context: {context_count} historical patterns referenced

Email Content Sample: {email.body[:300]}..."""

    return {
        "id": pattern_id,
        "content": content,
        "metadata": {
            "type": "email_pattern",
            "emailId": email.id or pattern_id,
            "sessionId": state["session_id"],
            "priority": classification.priority,
            "category": classification.category,
            "confidence": classification.confidence,
            "subject": meta.subject,
            "from": meta.sender,
            "to": meta.to,
            "replyTone": reply.tone,
            "timestamp": utc_now().isoformat(),
            "contextCount": context_count,
            "keywords": keywords,
        },
    }


class PatternStorageService:
    """Best-effort writes and similarity lookups over `email-patterns`."""

    def __init__(self, rag: RagService):
        self.rag = rag

    async def store_email_pattern(self, state: TriageState) -> None:
        if not is_complete(state):
            logger.warning("Cannot store incomplete pattern", extra={"session_id": state.get("session_id")})
            return

        document = pattern_document(state)
        try:
            await self.rag.process_documents_for_rag([document], namespace=EMAIL_PATTERNS)
        except Exception as e:
            pattern_writes_total.labels(namespace=EMAIL_PATTERNS, outcome="failed").inc()
            logger.error("Failed to store email pattern", extra={"pattern_id": document["id"], "error": str(e)})
            return

        pattern_writes_total.labels(namespace=EMAIL_PATTERNS, outcome="stored").inc()
        logger.info("Email pattern stored", extra={"pattern_id": document["id"]})

    async def store_batch_patterns(self, states: list[TriageState]) -> int:
        """Store every complete state in one upsert. Returns how many were sent."""
        documents = [pattern_document(state) for state in states if is_complete(state)]
        if not documents:
            logger.warning("No valid patterns to store in batch")
            return 0

        try:
            await self.rag.process_documents_for_rag(documents, namespace=EMAIL_PATTERNS)
        except Exception as e:
            pattern_writes_total.labels(namespace=EMAIL_PATTERNS, outcome="failed").inc(len(documents))
            logger.error("Failed to store batch patterns", extra={"count": len(documents), "error": str(e)})
            return 0

        pattern_writes_total.labels(namespace=EMAIL_PATTERNS, outcome="stored").inc(len(documents))
        logger.info("Batch stored email patterns", extra={"count": len(documents)})
        return len(documents)

    async def find_similar_patterns(
        self,
        body: str,
        metadata: EmailMetadata,
        top_k: int = 5,
        min_score: float = 0.7,
        category: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> list[RetrievedDocument]:
        query = f"Email analysis: Subject: {metadata.subject} Content: {body[:200]}"
        pattern_filter = {"type": "email_pattern"}
        if category:
            pattern_filter["category"] = category
        if priority:
            pattern_filter["priority"] = priority

        try:
            return await self.rag.get_context(
                query,
                namespace=EMAIL_PATTERNS,
                top_k=top_k,
                min_score=min_score,
                filter=pattern_filter,
            )
        except Exception as e:
            logger.error("Failed to find similar patterns", extra={"error": str(e)})
            return []
