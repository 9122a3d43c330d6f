"""
LLM-backed triage agents and the deterministic fallbacks they degrade to.

Every public agent method resolves to a well-typed object: upstream errors
and unparseable responses are logged, counted and replaced with a fixed
default, never raised to the caller.
"""
import re
import uuid
from typing import TYPE_CHECKING, Callable, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from inbox_triage.config import settings
from inbox_triage.llm import get_chat_model, extract_json, message_text
from inbox_triage.logger import get_logger
from inbox_triage.metrics import llm_requests_total, llm_fallbacks_total
from inbox_triage.rag import RagService, EMAIL_SUMMARIES, REPLY_PATTERNS
from inbox_triage.state import (
    CATEGORIES,
    PRIORITIES,
    Classification,
    EmailMetadata,
    EmailSummary,
    ReplyDraft,
    RetrievedDocument,
    UserToneProfile,
    utc_now,
)

if TYPE_CHECKING:
    from inbox_triage.tone import ToneAnalysisAgent

logger = get_logger(__name__)

ChatModelFactory = Callable[..., BaseChatModel]


# --- 1. SHARED AGENT PLUMBING ---

class BaseAgent:
    """Prompt -> chat model -> JSON dict, with the model factory injectable."""

    name = "agent"
    system_prompt = ""

    def __init__(self, model_factory: Optional[ChatModelFactory] = None):
        self._model_factory = model_factory

    async def _complete(self, prompt: str, *, temperature: float, max_tokens: int) -> dict:
        factory = self._model_factory or get_chat_model
        llm = factory(temperature=temperature, max_tokens=max_tokens)
        llm_requests_total.labels(agent=self.name, provider=settings.model_provider).inc()

        response = await llm.ainvoke([
            SystemMessage(content=self.system_prompt),
            HumanMessage(content=prompt),
        ])
        return extract_json(message_text(response))

    def _record_fallback(self, error: Exception, reason: str = "error") -> None:
        llm_fallbacks_total.labels(agent=self.name, reason=reason).inc()
        logger.warning(
            "Agent fell back to default output",
            extra={"agent": self.name, "reason": reason, "error": str(error)}
        )


def fallback_reason(error: Exception) -> str:
    # JSONDecodeError and pydantic's ValidationError are both ValueErrors
    return "parse" if isinstance(error, ValueError) else "error"


def sender_name(sender: str) -> str:
    """'Jane Doe <jane@x.io>' -> 'Jane Doe', 'jane@x.io' -> 'jane'."""
    match = re.match(r'\s*"?([^"<]+?)"?\s*<', sender or "")
    if match:
        return match.group(1)
    return (sender or "there").split("@")[0] or "there"


# --- 2. CLASSIFICATION ---

FALLBACK_CLASSIFICATION = Classification(
    priority="normal",
    category="other",
    confidence=0.0,
    reasoning="Failed to classify email automatically",
)


class ClassificationAgent(BaseAgent):
    name = "classification"
    system_prompt = (
        "You are an AI assistant specialized in classifying support emails by priority "
        "and category. Be precise and consistent in your classifications."
    )

    async def classify_email(self, body: str, metadata: EmailMetadata) -> Classification:
        logger.info("Classifying email", extra={"subject": metadata.subject})

        prompt = f"""Email to classify:
Subject: {metadata.subject}
From: {metadata.sender}
Body: {body}

Classify this email with:
1. Priority: {", ".join(PRIORITIES)}
2. Category: {", ".join(CATEGORIES)}
3. Reasoning: Brief explanation

Respond in JSON format:
{{
  "priority": "{"|".join(PRIORITIES)}",
  "category": "{"|".join(CATEGORIES)}",
  "reasoning": "explanation",
  "confidence": 0.95
}}"""

        try:
            data = await self._complete(prompt, temperature=0.1, max_tokens=200)
            classification = Classification.model_validate(data)
        except Exception as e:
            self._record_fallback(e, fallback_reason(e))
            return FALLBACK_CLASSIFICATION.model_copy()

        logger.info(
            "Email classified",
            extra={"priority": classification.priority, "category": classification.category}
        )
        return classification


URGENT_KEYWORDS = (
    "urgent", "asap", "emergency", "critical", "immediately", "priority", "deadline",
    "bug", "bug fix", "bug fixes", "error", "issue", "problem", "failure", "crash",
    "down", "outage", "broken", "not working", "fix needed", "hotfix",
)

IMPORTANT_KEYWORDS = (
    "important", "meeting", "deadline", "review", "approval", "decision",
    "action required", "please respond", "fyi", "follow up", "update",
)

SPAM_KEYWORDS = (
    "promotion", "sale", "discount", "offer", "free", "unsubscribe",
    "click here", "limited time", "congratulations", "winner",
)

# First matching row overrides the category picked from the priority branch
CATEGORY_OVERRIDES = (
    (("complain", "problem", "issue"), "complaint"),
    (("thank", "great", "excellent"), "praise"),
    (("feature", "request", "enhancement"), "feature_request"),
    (("question", "how", "what", "why"), "question"),
)

CONFIDENCE_KEYWORDS = ("urgent", "bug", "fix", "error", "important", "meeting")
REASONING_KEYWORDS = CONFIDENCE_KEYWORDS + ("deadline",)


def _contains_any(text: str, words) -> bool:
    return any(word in text for word in words)


def classify_by_keywords(body: str, metadata: EmailMetadata) -> Classification:
    """Keyword classifier used when no classification agent is configured."""
    text = f"{metadata.subject or ''} {body}".lower()

    priority, category = "normal", "other"
    if _contains_any(text, URGENT_KEYWORDS):
        priority = "urgent"
        if _contains_any(text, ("bug", "fix", "error", "issue")):
            category = "bug_report"
        elif _contains_any(text, ("question", "how")):
            category = "question"
    elif _contains_any(text, IMPORTANT_KEYWORDS):
        priority = "high"
        if _contains_any(text, ("feature", "enhancement")):
            category = "feature_request"
        elif _contains_any(text, ("question", "how")):
            category = "question"
    elif _contains_any(text, SPAM_KEYWORDS):
        priority = "low"

    for words, override in CATEGORY_OVERRIDES:
        if _contains_any(text, words):
            category = override
            break

    confidence = 0.5 + 0.1 * sum(1 for word in CONFIDENCE_KEYWORDS if word in text)
    if len(text) > 100:
        confidence += 0.1
    if "@" in text and "." in text:
        confidence += 0.1

    matched = [word for word in REASONING_KEYWORDS if word in text]
    if matched:
        reasoning = f"Classified as {priority}/{category} due to keywords: {', '.join(matched)}"
    else:
        reasoning = f"Classified as {priority}/{category} based on content analysis"

    return Classification(
        priority=priority,
        category=category,
        confidence=round(min(confidence, 0.95), 2),
        reasoning=reasoning,
    )


# --- 3. SUMMARIZATION ---

FALLBACK_SUMMARY = EmailSummary(
    problem="Unable to identify specific problem",
    context="Unable to extract context",
    ask="Unable to determine request",
    summary="Failed to summarize email automatically",
)

SUMMARY_INSTRUCTIONS = """Extract and summarize:
1. **Problem**: What issue is the sender facing?
2. **Context**: What background information is provided?
3. **Ask**: What specific action or response do they want?

Keep summary under {max_length} characters.

Respond in JSON format:
{{
  "problem": "brief description of the issue",
  "context": "relevant background information",
  "ask": "what they want us to do",
  "summary": "one-sentence overall summary"
}}"""


class SummarizationAgent(BaseAgent):
    name = "summarization"
    system_prompt = (
        "You are an AI assistant specialized in summarizing support emails. "
        "Extract the core problem, context, and ask clearly and concisely."
    )

    def __init__(self, model_factory: Optional[ChatModelFactory] = None, max_summary_length: Optional[int] = None):
        super().__init__(model_factory)
        self.max_summary_length = max_summary_length or settings.max_summary_length

    def _prompt(self, body: str, metadata: EmailMetadata, examples: str = "") -> str:
        return f"""{examples}Email to summarize:
Subject: {metadata.subject}
From: {metadata.sender}
Body: {body}

{SUMMARY_INSTRUCTIONS.format(max_length=self.max_summary_length)}"""

    async def summarize_email(self, body: str, metadata: EmailMetadata) -> EmailSummary:
        logger.info("Summarizing email", extra={"subject": metadata.subject})
        try:
            data = await self._complete(self._prompt(body, metadata), temperature=0.2, max_tokens=300)
            return EmailSummary.model_validate(data)
        except Exception as e:
            self._record_fallback(e, fallback_reason(e))
            return FALLBACK_SUMMARY.model_copy()


class RagSummarizationAgent(SummarizationAgent):
    """Summarizer that shows the model similar past emails as examples first."""

    name = "rag_summarization"

    def __init__(
        self,
        rag: RagService,
        model_factory: Optional[ChatModelFactory] = None,
        max_summary_length: Optional[int] = None,
    ):
        super().__init__(model_factory, max_summary_length)
        self.rag = rag

    async def summarize_email(self, body: str, metadata: EmailMetadata) -> EmailSummary:
        logger.info("Summarizing email with retrieved examples", extra={"subject": metadata.subject})
        query = f"Email summary:\nSubject: {metadata.subject}\nFrom: {metadata.sender}\nEmail type and category analysis"

        try:
            documents = await self.rag.get_context(
                query, namespace=EMAIL_SUMMARIES, top_k=3, min_score=0.7
            )
            examples = ""
            if documents:
                rendered = "\n".join(
                    f"\nExample {i}:\n{doc.content}\n---" for i, doc in enumerate(documents, start=1)
                )
                examples = (
                    f"RELEVANT EMAIL PATTERNS FROM HISTORY:\n{rendered}\n\n"
                    "Use these patterns to help analyze the current email.\n\n"
                )
            data = await self._complete(self._prompt(body, metadata, examples), temperature=0.2, max_tokens=400)
            summary = EmailSummary.model_validate(data)
        except Exception as e:
            logger.warning("Retrieval-augmented summary failed, using plain prompt", extra={"error": str(e)})
            return await super().summarize_email(body, metadata)

        logger.info("Email summarized", extra={"examples": len(documents)})
        return summary


def summarize_by_sentences(body: str, metadata: EmailMetadata, max_length: Optional[int] = None) -> EmailSummary:
    """Heuristic summary from the leading sentences, used without an agent."""
    max_length = max_length or settings.max_summary_length
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", body.strip()) if s.strip()]
    if not sentences:
        return FALLBACK_SUMMARY.model_copy()

    def clip(text: str) -> str:
        return text if len(text) <= max_length else text[: max_length - 3].rstrip() + "..."

    asks = [s for s in sentences if s.endswith("?") or re.search(r"\b(please|could you|can you|need)\b", s, re.I)]
    return EmailSummary(
        problem=clip(sentences[0]),
        context=clip(" ".join(sentences[1:3])) if len(sentences) > 1 else f"Subject: {metadata.subject}",
        ask=clip(asks[0]) if asks else "Unable to determine request",
        summary=clip(" ".join(sentences[:2])),
    )


# --- 4. REPLY DRAFTING ---

REPLY_TEMPLATES: dict[str, str] = {
    "urgent": (
        "Thank you for reaching out. We understand this is urgent and will prioritize your request. "
        "Our team will get back to you within 2 hours."
    ),
    "high": "Thank you for contacting us. We have received your request and will respond within 4 hours.",
    "normal": (
        "Hi {{sender_name}}, Thank you for contacting us. We have received your message "
        "and will get back to you within 24 hours."
    ),
    "low": "Thank you for your message. We will review your request and respond within 48 hours.",
    "bug_report": "Thank you for reporting this issue. We will investigate and get back to you with an update soon.",
    "feature_request": "Thank you for your feature suggestion. We will review it with our product team.",
    "question": "Thank you for your question. We will provide you with a detailed answer shortly.",
    "complaint": (
        "Thank you for bringing this to our attention. We take your feedback seriously "
        "and will address this promptly."
    ),
    "praise": "Thank you for your kind words! We really appreciate your feedback.",
}
DEFAULT_REPLY_TEMPLATE = "Hi {{sender_name}}, Thank you for contacting us..."

TONE_ADAPTED_TEMPLATES: dict[str, str] = {
    "urgent": "Thank you for reaching out. We understand this is urgent and will prioritize your request.",
    "high": "Thank you for contacting us. We have received your request and will respond promptly.",
    "normal": "Thank you for contacting us. We have received your message and will get back to you soon.",
    "low": "Thank you for your message. We will review your request and respond within 48 hours.",
    "bug_report": "Thank you for reporting this issue. We will investigate and provide an update.",
    "feature_request": "Thank you for your feature suggestion. We will review it with our product team.",
    "question": "Thank you for your question. We will provide you with a detailed answer.",
    "complaint": "Thank you for bringing this to our attention. We take your feedback seriously.",
    "praise": "Thank you for your kind words! We really appreciate your feedback.",
}
DEFAULT_TONE_ADAPTED_TEMPLATE = "Thank you for contacting us. We will address your request promptly."


def select_base_template(
    classification: Classification,
    templates: dict[str, str] = REPLY_TEMPLATES,
    default: str = DEFAULT_REPLY_TEMPLATE,
) -> str:
    """Priority template, else category, else 'normal', else the literal default."""
    return (
        templates.get(classification.priority)
        or templates.get(classification.category)
        or templates.get("normal")
        or default
    )


def render_template(template: str, metadata: EmailMetadata) -> str:
    return template.replace("{{sender_name}}", sender_name(metadata.sender))


# Ordered (style conditions, tone); first row whose conditions all hold wins
TONE_OVERRIDES: tuple[tuple[dict[str, str], str], ...] = (
    ({"formality": "casual", "warmth": "warm"}, "friendly"),
    ({"formality": "formal", "warmth": "neutral"}, "professional"),
    ({"urgency": "urgent"}, "urgent"),
)
MIN_TONE_CONFIDENCE = 0.5


def apply_tone_adjustments(draft: ReplyDraft, profile: Optional[UserToneProfile]) -> ReplyDraft:
    """Override the model's tone label from the user's learned style."""
    if profile is None or profile.confidence < MIN_TONE_CONFIDENCE:
        return draft

    style = profile.communication_style
    for conditions, tone in TONE_OVERRIDES:
        if all(getattr(style, field) == value for field, value in conditions.items()):
            return draft.model_copy(update={"tone": tone})
    return draft


def build_tone_instructions(
    profile: Optional[UserToneProfile],
    adaptation_strength: float,
    fallback_tone: str = "professional",
) -> str:
    if profile is None or profile.confidence < MIN_TONE_CONFIDENCE:
        return f"TONE GUIDELINES: Use {fallback_tone} tone as default."

    style = profile.communication_style
    return f"""USER TONE PROFILE (Confidence: {profile.confidence:.2f}):
- Formality: {style.formality}
- Warmth: {style.warmth}
- Directness: {style.directness}
- Technical Level: {style.technical_level}
- Emotional Tone: {style.emotional_tone}
- Response Length: {style.response_length}
- Common Phrases: {", ".join(profile.common_phrases[:5])}

ADAPTATION STRENGTH: {adaptation_strength * 100:.0f}% - Adapt reply to match user's style while maintaining professionalism."""


def build_pattern_context(patterns: list[RetrievedDocument]) -> str:
    if not patterns:
        return "PATTERN CONTEXT: No similar patterns available."

    lines = "\n".join(f"Pattern {i}: {doc.content[:100]}..." for i, doc in enumerate(patterns, start=1))
    return (
        f"SIMILAR SUCCESSFUL PATTERNS:\n{lines}\n\n"
        "Use these patterns as inspiration for structure and tone, but personalize the content."
    )


def fallback_reply(metadata: EmailMetadata) -> ReplyDraft:
    return ReplyDraft(
        subject=f"Re: {metadata.subject}",
        body=(
            f"Dear {metadata.sender},\n\nThank you for your email. We have received your message "
            "and will get back to you soon.\n\nBest regards,\nSupport Team"
        ),
        tone="professional",
        next_steps=["Review request", "Respond within 24 hours"],
    )


class ReplyDraftAgent(BaseAgent):
    name = "reply_draft"
    system_prompt = (
        "You are an AI assistant specialized in generating professional reply drafts for support "
        "emails. Create helpful, empathetic, and actionable responses."
    )

    def __init__(self, model_factory: Optional[ChatModelFactory] = None, templates: Optional[dict[str, str]] = None):
        super().__init__(model_factory)
        self.templates = REPLY_TEMPLATES if templates is None else templates

    async def generate_reply_draft(
        self,
        body: str,
        metadata: EmailMetadata,
        classification: Classification,
        summary: EmailSummary,
        tone_profile: Optional[UserToneProfile] = None,
    ) -> ReplyDraft:
        # Plain drafts ignore the tone profile
        logger.info("Generating reply draft", extra={"subject": metadata.subject})
        template = select_base_template(classification, self.templates)

        prompt = f"""Original Email:
Subject: {metadata.subject}
From: {metadata.sender}
Classification: {classification.priority} priority, {classification.category}
Summary: {summary.summary}

Base Template: {template}

Generate a professional reply draft that:
1. Acknowledges their {summary.problem}
2. Shows understanding of their {summary.context}
3. Addresses their {summary.ask}
4. Maintains appropriate tone for {classification.priority} priority

Personalize with sender name: {metadata.sender}

Respond in JSON format:
{{
  "subject": "Re: {metadata.subject}",
  "body": "complete reply draft",
  "tone": "professional|friendly|urgent",
  "next_steps": ["action1", "action2"]
}}"""

        try:
            data = await self._complete(prompt, temperature=0.3, max_tokens=400)
            return ReplyDraft.model_validate(data)
        except Exception as e:
            self._record_fallback(e, fallback_reason(e))
            return fallback_reply(metadata)


class RagReplyDraftAgent(BaseAgent):
    """
    Tone-adapted reply drafting.

    Looks up the sender's tone profile and similar past replies, asks the
    model for a reply in that style, then normalizes the tone label with
    `TONE_OVERRIDES`. Any failure drops to the basic agent, and without one
    to a template reply.
    """

    name = "rag_reply_draft"
    system_prompt = (
        "You are an AI specialized in generating personalized email replies that match user "
        "communication styles using RAG and tone analysis."
    )

    def __init__(
        self,
        rag: RagService,
        tone_agent: Optional["ToneAnalysisAgent"] = None,
        basic_agent: Optional[ReplyDraftAgent] = None,
        model_factory: Optional[ChatModelFactory] = None,
        templates: Optional[dict[str, str]] = None,
        adaptation_strength: Optional[float] = None,
        tone_learning_enabled: Optional[bool] = None,
        fallback_tone: str = "professional",
    ):
        super().__init__(model_factory)
        self.rag = rag
        self.tone_agent = tone_agent
        self.basic_agent = basic_agent
        self.templates = TONE_ADAPTED_TEMPLATES if templates is None else templates
        self.adaptation_strength = (
            settings.tone_adaptation_strength if adaptation_strength is None else adaptation_strength
        )
        self.tone_learning_enabled = (
            settings.tone_learning_enabled if tone_learning_enabled is None else tone_learning_enabled
        )
        self.fallback_tone = fallback_tone

    async def generate_reply_draft(
        self,
        body: str,
        metadata: EmailMetadata,
        classification: Classification,
        summary: EmailSummary,
        tone_profile: Optional[UserToneProfile] = None,
    ) -> ReplyDraft:
        logger.info("Generating tone-adapted reply", extra={"subject": metadata.subject})

        if not self.tone_learning_enabled:
            return await self._basic_reply(body, metadata, classification, summary)

        try:
            profile = tone_profile or await self._fetch_tone_profile(metadata.sender)
            patterns = await self._similar_reply_patterns(metadata, classification)
            draft = await self._tone_adapted_reply(body, metadata, classification, summary, profile, patterns)
        except Exception as e:
            self._record_fallback(e, fallback_reason(e))
            return await self._basic_reply(body, metadata, classification, summary)

        self.rag.schedule(
            self.store_reply_pattern(body, metadata, classification, draft),
            label="reply-pattern",
        )
        return draft

    async def _basic_reply(
        self,
        body: str,
        metadata: EmailMetadata,
        classification: Classification,
        summary: EmailSummary,
    ) -> ReplyDraft:
        if self.basic_agent is not None:
            return await self.basic_agent.generate_reply_draft(body, metadata, classification, summary)

        template = render_template(
            select_base_template(classification, self.templates, DEFAULT_TONE_ADAPTED_TEMPLATE), metadata
        )
        return ReplyDraft(
            subject=f"Re: {metadata.subject}",
            body=f"Dear {metadata.sender},\n\n{template}\n\nBest regards,\nSupport Team",
            tone="professional",
            next_steps=["Review request", "Respond appropriately"],
        )

    async def _fetch_tone_profile(self, user_email: str) -> Optional[UserToneProfile]:
        if self.tone_agent is None:
            logger.debug("No tone agent configured, using default tone")
            return None
        try:
            return await self.tone_agent.get_user_tone_profile(user_email)
        except Exception as e:
            logger.warning("Tone profile lookup failed", extra={"error": str(e)})
            return None

    async def _similar_reply_patterns(
        self,
        metadata: EmailMetadata,
        classification: Classification,
    ) -> list[RetrievedDocument]:
        query = (
            f"Reply draft patterns for {classification.priority} {classification.category} "
            f"email: {metadata.subject}"
        )
        try:
            return await self.rag.get_context(
                query,
                namespace=REPLY_PATTERNS,
                top_k=3,
                min_score=0.6,
                filter={
                    "type": "reply_pattern",
                    "priority": classification.priority,
                    "category": classification.category,
                },
            )
        except Exception as e:
            logger.warning("Reply pattern lookup failed", extra={"error": str(e)})
            return []

    async def _tone_adapted_reply(
        self,
        body: str,
        metadata: EmailMetadata,
        classification: Classification,
        summary: EmailSummary,
        profile: Optional[UserToneProfile],
        patterns: list[RetrievedDocument],
    ) -> ReplyDraft:
        template = select_base_template(classification, self.templates, DEFAULT_TONE_ADAPTED_TEMPLATE)
        prompt = f"""Generate a personalized email reply that matches the user's communication style.

ORIGINAL EMAIL:
Subject: {metadata.subject}
From: {metadata.sender}
Content: {body}

ANALYSIS:
Priority: {classification.priority}
Category: {classification.category}
Problem: {summary.problem}
Context: {summary.context}
Ask: {summary.ask}

BASE TEMPLATE:
{template}

{build_tone_instructions(profile, self.adaptation_strength, self.fallback_tone)}

{build_pattern_context(patterns)}

PERSONALIZATION REQUIREMENTS:
1. Match the user's preferred tone and formality level
2. Use similar phrasing patterns when appropriate
3. Maintain appropriate urgency for {classification.priority} priority
4. Address their specific problem: {summary.problem}
5. Provide clear next steps

Respond in JSON format:
{{
  "subject": "Re: {metadata.subject}",
  "body": "complete personalized reply",
  "tone": "professional|friendly|urgent|formal|casual",
  "next_steps": ["action1", "action2", "action3"]
}}"""

        data = await self._complete(prompt, temperature=0.4, max_tokens=500)
        draft = ReplyDraft.model_validate(data)
        return apply_tone_adjustments(draft, profile)

    async def store_reply_pattern(
        self,
        body: str,
        metadata: EmailMetadata,
        classification: Classification,
        draft: ReplyDraft,
    ) -> None:
        document = {
            "id": f"reply-pattern-{uuid.uuid4().hex[:12]}",
            "content": f"""Reply Pattern for {classification.priority} {classification.category}:

Original Subject: {metadata.subject}
Original From: {metadata.sender}
Original Content: {body[:200]}...

Generated Reply:
Subject: {draft.subject}
Body: {draft.body}
Tone: {draft.tone}
Next Steps: {", ".join(draft.next_steps)}""",
            "metadata": {
                "type": "reply_pattern",
                "priority": classification.priority,
                "category": classification.category,
                "replyTone": draft.tone,
                "originalSubject": metadata.subject,
                "originalFrom": metadata.sender,
                "timestamp": utc_now().isoformat(),
            },
        }
        await self.rag.process_documents_for_rag([document], namespace=REPLY_PATTERNS)
