import operator
from datetime import datetime, timezone
from typing import TypedDict, Annotated, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel


Priority = Literal["urgent", "high", "normal", "low"]
Category = Literal["bug_report", "feature_request", "question", "complaint", "praise", "other"]
TriageStatus = Literal["completed", "failed", "filtered", "duplicate"]

PRIORITIES: list[str] = list(get_args(Priority))
CATEGORIES: list[str] = list(get_args(Category))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- 1. The Input ---

class EmailMetadata(BaseModel):
    """Envelope fields of an inbound email. Accepts `from` / `userId` keys."""
    model_config = ConfigDict(populate_by_name=True)

    subject: str = ""
    sender: str = Field(default="", alias="from")
    to: str = ""
    timestamp: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    user_id: Optional[str] = Field(default=None, alias="userId")


class EmailData(BaseModel):
    id: str = Field(..., min_length=1)
    body: str
    metadata: EmailMetadata

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Email body cannot be empty or whitespace only")
        return v


# --- 2. Stage Outputs ---

class Classification(BaseModel):
    priority: Priority = "normal"
    category: Category = "other"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""

    @field_validator("priority", "category", mode="before")
    @classmethod
    def normalize_label(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace(" ", "_")
        return v


class EmailSummary(BaseModel):
    problem: str = ""
    context: str = ""
    ask: str = ""
    summary: str = ""


class ReplyDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str
    body: str
    tone: str = "professional"
    next_steps: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("next_steps", "nextSteps"),
    )


class RetrievedDocument(BaseModel):
    """A similarity-search hit, tagged with the query that produced it."""
    id: Optional[str] = None
    content: str
    metadata: dict = Field(default_factory=dict)
    score: float = 0.0
    namespace: Optional[str] = None
    purpose: Optional[str] = None
    query: Optional[str] = None


class ToneFeatures(BaseModel):
    """Communication-style attributes of a single email (or an aggregate)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    formality: str = "formal"
    warmth: str = "neutral"
    urgency: str = "normal"
    directness: str = "balanced"
    technical_level: str = "intermediate"
    emotional_tone: str = "neutral"
    response_length: str = "moderate"
    keywords: list[str] = Field(default_factory=list)
    phrases: list[str] = Field(default_factory=list)


class ResponsePatterns(BaseModel):
    """Style to use per priority band."""
    urgent: ToneFeatures = Field(default_factory=lambda: ToneFeatures(urgency="urgent"))
    normal: ToneFeatures = Field(default_factory=ToneFeatures)
    low: ToneFeatures = Field(default_factory=lambda: ToneFeatures(urgency="relaxed"))


class UserToneProfile(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    user_email: str
    communication_style: ToneFeatures = Field(default_factory=ToneFeatures)
    preferred_tones: list[str] = Field(default_factory=list)
    common_phrases: list[str] = Field(default_factory=list)
    response_patterns: ResponsePatterns = Field(default_factory=ResponsePatterns)
    last_updated: datetime = Field(default_factory=utc_now)
    sample_count: int = 0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class FilterResult(BaseModel):
    should_process: bool
    priority: Literal["high", "medium", "low", "ignore"]
    category: str
    reasoning: str
    confidence: float = Field(ge=0.0, le=1.0)


class TriageError(BaseModel):
    message: str
    stage: str
    timestamp: datetime = Field(default_factory=utc_now)


class TriageEvent(BaseModel):
    name: str
    payload: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class TriageResult(BaseModel):
    """What callers get back from a triage request."""
    session_id: str
    email_id: Optional[str] = None
    status: TriageStatus
    classification: Optional[Classification] = None
    summary: Optional[EmailSummary] = None
    reply_draft: Optional[ReplyDraft] = None
    filter_result: Optional[FilterResult] = None
    error: Optional[TriageError] = None
    processing_metadata: dict = Field(default_factory=dict)
    processed_at: datetime = Field(default_factory=utc_now)


# --- 3. Graph State ---

def merge_metadata(left: Optional[dict], right: Optional[dict]) -> dict:
    """Reducer: stages add telemetry keys without dropping earlier ones."""
    merged = dict(left or {})
    merged.update(right or {})
    return merged


class TriageState(TypedDict, total=False):
    # --- 1. The Input & Trace ---
    session_id: str
    raw_email: dict
    email_data: EmailData

    # --- 2. Stage Outputs (None until the owning stage completes) ---
    classification: Optional[Classification]
    summary: Optional[EmailSummary]
    reply_draft: Optional[ReplyDraft]

    # --- 3. Retrieval ---
    retrieved_context: List[RetrievedDocument]
    context_retrieval: dict
    user_tone_profile: Optional[UserToneProfile]

    # --- 4. Control & Telemetry ---
    error: Optional[TriageError]
    current_step: str
    progress: int
    result: TriageResult

    # --- 5. Accumulators (Reducers) ---
    # Both parallel analysis branches write these in the same superstep
    processing_metadata: Annotated[dict, merge_metadata]
    events: Annotated[List[TriageEvent], operator.add]
