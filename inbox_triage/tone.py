"""
Tone-profile learning: infer a user's communication style from their past
emails and keep one profile per user in the vector index.
"""
import asyncio
from collections import Counter
from typing import Optional

from inbox_triage.agents import BaseAgent, ChatModelFactory, fallback_reason
from inbox_triage.config import settings
from inbox_triage.logger import get_logger
from inbox_triage.rag import RagService, USER_TONE_PROFILES
from inbox_triage.state import (
    EmailMetadata,
    ResponsePatterns,
    RetrievedDocument,
    ToneFeatures,
    UserToneProfile,
    utc_now,
)

logger = get_logger(__name__)

CATEGORICAL_FIELDS = (
    "formality",
    "warmth",
    "urgency",
    "directness",
    "technical_level",
    "emotional_tone",
    "response_length",
)
MAX_KEYWORDS = 15
MAX_PHRASES = 10
MAX_COMMON_PHRASES = 8
MAX_PREFERRED_TONES = 5


# --- Aggregation (pure) ---

def majority(values: list[str], default: str = "neutral") -> str:
    """Most frequent value; ties go to whichever appeared first."""
    counts = Counter(value for value in values if value)
    if not counts:
        return default
    return counts.most_common(1)[0][0]


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def aggregate_tone_features(analyses: list[ToneFeatures]) -> ToneFeatures:
    """Majority vote per categorical field, capped unions for keywords/phrases."""
    voted = {
        field: majority([getattr(analysis, field) for analysis in analyses])
        for field in CATEGORICAL_FIELDS
    }
    keywords = _unique([kw for analysis in analyses for kw in analysis.keywords])
    phrases = _unique([ph for analysis in analyses for ph in analysis.phrases])
    return ToneFeatures(
        **voted,
        keywords=keywords[:MAX_KEYWORDS],
        phrases=phrases[:MAX_PHRASES],
    )


def build_response_patterns(style: ToneFeatures) -> ResponsePatterns:
    return ResponsePatterns(
        urgent=style.model_copy(update={"urgency": "urgent"}),
        normal=style.model_copy(),
        low=style.model_copy(update={"urgency": "relaxed"}),
    )


def common_phrases(analyses: list[ToneFeatures]) -> list[str]:
    counts = Counter(phrase for analysis in analyses for phrase in analysis.phrases)
    return [phrase for phrase, _ in counts.most_common(MAX_COMMON_PHRASES)]


def preferred_tones(analyses: list[ToneFeatures]) -> list[str]:
    tones = [f"{a.formality}-{a.warmth}-{a.emotional_tone}" for a in analyses]
    return _unique(tones)[:MAX_PREFERRED_TONES]


def profile_confidence(sample_count: int, analyses: list[ToneFeatures]) -> float:
    """Saturates at 10 samples; a single analysis caps consistency at 0.5."""
    sample_factor = min(sample_count / 10, 1.0)
    consistency = 0.8 if len(analyses) > 1 else 0.5
    return sample_factor * consistency


def create_default_tone_profile(user_id: str, user_email: str) -> UserToneProfile:
    return UserToneProfile(
        user_id=user_id,
        user_email=user_email,
        communication_style=ToneFeatures(),
        preferred_tones=["formal-neutral-neutral"],
        common_phrases=[],
        response_patterns=build_response_patterns(ToneFeatures()),
        sample_count=0,
        confidence=0.3,
    )


# --- Storage format ---

def tone_profile_content(profile: UserToneProfile) -> str:
    style = profile.communication_style
    return f"""User Tone Profile: {profile.user_email}

Communication Style:
- Formality: {style.formality}
- Warmth: {style.warmth}
- Urgency: {style.urgency}
- Directness: {style.directness}
- Technical Level: {style.technical_level}
- Emotional Tone: {style.emotional_tone}
- Response Length: {style.response_length}

Preferred Tones: {", ".join(profile.preferred_tones)}
Common Phrases: {", ".join(profile.common_phrases)}
Signature Phrases: {", ".join(style.phrases)}

Keywords: {", ".join(style.keywords)}

Sample Count: {profile.sample_count}
Confidence: {profile.confidence}
Last Updated: {profile.last_updated.isoformat()}"""


def _content_list(content: str, label: str) -> list[str]:
    prefix = f"{label}:"
    for line in content.splitlines():
        if line.startswith(prefix):
            return [item.strip() for item in line[len(prefix):].split(",") if item.strip()]
    return []


def reconstruct_tone_profile(document: RetrievedDocument) -> Optional[UserToneProfile]:
    """Rebuild a profile from a stored `user-tone-profiles` document."""
    metadata = document.metadata or {}
    if not metadata.get("userId") or not metadata.get("userEmail"):
        logger.warning("Insufficient metadata to reconstruct tone profile", extra={"document_id": document.id})
        return None

    defaults = ToneFeatures()
    style = ToneFeatures(
        **{field: metadata.get(field) or getattr(defaults, field) for field in CATEGORICAL_FIELDS},
        keywords=_content_list(document.content, "Keywords"),
        phrases=_content_list(document.content, "Signature Phrases"),
    )
    try:
        return UserToneProfile(
            user_id=metadata["userId"],
            user_email=metadata["userEmail"],
            communication_style=style,
            preferred_tones=_content_list(document.content, "Preferred Tones"),
            common_phrases=_content_list(document.content, "Common Phrases"),
            response_patterns=build_response_patterns(style),
            last_updated=metadata.get("lastUpdated") or utc_now(),
            sample_count=metadata.get("sampleCount") or 1,
            confidence=metadata.get("confidence", 0.5),
        )
    except ValueError as e:
        logger.warning("Stored tone profile is malformed", extra={"document_id": document.id, "error": str(e)})
        return None


# --- Agent ---

class ToneAnalysisAgent(BaseAgent):
    name = "tone_analysis"
    system_prompt = (
        "You are an AI specialized in analyzing communication tone and style patterns from "
        "emails. Extract detailed tone characteristics to build personalized user profiles."
    )

    def __init__(
        self,
        rag: RagService,
        model_factory: Optional[ChatModelFactory] = None,
        min_samples: Optional[int] = None,
        max_samples: Optional[int] = None,
    ):
        super().__init__(model_factory)
        self.rag = rag
        self.min_samples = min_samples or settings.tone_min_samples
        self.max_samples = max_samples or settings.tone_max_samples

    async def extract_tone_features(self, content: str, metadata: EmailMetadata) -> ToneFeatures:
        prompt = f"""Analyze the communication tone and style of this email:

Subject: {metadata.subject or "No subject"}
From: {metadata.sender or "Unknown"}
Content: {content}

Extract these tone characteristics:

1. **Formality**: very_formal, formal, casual, very_casual
2. **Warmth**: cold, neutral, warm, very_warm
3. **Urgency**: relaxed, normal, urgent, critical
4. **Directness**: indirect, balanced, direct, very_direct
5. **Technical Level**: basic, intermediate, advanced, expert
6. **Emotional Tone**: neutral, empathetic, enthusiastic, concerned
7. **Response Length Preference**: brief, moderate, detailed, comprehensive
8. **Keywords**: Extract 5-10 characteristic words/phrases they use
9. **Signature Phrases**: Extract 3-5 unique phrases or expressions

Respond in JSON format:
{{
  "formality": "formal|casual|etc",
  "warmth": "neutral|warm|etc",
  "urgency": "normal|urgent|etc",
  "directness": "balanced|direct|etc",
  "technicalLevel": "intermediate|advanced|etc",
  "emotionalTone": "neutral|empathetic|etc",
  "responseLength": "moderate|detailed|etc",
  "keywords": ["word1", "word2", "word3"],
  "phrases": ["phrase1", "phrase2", "phrase3"]
}}"""

        try:
            data = await self._complete(prompt, temperature=0.2, max_tokens=400)
            return ToneFeatures.model_validate(data)
        except Exception as e:
            self._record_fallback(e, fallback_reason(e))
            return ToneFeatures()

    async def analyze_user_tone(
        self,
        user_id: str,
        user_email: str,
        history: list[tuple[str, EmailMetadata]],
    ) -> UserToneProfile:
        """
        Build a profile from (content, metadata) pairs of a user's emails.

        Returns the default low-confidence profile below `min_samples`.
        """
        if len(history) < self.min_samples:
            logger.warning(
                "Insufficient email samples for tone profile",
                extra={"user_email": user_email, "samples": len(history)}
            )
            return create_default_tone_profile(user_id, user_email)

        analyses = await asyncio.gather(*(
            self.extract_tone_features(content, metadata)
            for content, metadata in history[: self.max_samples]
        ))
        analyses = list(analyses)
        style = aggregate_tone_features(analyses)

        profile = UserToneProfile(
            user_id=user_id,
            user_email=user_email,
            communication_style=style,
            preferred_tones=preferred_tones(analyses),
            common_phrases=common_phrases(analyses),
            response_patterns=build_response_patterns(style),
            sample_count=len(history),
            confidence=profile_confidence(len(history), analyses),
        )
        logger.info(
            "Tone profile created",
            extra={"user_email": user_email, "confidence": round(profile.confidence, 2)}
        )
        return profile

    async def store_tone_profile(self, profile: UserToneProfile) -> None:
        """Replace the user's stored profile. Failures are logged, not raised."""
        style = profile.communication_style
        document = {
            "id": f"tone-profile-{profile.user_id}",
            "content": tone_profile_content(profile),
            "metadata": {
                "type": "user_tone_profile",
                "userId": profile.user_id,
                "userEmail": profile.user_email,
                "sampleCount": profile.sample_count,
                "confidence": profile.confidence,
                "lastUpdated": profile.last_updated.isoformat(),
                **{field: getattr(style, field) for field in CATEGORICAL_FIELDS},
            },
        }
        try:
            await self.rag.process_documents_for_rag([document], namespace=USER_TONE_PROFILES)
            logger.info("Tone profile stored", extra={"user_email": profile.user_email})
        except Exception as e:
            logger.error("Failed to store tone profile", extra={"user_email": profile.user_email, "error": str(e)})

    async def get_user_tone_profile(self, user_email: str) -> Optional[UserToneProfile]:
        try:
            hits = await self.rag.get_context(
                f"User tone profile for email: {user_email}",
                namespace=USER_TONE_PROFILES,
                top_k=1,
                min_score=0.8,
                filter={"type": "user_tone_profile", "userEmail": user_email},
            )
        except Exception as e:
            logger.error("Failed to retrieve tone profile", extra={"user_email": user_email, "error": str(e)})
            return None

        if not hits:
            logger.info("No tone profile found", extra={"user_email": user_email})
            return None
        return reconstruct_tone_profile(hits[0])
