"""
Tests for tone-profile learning and storage.
"""
import json

import pytest
from unittest.mock import AsyncMock, Mock

from inbox_triage.rag import USER_TONE_PROFILES
from inbox_triage.state import EmailMetadata, RetrievedDocument, ToneFeatures, UserToneProfile
from inbox_triage.tone import (
    ToneAnalysisAgent,
    aggregate_tone_features,
    build_response_patterns,
    common_phrases,
    create_default_tone_profile,
    majority,
    preferred_tones,
    profile_confidence,
    reconstruct_tone_profile,
    tone_profile_content,
)


def tone_json(**overrides) -> str:
    data = {
        "formality": "casual",
        "warmth": "warm",
        "urgency": "normal",
        "directness": "direct",
        "technicalLevel": "advanced",
        "emotionalTone": "enthusiastic",
        "responseLength": "brief",
        "keywords": ["ship", "quick"],
        "phrases": ["cheers", "talk soon"],
    }
    data.update(overrides)
    return json.dumps(data)


class TestAggregation:
    """Tests for the pure aggregation helpers."""

    def test_majority_vote(self):
        """Test that the most common value wins."""
        assert majority(["casual", "formal", "casual"]) == "casual"

    def test_majority_tie_goes_to_first_seen(self):
        """Test that ties go to the value seen first."""
        assert majority(["warm", "neutral", "neutral", "warm"]) == "warm"

    def test_majority_default(self):
        """Test that no values gives the default."""
        assert majority([]) == "neutral"
        assert majority(["", ""], default="formal") == "formal"

    def test_aggregate_features(self):
        """Test that features are aggregated attribute by attribute."""
        analyses = [
            ToneFeatures(formality="casual", keywords=["a", "b"], phrases=["p1"]),
            ToneFeatures(formality="casual", keywords=["b", "c"], phrases=["p1", "p2"]),
            ToneFeatures(formality="formal", warmth="warm"),
        ]

        style = aggregate_tone_features(analyses)

        assert style.formality == "casual"
        assert style.warmth == "neutral"
        assert style.keywords == ["a", "b", "c"]
        assert style.phrases == ["p1", "p2"]

    def test_aggregate_caps_keywords_and_phrases(self):
        """Test that aggregated keywords and phrases are capped."""
        analyses = [
            ToneFeatures(keywords=[f"k{i}" for i in range(20)], phrases=[f"p{i}" for i in range(20)])
        ]

        style = aggregate_tone_features(analyses)

        assert len(style.keywords) == 15
        assert len(style.phrases) == 10

    def test_common_phrases_by_frequency(self):
        """Test that common phrases are ordered by frequency."""
        analyses = [
            ToneFeatures(phrases=["thanks", "cheers"]),
            ToneFeatures(phrases=["cheers"]),
        ]

        assert common_phrases(analyses) == ["cheers", "thanks"]

    def test_preferred_tones_unique(self):
        """Test that preferred tones are unique."""
        analyses = [
            ToneFeatures(formality="casual", warmth="warm", emotional_tone="neutral"),
            ToneFeatures(formality="casual", warmth="warm", emotional_tone="neutral"),
            ToneFeatures(),
        ]

        assert preferred_tones(analyses) == ["casual-warm-neutral", "formal-neutral-neutral"]

    def test_profile_confidence(self):
        """Test that confidence grows with samples and consistency."""
        assert profile_confidence(5, [ToneFeatures(), ToneFeatures()]) == pytest.approx(0.4)
        assert profile_confidence(20, [ToneFeatures()]) == pytest.approx(0.5)
        assert profile_confidence(30, [ToneFeatures(), ToneFeatures()]) == pytest.approx(0.8)

    def test_response_patterns(self):
        """Test that response patterns follow the style."""
        patterns = build_response_patterns(ToneFeatures(formality="casual"))

        assert patterns.urgent.urgency == "urgent"
        assert patterns.low.urgency == "relaxed"
        assert patterns.normal.formality == "casual"

    def test_default_profile(self):
        """Test the default low-confidence profile."""
        profile = create_default_tone_profile("user-1", "a@b.c")

        assert profile.confidence == 0.3
        assert profile.sample_count == 0
        assert profile.preferred_tones == ["formal-neutral-neutral"]
        assert profile.communication_style == ToneFeatures()


class TestProfileDocuments:
    """Tests for the stored profile format."""

    def stored(self, profile: UserToneProfile) -> RetrievedDocument:
        style = profile.communication_style
        return RetrievedDocument(
            id=f"tone-profile-{profile.user_id}",
            content=tone_profile_content(profile),
            namespace=USER_TONE_PROFILES,
            score=0.95,
            metadata={
                "type": "user_tone_profile",
                "userId": profile.user_id,
                "userEmail": profile.user_email,
                "sampleCount": profile.sample_count,
                "confidence": profile.confidence,
                "lastUpdated": profile.last_updated.isoformat(),
                "formality": style.formality,
                "warmth": style.warmth,
            },
        )

    def test_reconstruct(self, casual_profile):
        """Test that a stored profile document is rebuilt."""
        casual_profile.communication_style.keywords = ["ship", "deploy"]
        casual_profile.communication_style.phrases = ["talk soon"]

        profile = reconstruct_tone_profile(self.stored(casual_profile))

        assert profile.user_id == "user-42"
        assert profile.user_email == "alice@example.org"
        assert profile.communication_style.formality == "casual"
        assert profile.communication_style.warmth == "warm"
        assert profile.communication_style.directness == "balanced"
        assert profile.communication_style.keywords == ["ship", "deploy"]
        assert profile.communication_style.phrases == ["talk soon"]
        assert profile.preferred_tones == ["casual-warm-enthusiastic"]
        assert profile.common_phrases == ["cheers"]
        assert profile.sample_count == 12
        assert profile.confidence == 0.8

    def test_missing_identity_is_rejected(self):
        """Test that a document without user identity is rejected."""
        document = RetrievedDocument(content="User Tone Profile: x", metadata={"userId": "u1"})

        assert reconstruct_tone_profile(document) is None

    def test_malformed_metadata_is_rejected(self, casual_profile):
        """Test that malformed metadata is rejected."""
        document = self.stored(casual_profile)
        document.metadata["confidence"] = 7

        assert reconstruct_tone_profile(document) is None


class TestToneAnalysisAgent:
    """Tests for ToneAnalysisAgent."""

    async def test_extract_features(self, rag, model_factory, sample_metadata):
        """Test that the model answer becomes tone features."""
        factory = model_factory(tone_json())
        agent = ToneAnalysisAgent(rag, model_factory=factory)

        features = await agent.extract_tone_features("Cheers, talk soon!", sample_metadata)

        assert features.technical_level == "advanced"
        assert features.emotional_tone == "enthusiastic"
        assert features.phrases == ["cheers", "talk soon"]
        factory.assert_called_once_with(temperature=0.2, max_tokens=400)

    async def test_extract_features_fallback(self, rag, model_factory, sample_metadata):
        """Test that a model error gives neutral features."""
        agent = ToneAnalysisAgent(rag, model_factory=model_factory(RuntimeError()))

        assert await agent.extract_tone_features("hi", sample_metadata) == ToneFeatures()

    async def test_insufficient_samples_returns_default(self, rag, model_factory, sample_metadata):
        """Test that too few samples give the default profile."""
        factory = model_factory()
        agent = ToneAnalysisAgent(rag, model_factory=factory, min_samples=3)

        profile = await agent.analyze_user_tone("user-1", "a@b.c", [("hi", sample_metadata)] * 2)

        assert profile == create_default_tone_profile("user-1", "a@b.c").model_copy(
            update={"last_updated": profile.last_updated}
        )
        factory.assert_not_called()

    async def test_analyze_user_tone(self, rag, model_factory, sample_metadata):
        """Test that a history is analysed into a profile."""
        factory = model_factory(
            tone_json(),
            tone_json(),
            tone_json(formality="formal", warmth="neutral", phrases=["regards"]),
        )
        agent = ToneAnalysisAgent(rag, model_factory=factory, min_samples=3)
        history = [("email one", sample_metadata), ("email two", sample_metadata), ("email three", sample_metadata)]

        profile = await agent.analyze_user_tone("user-1", "a@b.c", history)

        assert profile.communication_style.formality == "casual"
        assert profile.communication_style.warmth == "warm"
        assert profile.sample_count == 3
        assert profile.confidence == pytest.approx(0.24)
        assert profile.common_phrases[0] == "cheers"
        assert profile.preferred_tones == ["casual-warm-enthusiastic", "formal-neutral-enthusiastic"]

    async def test_analysis_is_capped_at_max_samples(self, rag, model_factory, sample_metadata):
        """Test that analysis stops at the sample cap."""
        factory = model_factory(tone_json(), tone_json())
        agent = ToneAnalysisAgent(rag, model_factory=factory, min_samples=1, max_samples=2)

        profile = await agent.analyze_user_tone("user-1", "a@b.c", [("hi", sample_metadata)] * 5)

        assert factory.llm.ainvoke.await_count == 2
        assert profile.sample_count == 5

    async def test_store_replaces_previous_profile(self, rag, casual_profile):
        """Test that storing a profile replaces the previous one."""
        agent = ToneAnalysisAgent(rag)

        await agent.store_tone_profile(casual_profile)
        await agent.store_tone_profile(casual_profile.model_copy(update={"sample_count": 20}))

        stored = list(rag.get_store().store.values())
        assert len(stored) == 1
        assert stored[0]["id"] == "tone-profile-user-42"
        assert stored[0]["metadata"]["sampleCount"] == 20
        assert stored[0]["metadata"]["formality"] == "casual"
        assert stored[0]["metadata"]["namespace"] == USER_TONE_PROFILES

    async def test_store_failure_is_logged(self, casual_profile):
        """Test that a store failure is logged, not raised."""
        rag = Mock()
        rag.process_documents_for_rag = AsyncMock(side_effect=ConnectionError("down"))

        await ToneAnalysisAgent(rag).store_tone_profile(casual_profile)

    async def test_get_user_tone_profile(self, casual_profile):
        """Test that a stored profile is found by email."""
        rag = Mock()
        rag.get_context = AsyncMock(return_value=[
            RetrievedDocument(
                content=tone_profile_content(casual_profile),
                metadata={"userId": "user-42", "userEmail": "alice@example.org", "formality": "casual"},
                score=0.9,
            )
        ])

        profile = await ToneAnalysisAgent(rag).get_user_tone_profile("alice@example.org")

        assert profile.user_id == "user-42"
        kwargs = rag.get_context.await_args.kwargs
        assert kwargs["namespace"] == USER_TONE_PROFILES
        assert kwargs["top_k"] == 1
        assert kwargs["min_score"] == 0.8
        assert kwargs["filter"] == {"type": "user_tone_profile", "userEmail": "alice@example.org"}

    async def test_get_user_tone_profile_not_found(self):
        """Test that an unknown user has no profile."""
        rag = Mock()
        rag.get_context = AsyncMock(return_value=[])

        assert await ToneAnalysisAgent(rag).get_user_tone_profile("nobody@example.org") is None

    async def test_get_user_tone_profile_lookup_error(self):
        """Test that a lookup error returns no profile."""
        rag = Mock()
        rag.get_context = AsyncMock(side_effect=ConnectionError("down"))

        assert await ToneAnalysisAgent(rag).get_user_tone_profile("a@b.c") is None

    def test_email_metadata_accepts_wire_keys(self):
        """Test that metadata accepts camelCase wire keys."""
        metadata = EmailMetadata.model_validate({"from": "a@b.c", "userId": "u1"})

        assert metadata.sender == "a@b.c"
        assert metadata.user_id == "u1"
