"""
Unit tests for the LLM agents and their deterministic fallbacks.
"""
import json

import pytest
from unittest.mock import AsyncMock, Mock, patch

from inbox_triage.agents import (
    DEFAULT_REPLY_TEMPLATE,
    FALLBACK_CLASSIFICATION,
    FALLBACK_SUMMARY,
    ClassificationAgent,
    RagReplyDraftAgent,
    RagSummarizationAgent,
    ReplyDraftAgent,
    SummarizationAgent,
    apply_tone_adjustments,
    build_tone_instructions,
    classify_by_keywords,
    fallback_reason,
    fallback_reply,
    render_template,
    select_base_template,
    sender_name,
    summarize_by_sentences,
)
from inbox_triage.rag import REPLY_PATTERNS
from inbox_triage.state import (
    Classification,
    EmailMetadata,
    ReplyDraft,
    RetrievedDocument,
    ToneFeatures,
    UserToneProfile,
)


def prompt_of(factory) -> str:
    """Human message text of the first model call."""
    messages = factory.llm.ainvoke.await_args_list[0].args[0]
    return messages[1].content


class TestHelpers:
    """Tests for the shared agent helpers."""

    @pytest.mark.parametrize("sender,expected", [
        ("Jane Doe <jane@x.io>", "Jane Doe"),
        ('"Jane Doe" <jane@x.io>', "Jane Doe"),
        ("jane@x.io", "jane"),
        ("", "there"),
    ])
    def test_sender_name(self, sender, expected):
        """Test that display names are pulled out of From headers."""
        assert sender_name(sender) == expected

    def test_fallback_reason(self):
        """Test that exceptions map to fallback reason labels."""
        assert fallback_reason(ValueError("bad json")) == "parse"
        assert fallback_reason(json.JSONDecodeError("x", "", 0)) == "parse"
        assert fallback_reason(RuntimeError("timeout")) == "error"


class TestClassificationAgent:
    """Tests for ClassificationAgent."""

    async def test_parses_fenced_json(self, model_factory, sample_metadata):
        """Test that a fenced JSON answer is parsed into a classification."""
        factory = model_factory(
            '```json\n{"priority": "High", "category": "Feature Request", '
            '"reasoning": "asks for export", "confidence": 0.9}\n```'
        )
        agent = ClassificationAgent(model_factory=factory)

        result = await agent.classify_email("Please add CSV export", sample_metadata)

        assert result == Classification(
            priority="high", category="feature_request", confidence=0.9, reasoning="asks for export"
        )
        factory.assert_called_once_with(temperature=0.1, max_tokens=200)
        assert "Please add CSV export" in prompt_of(factory)

    async def test_upstream_error_returns_fallback(self, model_factory, sample_metadata):
        """Test that a model error yields the fallback classification."""
        agent = ClassificationAgent(model_factory=model_factory(RuntimeError("rate limited")))

        result = await agent.classify_email("body", sample_metadata)

        assert result == FALLBACK_CLASSIFICATION

    async def test_unparseable_response_returns_fallback(self, model_factory, sample_metadata):
        """Test that a non-JSON answer yields the fallback classification."""
        agent = ClassificationAgent(model_factory=model_factory("I think it's urgent"))

        result = await agent.classify_email("body", sample_metadata)

        assert result.priority == "normal"
        assert result.category == "other"
        assert result.confidence == 0.0

    async def test_unknown_label_returns_fallback(self, model_factory, sample_metadata):
        """Test that an unknown priority label yields the fallback classification."""
        agent = ClassificationAgent(model_factory=model_factory(
            '{"priority": "extreme", "category": "other", "reasoning": "", "confidence": 0.5}'
        ))

        result = await agent.classify_email("body", sample_metadata)

        assert result == FALLBACK_CLASSIFICATION

    @patch("inbox_triage.agents.get_chat_model")
    async def test_default_factory_is_resolved_at_call_time(self, mock_get_chat_model, sample_metadata):
        """Test that the chat model is looked up on each call."""
        llm = Mock()
        llm.ainvoke = AsyncMock(return_value=Mock(
            content='{"priority": "low", "category": "praise", "reasoning": "kind", "confidence": 0.7}'
        ))
        mock_get_chat_model.return_value = llm

        result = await ClassificationAgent().classify_email("Thanks!", sample_metadata)

        assert result.category == "praise"
        mock_get_chat_model.assert_called_once_with(temperature=0.1, max_tokens=200)


class TestKeywordClassifier:
    """Tests for classify_by_keywords."""

    def test_urgent_bug(self):
        """Test that urgent wording with a bug is an urgent bug report."""
        result = classify_by_keywords("bug in checkout", EmailMetadata(subject="Urgent"))

        assert result.priority == "urgent"
        assert result.category == "bug_report"
        assert result.confidence == 0.7
        assert result.reasoning == "Classified as urgent/bug_report due to keywords: urgent, bug"

    @pytest.mark.parametrize("subject, body", [
        ("URGENT: server down", "production is down, need immediate fix"),
        ("Checkout broken", "Critical bug: the pay button throws an error"),
    ])
    def test_outage_reports_are_urgent_bugs(self, subject, body):
        """Test that outage wording lands on urgent/bug_report."""
        result = classify_by_keywords(body, EmailMetadata(subject=subject))

        assert result.priority == "urgent"
        assert result.category == "bug_report"

    def test_praise_override(self):
        """Test that thanks override the category to praise."""
        result = classify_by_keywords("thank you, lovely product", EmailMetadata())

        assert result.priority == "normal"
        assert result.category == "praise"
        assert result.confidence == 0.5
        assert result.reasoning == "Classified as normal/praise based on content analysis"

    def test_promotional_is_low(self):
        """Test that promotional wording gets low priority."""
        result = classify_by_keywords("huge discount this weekend", EmailMetadata())

        assert result.priority == "low"

    def test_confidence_is_capped(self):
        """Test that keyword confidence never exceeds 0.95."""
        body = (
            "urgent bug fix needed, error in the important meeting notes, contact ops@example.org "
            "for details about the outage and the deadline we are facing this week"
        )
        result = classify_by_keywords(body, EmailMetadata())

        assert result.confidence == 0.95


class TestSummarizationAgents:
    """Tests for SummarizationAgent and RagSummarizationAgent."""

    SUMMARY_JSON = (
        '{"problem": "double charge", "context": "last invoice", '
        '"ask": "refund", "summary": "Customer was charged twice."}'
    )

    async def test_summarize(self, model_factory, sample_metadata):
        """Test that the model answer becomes the summary."""
        factory = model_factory(self.SUMMARY_JSON)
        agent = SummarizationAgent(model_factory=factory, max_summary_length=150)

        result = await agent.summarize_email("body", sample_metadata)

        assert result.problem == "double charge"
        assert "under 150 characters" in prompt_of(factory)
        factory.assert_called_once_with(temperature=0.2, max_tokens=300)

    async def test_summarize_fallback(self, model_factory, sample_metadata):
        """Test that a model error yields the fallback summary."""
        agent = SummarizationAgent(model_factory=model_factory("not json"))

        assert await agent.summarize_email("body", sample_metadata) == FALLBACK_SUMMARY

    async def test_rag_summary_includes_examples(self, model_factory, sample_metadata):
        """Test that retrieved summaries are added to the prompt."""
        rag = Mock()
        rag.get_context = AsyncMock(return_value=[
            RetrievedDocument(content="Past summary about refunds", score=0.9),
        ])
        factory = model_factory(self.SUMMARY_JSON)
        agent = RagSummarizationAgent(rag, model_factory=factory)

        result = await agent.summarize_email("body", sample_metadata)

        assert result.ask == "refund"
        prompt = prompt_of(factory)
        assert "RELEVANT EMAIL PATTERNS FROM HISTORY" in prompt
        assert "Past summary about refunds" in prompt
        factory.assert_called_once_with(temperature=0.2, max_tokens=400)

    async def test_rag_summary_falls_back_to_plain_prompt(self, model_factory, sample_metadata):
        """Test that a retrieval error still produces a summary."""
        rag = Mock()
        rag.get_context = AsyncMock(side_effect=ConnectionError("index down"))
        factory = model_factory(self.SUMMARY_JSON)
        agent = RagSummarizationAgent(rag, model_factory=factory)

        result = await agent.summarize_email("body", sample_metadata)

        assert result.summary == "Customer was charged twice."
        assert "RELEVANT EMAIL PATTERNS" not in prompt_of(factory)

    def test_sentence_summary(self, sample_metadata):
        """Test that the sentence summary splits problem, context and ask."""
        body = "My export fails. It started yesterday. Nothing changed on our side. Can you help?"

        result = summarize_by_sentences(body, sample_metadata)

        assert result.problem == "My export fails."
        assert result.context == "It started yesterday. Nothing changed on our side."
        assert result.ask == "Can you help?"
        assert result.summary == "My export fails. It started yesterday."

    def test_sentence_summary_clips(self, sample_metadata):
        """Test that long sentences are clipped with an ellipsis."""
        result = summarize_by_sentences("x" * 500, sample_metadata, max_length=50)

        assert len(result.problem) == 50
        assert result.problem.endswith("...")


class TestReplyTemplates:
    """Tests for reply template selection and rendering."""

    def test_priority_template_wins(self):
        """Test that a priority template is preferred."""
        template = select_base_template(Classification(priority="urgent", category="question"))
        assert "urgent" in template

    def test_category_used_when_priority_missing(self):
        """Test that the category template is used when priority has none."""
        templates = {"question": "Q", "normal": "N"}
        assert select_base_template(Classification(priority="high", category="question"), templates) == "Q"

    def test_normal_template_when_neither_matches(self):
        """Test that the normal template is used when priority and category have none."""
        templates = {"normal": "N"}
        assert select_base_template(Classification(priority="high", category="praise"), templates) == "N"

    def test_default_when_table_empty(self):
        """Test that an empty table falls back to the built-in template."""
        assert select_base_template(Classification(), {}) == DEFAULT_REPLY_TEMPLATE

    def test_render_sender_name(self):
        """Test that the sender name placeholder is filled in."""
        text = render_template("Hi {{sender_name}},", EmailMetadata(sender="Bob Lee <bob@x.io>"))
        assert text == "Hi Bob Lee,"


class TestToneAdjustments:
    """Tests for tone adjustments and instructions."""

    def test_casual_warm_is_friendly(self, casual_profile, sample_reply):
        """Test that a casual, warm profile makes the reply friendly."""
        draft = sample_reply.model_copy(update={"tone": "professional"})

        assert apply_tone_adjustments(draft, casual_profile).tone == "friendly"

    def test_formal_neutral_is_professional(self, sample_reply):
        """Test that a formal, neutral profile makes the reply professional."""
        profile = UserToneProfile(user_id="u", user_email="e", confidence=0.9)

        assert apply_tone_adjustments(sample_reply, profile).tone == "professional"

    def test_urgent_style(self, sample_reply):
        """Test that an urgent profile adds an urgency cue."""
        profile = UserToneProfile(
            user_id="u", user_email="e", confidence=0.9,
            communication_style=ToneFeatures(formality="casual", warmth="cold", urgency="urgent"),
        )

        assert apply_tone_adjustments(sample_reply, profile).tone == "urgent"

    def test_low_confidence_profile_is_ignored(self, casual_profile, sample_reply):
        """Test that a low-confidence profile leaves the draft untouched."""
        weak = casual_profile.model_copy(update={"confidence": 0.4})
        draft = sample_reply.model_copy(update={"tone": "formal"})

        assert apply_tone_adjustments(draft, weak).tone == "formal"
        assert apply_tone_adjustments(draft, None).tone == "formal"

    def test_instructions_without_profile(self):
        """Test that no profile gives no tone instructions."""
        assert build_tone_instructions(None, 0.7) == "TONE GUIDELINES: Use professional tone as default."

    def test_instructions_with_profile(self, casual_profile):
        """Test that profile attributes appear in the tone instructions."""
        text = build_tone_instructions(casual_profile, 0.7)

        assert "Confidence: 0.80" in text
        assert "ADAPTATION STRENGTH: 70%" in text
        assert "cheers" in text


class TestReplyDraftAgent:
    """Tests for ReplyDraftAgent."""

    async def test_generate(self, model_factory, sample_metadata, sample_classification, sample_summary):
        """Test that the basic agent returns the model's draft."""
        factory = model_factory(
            '{"subject": "Re: Question about my invoice", "body": "Hi Alice", '
            '"tone": "friendly", "nextSteps": ["Refund"]}'
        )
        agent = ReplyDraftAgent(model_factory=factory)

        draft = await agent.generate_reply_draft("body", sample_metadata, sample_classification, sample_summary)

        assert draft.next_steps == ["Refund"]
        assert draft.tone == "friendly"
        factory.assert_called_once_with(temperature=0.3, max_tokens=400)

    async def test_fallback(self, model_factory, sample_metadata, sample_classification, sample_summary):
        """Test that a model error yields the template reply."""
        agent = ReplyDraftAgent(model_factory=model_factory(TimeoutError()))

        draft = await agent.generate_reply_draft("body", sample_metadata, sample_classification, sample_summary)

        assert draft == fallback_reply(sample_metadata)
        assert draft.next_steps == ["Review request", "Respond within 24 hours"]


class TestRagReplyDraftAgent:
    """Tests for the tone-adapted reply ladder."""

    REPLY_JSON = (
        '{"subject": "Re: Question about my invoice", "body": "Hey Alice!", '
        '"tone": "formal", "next_steps": ["Refund", "Follow up"]}'
    )

    async def test_tone_adapted_reply(
        self, rag, model_factory, casual_profile, sample_metadata, sample_classification, sample_summary
    ):
        """Test that a confident profile adapts the generated reply."""
        factory = model_factory(self.REPLY_JSON)
        agent = RagReplyDraftAgent(rag, model_factory=factory, tone_learning_enabled=True)

        draft = await agent.generate_reply_draft(
            "body", sample_metadata, sample_classification, sample_summary, tone_profile=casual_profile
        )
        await rag.drain()

        assert draft.tone == "friendly"
        assert "USER TONE PROFILE" in prompt_of(factory)
        factory.assert_called_once_with(temperature=0.4, max_tokens=500)

        stored = list(rag.get_store().store.values())
        assert len(stored) == 1
        assert stored[0]["metadata"]["type"] == "reply_pattern"
        assert stored[0]["metadata"]["namespace"] == REPLY_PATTERNS
        assert stored[0]["metadata"]["replyTone"] == "friendly"

    async def test_profile_fetched_when_not_given(
        self, rag, model_factory, casual_profile, sample_metadata, sample_classification, sample_summary
    ):
        """Test that the profile is looked up when the caller has none."""
        tone_agent = Mock()
        tone_agent.get_user_tone_profile = AsyncMock(return_value=casual_profile)
        agent = RagReplyDraftAgent(
            rag, tone_agent=tone_agent, model_factory=model_factory(self.REPLY_JSON), tone_learning_enabled=True
        )

        draft = await agent.generate_reply_draft("body", sample_metadata, sample_classification, sample_summary)
        await rag.drain()

        tone_agent.get_user_tone_profile.assert_awaited_once_with(sample_metadata.sender)
        assert draft.tone == "friendly"

    async def test_failure_uses_basic_agent(
        self, rag, model_factory, sample_metadata, sample_classification, sample_summary, sample_reply
    ):
        """Test that a failed tone-adapted draft falls back to the basic agent."""
        basic = Mock()
        basic.generate_reply_draft = AsyncMock(return_value=sample_reply)
        agent = RagReplyDraftAgent(
            rag, basic_agent=basic, model_factory=model_factory("garbage"), tone_learning_enabled=True
        )

        draft = await agent.generate_reply_draft("body", sample_metadata, sample_classification, sample_summary)

        assert draft == sample_reply
        basic.generate_reply_draft.assert_awaited_once()
        assert rag.pending == 0

    async def test_failure_without_basic_agent_uses_template(
        self, rag, model_factory, sample_metadata, sample_classification, sample_summary
    ):
        """Test that the template reply is the last resort."""
        agent = RagReplyDraftAgent(rag, model_factory=model_factory(RuntimeError()), tone_learning_enabled=True)

        draft = await agent.generate_reply_draft("body", sample_metadata, sample_classification, sample_summary)

        assert draft.body.startswith(f"Dear {sample_metadata.sender},\n\n")
        assert draft.body.endswith("\n\nBest regards,\nSupport Team")
        assert "respond promptly" in draft.body
        assert draft.tone == "professional"
        assert draft.next_steps == ["Review request", "Respond appropriately"]

    async def test_disabled_tone_learning_skips_model(
        self, rag, model_factory, sample_metadata, sample_classification, sample_summary
    ):
        """Test that disabled tone learning goes straight to the basic agent."""
        factory = model_factory(self.REPLY_JSON)
        agent = RagReplyDraftAgent(rag, model_factory=factory, tone_learning_enabled=False)

        draft = await agent.generate_reply_draft("body", sample_metadata, sample_classification, sample_summary)

        factory.assert_not_called()
        assert isinstance(draft, ReplyDraft)
        assert draft.next_steps == ["Review request", "Respond appropriately"]
