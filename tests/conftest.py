"""
Pytest configuration and fixtures for testing.
"""
import pytest
from unittest.mock import Mock, AsyncMock, MagicMock

import redis.asyncio as aioredis
from langchain_core.embeddings import DeterministicFakeEmbedding

from inbox_triage.config import settings
from inbox_triage.events import EventDispatcher
from inbox_triage.rag import RagService
from inbox_triage.state import (
    Classification,
    EmailData,
    EmailMetadata,
    EmailSummary,
    ReplyDraft,
    ToneFeatures,
    UserToneProfile,
)


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch):
    """Point the session store at a per-test sqlite file."""
    path = str(tmp_path / "sessions.db")
    monkeypatch.setattr(settings, "database_path", path)
    return path


@pytest.fixture
def mock_redis():
    """Mock async Redis client for testing."""
    mock = MagicMock(spec=aioredis.Redis)
    mock.exists = AsyncMock(return_value=0)
    mock.setex = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    mock.publish = AsyncMock(return_value=1)
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def model_factory():
    """
    Build a chat-model factory whose model answers with the given replies
    in order. Exceptions in the list are raised instead of answered.
    """
    def build(*replies):
        llm = Mock()
        llm.ainvoke = AsyncMock(side_effect=[
            reply if isinstance(reply, Exception) else Mock(content=reply)
            for reply in replies
        ])
        factory = Mock(return_value=llm)
        factory.llm = llm
        return factory
    return build


@pytest.fixture
def rag():
    """Retrieval service over an in-memory store with deterministic embeddings."""
    return RagService(embeddings=DeterministicFakeEmbedding(size=64))


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def sample_metadata() -> EmailMetadata:
    return EmailMetadata(
        subject="Question about my invoice",
        sender="Alice Smith <alice@example.org>",
        to="help@company.io",
    )


@pytest.fixture
def sample_email(sample_metadata) -> dict:
    """A plain support email that passes the pre-filter untouched."""
    return {
        "id": "email-001",
        "body": (
            "Hello, I was charged twice for my last invoice. "
            "Could you look into it and correct the amount? Thanks."
        ),
        "metadata": sample_metadata.model_dump(by_alias=True),
    }


@pytest.fixture
def sample_spam_email() -> dict:
    return {
        "id": "email-spam",
        "body": "Claim your prize today.",
        "metadata": {"subject": "Congratulations, you won the lottery", "from": "prizes@example.org"},
    }


@pytest.fixture
def sample_email_data(sample_email) -> EmailData:
    return EmailData.model_validate(sample_email)


@pytest.fixture
def sample_classification() -> Classification:
    return Classification(
        priority="high",
        category="question",
        confidence=0.88,
        reasoning="Billing question about a duplicate charge",
    )


@pytest.fixture
def sample_summary() -> EmailSummary:
    return EmailSummary(
        problem="Charged twice",
        context="Last invoice",
        ask="Correct the amount",
        summary="Customer reports a duplicate charge on the last invoice.",
    )


@pytest.fixture
def sample_reply() -> ReplyDraft:
    return ReplyDraft(
        subject="Re: Question about my invoice",
        body="Hi Alice, sorry about the double charge. We are refunding it now.",
        tone="friendly",
        next_steps=["Refund duplicate charge", "Confirm with customer"],
    )


@pytest.fixture
def casual_profile() -> UserToneProfile:
    return UserToneProfile(
        user_id="user-42",
        user_email="alice@example.org",
        communication_style=ToneFeatures(formality="casual", warmth="warm"),
        preferred_tones=["casual-warm-enthusiastic"],
        common_phrases=["cheers"],
        sample_count=12,
        confidence=0.8,
    )


@pytest.fixture
def test_config():
    """Test configuration overrides."""
    original_env = settings.environment
    original_log_level = settings.log_level

    settings.environment = "development"
    settings.log_level = "DEBUG"

    yield settings

    settings.environment = original_env
    settings.log_level = original_log_level
