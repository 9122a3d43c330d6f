"""
LLM and embedding factories plus response-parsing helpers shared by the agents.
"""
import json
import re
from functools import lru_cache
from dotenv import load_dotenv, find_dotenv

# LLM Providers
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings
from langchain_groq import ChatGroq
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage

from inbox_triage.config import settings
from inbox_triage.logger import get_logger

logger = get_logger(__name__)

load_dotenv(find_dotenv())

# Fenced JSON first, then any fence, then the outermost brace span
JSON_PATTERNS = (
    re.compile(r"```json\n([\s\S]*?)\n```"),
    re.compile(r"```\n([\s\S]*?)\n```"),
    re.compile(r"(\{[\s\S]*\})"),
)


@lru_cache(maxsize=16)
def get_chat_model(temperature: float = 0.1, max_tokens: int = 400) -> BaseChatModel:
    """Factory function to initialize the selected LLM for one call profile."""
    provider = settings.model_provider

    if provider == "groq":
        if not settings.groq_api_key:
            logger.error("GROQ_API_KEY is missing")
            raise ValueError("GROQ_API_KEY is required")

        logger.info("Connecting to Groq", extra={"temperature": temperature, "max_tokens": max_tokens})
        return ChatGroq(
            model=settings.groq_model,
            api_key=settings.groq_api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=settings.model_max_retries,
            timeout=settings.model_timeout
        )

    elif provider == "gemini":
        if not settings.google_api_key:
            logger.error("GOOGLE_API_KEY is missing")
            raise ValueError("GOOGLE_API_KEY is required")

        logger.info("Connecting to Google Gemini", extra={"temperature": temperature, "max_tokens": max_tokens})
        return ChatGoogleGenerativeAI(
            model=settings.gemini_model,
            google_api_key=settings.google_api_key,
            temperature=temperature,
            max_output_tokens=max_tokens,
            max_retries=settings.model_max_retries,
            timeout=settings.model_timeout
        )

    raise ValueError(f"Unknown provider: {provider}")


@lru_cache(maxsize=1)
def get_embeddings() -> GoogleGenerativeAIEmbeddings:
    """Embedding model backing the vector index."""
    if not settings.google_api_key:
        logger.error("GOOGLE_API_KEY is missing")
        raise ValueError("GOOGLE_API_KEY is required for embeddings")

    return GoogleGenerativeAIEmbeddings(
        model=settings.embedding_model,
        google_api_key=settings.google_api_key
    )


def message_text(message: BaseMessage) -> str:
    """Flatten a chat response into plain text (Gemini may return content parts)."""
    content = message.content
    if isinstance(content, str):
        return content

    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def extract_json(text: str) -> dict:
    """
    Pull a JSON object out of a model response.

    Raises:
        ValueError: when no JSON object can be parsed
    """
    candidate = text.strip()
    for pattern in JSON_PATTERNS:
        match = pattern.search(text)
        if match:
            candidate = match.group(1)
            break

    parsed = json.loads(candidate)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed
