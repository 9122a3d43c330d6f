"""
Pre-triage filter: cheap regex heuristics deciding whether an email is worth
running through the LLM pipeline at all.

Filters run in a fixed order (spam, notification, meeting, urgent,
promotional) and the first conclusive result wins.
"""
import re
from enum import Enum
from typing import Callable, Optional

from inbox_triage.logger import get_logger
from inbox_triage.metrics import prefilter_decisions_total
from inbox_triage.state import FilterResult

logger = get_logger(__name__)


class EmailCategory(str, Enum):
    URGENT_BUSINESS = "urgent_business"
    MEETING_RELATED = "meeting_related"
    FOLLOW_UP = "follow_up"
    CUSTOMER_SUPPORT = "customer_support"
    GITHUB_NOTIFICATION = "github_notification"
    SLACK_NOTIFICATION = "slack_notification"
    JIRA_NOTIFICATION = "jira_notification"
    PROMOTIONAL = "promotional"
    NEWSLETTER = "newsletter"
    AUTOMATED_SYSTEM = "automated_system"
    SPAM = "spam"
    GENERAL = "general"


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def _any_match(patterns: tuple[re.Pattern, ...], *texts: str) -> bool:
    return any(p.search(text) for p in patterns for text in texts)


# --- 1. Spam ---
SPAM_SUBJECT = _compile(
    r"lottery", r"winner", r"congratulations.*won",
    r"nigeria", r"inheritance", r"million dollars",
    r"click here", r"act now", r"limited time",
    r"free money", r"make money", r"work from home",
    r"viagra", r"casino", r"gambling",
    r"re: re: re:",
    r"\$\$\$",
    r"!!!!",
    r"URGENT.*URGENT",
)

SPAM_BODY = _compile(
    r"click.*link.*below",
    r"verify.*account.*immediately",
    r"suspended.*account",
    r"confirm.*identity",
    r"update.*payment.*method",
)

SUSPICIOUS_SENDERS = _compile(
    r"[0-9]{5,}@",
    r"random[a-z0-9]{10,}@",
    r"temp.*@", r"temporary.*@",
    r"\.tk$|\.ml$|\.ga$",
    r"[a-z]{1}[0-9]{5,}@",
)

# --- 2. Notifications: platform -> (from, subject, body, confidence) ---
NOTIFICATION_PLATFORMS: dict[str, tuple[re.Pattern, re.Pattern, re.Pattern, float]] = {
    "github": (
        re.compile(r"@(notifications\.)?github\.com", re.I),
        re.compile(r"^\[.*\]|pull request|issue|commit|push|merge", re.I),
        re.compile(r"github\.com/", re.I),
        0.95,
    ),
    "slack": (
        re.compile(r"@slack\.com|slackmail", re.I),
        re.compile(r"slack|channel|direct message|workspace", re.I),
        re.compile(r"slack\.com", re.I),
        0.95,
    ),
    "jira": (
        re.compile(r"@atlassian\.com", re.I),
        re.compile(r"jira|ticket|issue.*created|issue.*updated", re.I),
        re.compile(r"atlassian\.net|jira", re.I),
        0.9,
    ),
    "trello": (
        re.compile(r"@trello\.com", re.I),
        re.compile(r"trello|card|board", re.I),
        re.compile(r"trello\.com", re.I),
        0.9,
    ),
    "asana": (
        re.compile(r"@asana\.com", re.I),
        re.compile(r"asana|task|project", re.I),
        re.compile(r"asana\.com", re.I),
        0.9,
    ),
    "linear": (
        re.compile(r"@linear\.app", re.I),
        re.compile(r"linear|issue", re.I),
        re.compile(r"linear\.app", re.I),
        0.9,
    ),
    "vercel": (
        re.compile(r"@vercel\.com", re.I),
        re.compile(r"deployment|build|vercel", re.I),
        re.compile(r"vercel\.com", re.I),
        0.95,
    ),
    "aws": (
        re.compile(r"@aws\.amazon\.com|@amazon\.com", re.I),
        re.compile(r"aws|amazon web services|billing|usage", re.I),
        re.compile(r"aws\.amazon\.com", re.I),
        0.9,
    ),
}

AUTOMATED_SENDERS = _compile(
    r"noreply", r"no-reply", r"donotreply", r"do-not-reply",
    r"notification", r"automated", r"system",
    r"support@.*\.com", r"admin@.*\.com",
    r"info@.*\.com", r"hello@.*\.com",
)

# --- 3. Meetings ---
MEETING_SUBJECT = _compile(
    r"meeting", r"calendar", r"invitation", r"invite",
    r"reschedule", r"rescheduled", r"postpone",
    r"conference call", r"video call", r"zoom",
    r"teams meeting", r"google meet",
    r"standup", r"daily", r"weekly", r"monthly",
    r"1:1|one.on.one", r"sync", r"catch.?up",
)

MEETING_BODY = _compile(
    r"zoom\.us", r"meet\.google\.com", r"teams\.microsoft",
    r"webex", r"gotomeeting", r"join.*meeting",
    r"meeting.*link", r"dial.*in", r"conference.*room",
    r"calendar.*invite", r"when2meet", r"doodle\.com",
)

# --- 4. Urgent business / customer support ---
URGENT = _compile(
    r"urgent", r"asap", r"emergency", r"critical",
    r"immediate", r"priority", r"rush",
    r"deadline", r"time.?sensitive",
    r"please.*respond.*today", r"need.*response.*today",
    r"escalation", r"incident", r"outage",
    r"production.*down", r"system.*down",
)

CUSTOMER_SUPPORT = _compile(
    r"customer.*complaint", r"customer.*issue",
    r"refund.*request", r"billing.*issue",
    r"account.*problem", r"login.*problem",
    r"bug.*report", r"error.*report",
)

# --- 5. Promotional ---
PROMOTIONAL = _compile(
    r"unsubscribe", r"newsletter", r"subscription",
    r"marketing", r"promotion", r"sale", r"discount",
    r"offer", r"deal", r"coupon", r"save.*%",
    r"black friday", r"cyber monday",
    r"limited.*time", r"expires.*soon",
    r"free.*shipping", r"buy.*now",
)

MARKETING_SENDERS = _compile(
    r"marketing@", r"promo@", r"deals@",
    r"newsletter@", r"offers@", r"sales@",
)


# --- Filters (None = inconclusive) ---

def spam_filter(subject: str, sender: str, body: str) -> Optional[FilterResult]:
    hits = [
        name for name, matched in (
            ("subject", _any_match(SPAM_SUBJECT, subject)),
            ("body", _any_match(SPAM_BODY, body)),
            ("sender", is_suspicious_sender(sender)),
        ) if matched
    ]
    if not hits:
        return None
    return FilterResult(
        should_process=False,
        priority="ignore",
        category=EmailCategory.SPAM.value,
        reasoning=f"Detected spam patterns: {' '.join(hits)}",
        confidence=0.9,
    )


def notification_filter(subject: str, sender: str, body: str) -> Optional[FilterResult]:
    for platform, (from_re, subject_re, body_re, confidence) in NOTIFICATION_PLATFORMS.items():
        if from_re.search(sender) or (subject_re.search(subject) and body_re.search(body)):
            try:
                category = EmailCategory(f"{platform}_notification")
            except ValueError:
                category = EmailCategory.AUTOMATED_SYSTEM
            return FilterResult(
                should_process=False,
                priority="low",
                category=category.value,
                reasoning=f"Detected {platform} notification",
                confidence=confidence,
            )

    if _any_match(AUTOMATED_SENDERS, sender):
        return FilterResult(
            should_process=False,
            priority="low",
            category=EmailCategory.AUTOMATED_SYSTEM.value,
            reasoning="Detected automated system email",
            confidence=0.8,
        )
    return None


def meeting_filter(subject: str, sender: str, body: str) -> Optional[FilterResult]:
    if _any_match(MEETING_SUBJECT, subject) or _any_match(MEETING_BODY, body):
        return FilterResult(
            should_process=True,
            priority="high",
            category=EmailCategory.MEETING_RELATED.value,
            reasoning="Detected meeting-related content",
            confidence=0.9,
        )
    return None


def urgent_filter(subject: str, sender: str, body: str) -> Optional[FilterResult]:
    if _any_match(URGENT, subject, body):
        return FilterResult(
            should_process=True,
            priority="high",
            category=EmailCategory.URGENT_BUSINESS.value,
            reasoning="Detected urgent business content",
            confidence=0.85,
        )
    if _any_match(CUSTOMER_SUPPORT, subject, body):
        return FilterResult(
            should_process=True,
            priority="high",
            category=EmailCategory.CUSTOMER_SUPPORT.value,
            reasoning="Detected customer support request",
            confidence=0.8,
        )
    return None


def promotional_filter(subject: str, sender: str, body: str) -> Optional[FilterResult]:
    if _any_match(PROMOTIONAL, subject, body) or _any_match(MARKETING_SENDERS, sender):
        return FilterResult(
            should_process=False,
            priority="low",
            category=EmailCategory.PROMOTIONAL.value,
            reasoning="Detected promotional/marketing content",
            confidence=0.8,
        )
    return None


def is_suspicious_sender(sender: str) -> bool:
    return _any_match(SUSPICIOUS_SENDERS, sender)


FILTERS: tuple[tuple[str, Callable[[str, str, str], Optional[FilterResult]]], ...] = (
    ("spam", spam_filter),
    ("notifications", notification_filter),
    ("meetings", meeting_filter),
    ("urgent", urgent_filter),
    ("promotional", promotional_filter),
)


def is_inconclusive(result: Optional[FilterResult]) -> bool:
    """A filter that lets the email through at medium priority has no opinion."""
    return result is None or (result.should_process and result.priority == "medium")


def analyze_email(
    subject: str = "",
    sender: str = "",
    body: str = "",
    email_id: Optional[str] = None,
) -> FilterResult:
    """Run the ordered filters over an email; first conclusive result wins."""
    subject, sender, body = subject or "", sender or "", body or ""

    for name, check in FILTERS:
        result = check(subject, sender, body)
        if not is_inconclusive(result):
            logger.info(
                "Pre-filter matched",
                extra={
                    "email_id": email_id,
                    "filter": name,
                    "category": result.category,
                    "confidence": result.confidence,
                }
            )
            break
    else:
        result = FilterResult(
            should_process=True,
            priority="medium",
            category=EmailCategory.GENERAL.value,
            reasoning="Unclassified email, default processing",
            confidence=0.5,
        )
        logger.info("Pre-filter default classification", extra={"email_id": email_id})

    prefilter_decisions_total.labels(
        category=result.category,
        should_process=str(result.should_process).lower()
    ).inc()
    return result


def filter_stats() -> dict:
    """Vocabularies used by the pre-filter, for monitoring dashboards."""
    return {
        "categories": [c.value for c in EmailCategory],
        "priorities": ["high", "medium", "low", "ignore"],
        "filter_types": [name for name, _ in FILTERS],
    }
