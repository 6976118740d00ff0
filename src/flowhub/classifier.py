"""Summary: Priority and deadline classification for ingested items.

Importance: Turns raw message text into a priority tier, due time, and short task title.
Alternatives: Require the user to triage every item manually.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Collection

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from flowhub.ai import AiProvider, estimate_tokens
from flowhub.errors import AiProviderError
from flowhub.models import (
    IMPORTANT,
    NORMAL,
    PRIORITIES,
    SKIP,
    URGENT,
    AiRequest,
    AiResponse,
    ClassificationResult,
    utc_now,
)
from flowhub.storage.sqlite_store import SqliteStore
from flowhub.time_parser import TimeParser, WEEKDAYS


logger = logging.getLogger(__name__)

DEFAULT_ESTIMATE = 15
MIN_ESTIMATE = 5
MAX_ESTIMATE = 480

GENERIC_TITLES = {"reply email", "check email", "new email", "email response", "respond email"}

WORK_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"action required",
        r"deadline",
        r"deliverable",
        r"task",
        r"project",
        r"meeting",
        r"campaign",
        r"vendor",
        r"coordinate",
        r"assist",
        r"prepare",
        r"draft",
        r"confirm",
        r"negotiate",
        r"training",
        r"conference",
        r"calendar",
        r"schedule",
        r"analysis",
        r"strategy",
        r"review",
        r"approval",
        r"budget",
        r"timeline",
        r"milestone",
        r"presentation",
        r"proposal",
        r"contract",
        r"client",
        r"customer",
        r"stakeholder",
        r"team",
        r"department",
    )
]

SKIP_PATTERNS = [
    re.compile(pattern, re.IGNORECASE | re.DOTALL)
    for pattern in (
        r"security alert",
        r"verification code.*\d{4,}",
        r"two.?factor authentication.*code",
        r"login verification.*code",
        r"confirm your email.*click here",
        r"welcome to.*verify",
        r"thank you for signing up.*confirm",
    )
]

URGENT_PATTERN = re.compile(
    r"\bin\s*[1-5]?\d\s*(?:min|mins|minutes?)\b|\b(?:asap|urgent|right now|immediately|emergency)\b"
)
CASUAL_PATTERN = re.compile(
    r"\b(?:hi|hello|hey|wassup|what's up|how are you|how r u|good morning|good afternoon"
    r"|good evening|hangout|chat|let's play|game|social|casual)\b"
)
IMPORTANT_PATTERN = re.compile(
    r"\b(?:meeting|work|boss|client|deadline|important|review|submit|report|project|task"
    r"|schedule|call)\b|\bin\s*(?:[1-9]|[12][0-9])\s*(?:hours?|hrs?)\b|today|tomorrow|this week"
)

_CLAUSE_SPLIT = re.compile(r"\s*[,;]\s*|\s+and\s+|\s+then\s+", re.IGNORECASE)
_TIME_PHRASES = re.compile(
    r"\b(?:by|before|on|at|until|due|in)?\s*(?:"
    r"\d+\s*(?:m|min|mins|minutes?|h|hr|hrs|hours?|days?)\b"
    r"|\d{1,2}(?::\d{2})?\s*(?:am|pm)\b"
    r"|today|tonight|tomorrow|tommorow|next week|this week"
    r"|(?:next\s+)?(?:" + "|".join(sorted(WEEKDAYS, key=len, reverse=True)) + r")\b"
    r"|asap|right now|immediately)",
    re.IGNORECASE,
)
_SUBJECT_PREFIX = re.compile(r"^\s*(?:re|fwd?|fw)\s*:\s*", re.IGNORECASE)
_STOPWORDS = {
    "the", "and", "for", "with", "from", "just", "will", "please", "your", "you", "our",
    "this", "that", "are", "subject", "urgent", "important",
}

SYSTEM_CONTRACT = """You are an executive assistant that converts messages into very short, actionable tasks.

TITLE: 2-3 words maximum, action oriented, no articles, no punctuation.

PRIORITY:
- urgent: deadlines within 1 hour or emergencies ("asap", "urgent", "right now", "immediately", "in 10 min").
- important: all work-related tasks (meetings, deadlines within hours or days, reviews, submissions, reports), including any work task mentioning "in N hours", "today", "tomorrow", "this week".
- normal: casual or social conversation, non-work content.
- skip: non-actionable items (security alerts, verification codes, login attempts, password resets, receipts, newsletters, signup confirmations). Work content is never skipped.

TIME PARSING (current time {now}, local timezone UTC{offset}):
- "in X minutes" / "X min" adds X minutes to the current time; "in X hours" adds hours.
- "today" with a time is local time converted to UTC; "today" without a time is 17:00 local.
- "tomorrow" and weekday names are 09:00 local on that date.
- No clear time reference: dueAt is null.

Respond with JSON only."""

SINGLE_FORMAT = """Respond with one JSON object:
{"title": "...", "description": "...", "priority": "urgent|important|normal|skip", "estimatedMinutes": 5-480, "dueAt": "ISO timestamp or null"}"""

MULTI_FORMAT = """The message may contain several distinct tasks with separate deadlines
(e.g. "submit draft by Monday, final version by Friday"). Respond with a JSON array holding one
object per independently actionable task, each shaped:
{"title": "...", "description": "...", "priority": "urgent|important|normal|skip", "estimatedMinutes": 5-480, "dueAt": "ISO timestamp or null"}"""


class AiTaskPayload(BaseModel):
    """Response schema for one task object returned by the AI backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1)
    description: str | None = None
    priority: str | None = None
    estimated_minutes: float | None = Field(default=None, alias="estimatedMinutes")
    due_at: str | None = Field(default=None, alias="dueAt")
    rationale: str | None = None

    @field_validator("estimated_minutes", mode="before")
    @classmethod
    def _loose_estimate(cls, value: Any) -> float | None:
        # Unusable estimates fall back to the default instead of rejecting the task.
        if isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None


@dataclass(frozen=True)
class FallbackClassifier:
    """Summary: Deterministic keyword and regex classifier.

    Importance: Guarantees a classification when the AI backend is unavailable.
    Alternatives: Queue items until the AI backend recovers.
    """

    parser: TimeParser = field(default_factory=TimeParser)

    def classify(
        self, title: str, body: str, source_app: str, now: datetime
    ) -> ClassificationResult:
        all_text = f"{title} {body}".lower()
        if self.is_non_actionable(all_text):
            return ClassificationResult(
                priority=SKIP,
                title="Skip",
                description="Non-actionable item filtered out",
                estimated_minutes=0,
                rationale="matched a system or security pattern",
            )
        priority, rationale = self.priority_for(all_text)
        return ClassificationResult(
            priority=priority,
            title=extract_title(title, body, source_app),
            description=_fallback_description(title, body),
            estimated_minutes=DEFAULT_ESTIMATE,
            due_at=self.parser.parse(f"{title} {body}", now),
            rationale=rationale,
        )

    def classify_multi(
        self, title: str, body: str, source_app: str, now: datetime
    ) -> list[ClassificationResult]:
        """Summary: Split a message into one result per distinct deadline clause.

        Importance: "Submit draft by Friday, final version next Monday" becomes two tasks.
        Alternatives: Always return a single result.
        """

        base = self.classify(title, body, source_app, now)
        if not base.actionable:
            return [base]
        clauses: list[tuple[str, datetime]] = []
        seen: set[datetime] = set()
        for clause in _CLAUSE_SPLIT.split(body or ""):
            clause = clause.strip(" .!")
            if not clause:
                continue
            due_at = self.parser.parse(clause, now)
            if due_at is None or due_at in seen:
                continue
            seen.add(due_at)
            clauses.append((clause, due_at))
        if len(clauses) < 2:
            return [base]
        results = []
        for clause, due_at in clauses:
            clause_title = title_from_text(clause) or base.title
            results.append(
                replace(base, title=clause_title, description=clause, due_at=due_at)
            )
        return results

    def priority_for(self, text: str) -> tuple[str, str]:
        """Summary: Apply the keyword precedence urgent > casual > work > normal.

        Importance: Keeps fallback priorities predictable and documented.
        Alternatives: Weight keywords and pick the highest score.
        """

        lowered = text.lower()
        if URGENT_PATTERN.search(lowered):
            return URGENT, "urgent keyword or deadline within the hour"
        if CASUAL_PATTERN.search(lowered):
            return NORMAL, "casual or social message"
        if IMPORTANT_PATTERN.search(lowered):
            return IMPORTANT, "work keyword or near-term deadline"
        return NORMAL, "no priority signal"

    @staticmethod
    def is_non_actionable(text: str) -> bool:
        if any(pattern.search(text) for pattern in WORK_PATTERNS):
            return False
        return any(pattern.search(text) for pattern in SKIP_PATTERNS)


class ItemClassifier:
    """Summary: AI-first classifier with bounded retries and a deterministic fallback.

    Importance: Produces normalized results even when the backend is overloaded or wrong.
    Alternatives: Use only keyword rules.
    """

    def __init__(
        self,
        provider: AiProvider,
        parser: TimeParser | None = None,
        store: SqliteStore | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._parser = parser or TimeParser()
        self._fallback = FallbackClassifier(self._parser)
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._clock = clock

    @property
    def fallback(self) -> FallbackClassifier:
        return self._fallback

    def classify(
        self,
        title: str,
        body: str,
        source_app: str,
        sender: str | None = None,
        priority_contacts: Collection[str] = (),
        user_id: int | None = None,
    ) -> ClassificationResult:
        """Summary: Classify one item into a single result.

        Importance: Drives the notification priority shown to the user.
        Alternatives: Always use the multi-task path and take the first result.
        """

        now = self._clock()
        payloads = self._request(title, body, source_app, SINGLE_FORMAT, now, user_id)
        if payloads:
            result = self._normalize(payloads[0], title, body, source_app, now)
        else:
            result = self._fallback.classify(title, body, source_app, now)
        return self._apply_contacts([result], title, body, source_app, sender, priority_contacts)[0]

    def classify_multi(
        self,
        title: str,
        body: str,
        source_app: str,
        sender: str | None = None,
        priority_contacts: Collection[str] = (),
        user_id: int | None = None,
    ) -> list[ClassificationResult]:
        """Summary: Classify one item into one result per distinct task.

        Importance: Supports messages that carry several deadlines.
        Alternatives: Ask the user to split messages manually.
        """

        now = self._clock()
        payloads = self._request(title, body, source_app, MULTI_FORMAT, now, user_id)
        if payloads:
            results = [
                self._normalize(payload, title, body, source_app, now) for payload in payloads
            ]
        else:
            results = self._fallback.classify_multi(title, body, source_app, now)
        return self._apply_contacts(results, title, body, source_app, sender, priority_contacts)

    def _request(
        self,
        title: str,
        body: str,
        source_app: str,
        response_format: str,
        now: datetime,
        user_id: int | None,
    ) -> list[AiTaskPayload]:
        prompt = self._prompt(title, body, source_app, response_format, now)
        for attempt in range(1, self._max_attempts + 1):
            try:
                text = self._generate(prompt, user_id)
            except AiProviderError as exc:
                if not exc.retryable or attempt == self._max_attempts:
                    logger.warning("AI classification failed (%s); using fallback", exc)
                    return []
                delay = self._backoff_seconds * 2 ** (attempt - 1)
                logger.info(
                    "AI backend busy (attempt %s/%s); retrying in %.1fs",
                    attempt,
                    self._max_attempts,
                    delay,
                )
                self._sleep(delay)
                continue
            except Exception:
                logger.exception("AI provider %s raised; using fallback", self._provider.name)
                return []
            payloads = _parse_payloads(text)
            if not payloads:
                logger.info("AI returned empty or invalid output; using fallback")
            return payloads
        return []

    def _generate(self, prompt: str, user_id: int | None) -> str:
        purpose = "classify_item"
        request_id = None
        if self._store is not None:
            request_id = self._store.log_ai_request(
                AiRequest(
                    provider=self._provider.name,
                    model=self._provider.model,
                    prompt=prompt,
                    purpose=purpose,
                    timestamp=self._clock(),
                ),
                user_id=user_id,
            )
        text, latency_ms = self._provider.generate_text(prompt, purpose)
        if self._store is not None and request_id is not None:
            self._store.log_ai_response(
                AiResponse(
                    request_id=request_id,
                    response_text=text,
                    latency_ms=latency_ms,
                    token_estimate=estimate_tokens(text),
                )
            )
        return text

    def _prompt(
        self, title: str, body: str, source_app: str, response_format: str, now: datetime
    ) -> str:
        contract = SYSTEM_CONTRACT.format(
            now=now.isoformat(), offset=_format_offset(self._parser.utc_offset_minutes)
        )
        return (
            f"{contract}\n\n{response_format}\n\n"
            f"Title: {title}\nContent: {body or 'No content'}\nSource: {source_app or 'email'}"
        )

    def _normalize(
        self, payload: AiTaskPayload, title: str, body: str, source_app: str, now: datetime
    ) -> ClassificationResult:
        priority = (payload.priority or "").strip().lower()
        if priority not in PRIORITIES and priority != SKIP:
            priority = NORMAL
        final_title = payload.title.strip()
        if final_title.lower() in GENERIC_TITLES:
            final_title = extract_title(title, body, source_app)
        raw_estimate = payload.estimated_minutes
        estimate = 0
        if raw_estimate and math.isfinite(raw_estimate):
            estimate = int(round(min(raw_estimate, MAX_ESTIMATE)))
        estimate = max(MIN_ESTIMATE, min(MAX_ESTIMATE, estimate or DEFAULT_ESTIMATE))
        due_at = _parse_due(payload.due_at)
        if due_at is None:
            due_at = self._parser.parse(f"{title} {body}", now)
        return ClassificationResult(
            priority=priority,
            title=final_title,
            description=payload.description or body or title,
            estimated_minutes=estimate,
            due_at=due_at,
            rationale=payload.rationale or "",
            source="ai",
        )

    def _apply_contacts(
        self,
        results: list[ClassificationResult],
        title: str,
        body: str,
        source_app: str,
        sender: str | None,
        priority_contacts: Collection[str],
    ) -> list[ClassificationResult]:
        if not sender or not is_priority_sender(sender, priority_contacts):
            return results
        forced = []
        for result in results:
            if result.priority == SKIP:
                result = replace(
                    result,
                    title=extract_title(title, body, source_app),
                    description=_fallback_description(title, body),
                    estimated_minutes=DEFAULT_ESTIMATE,
                )
            forced.append(
                replace(
                    result,
                    priority=URGENT,
                    rationale="sender is a priority contact",
                    source="priority_contact",
                )
            )
        return forced


def is_priority_sender(sender: str, priority_contacts: Collection[str]) -> bool:
    normalized = sender.strip().lower()
    return any(contact.strip().lower() == normalized for contact in priority_contacts)


def extract_title(title: str, body: str, source_app: str) -> str:
    """Summary: Build a short action title without the AI backend.

    Importance: Replaces generic titles such as "reply email" with something useful.
    Alternatives: Use the subject line verbatim.

    Example:
        >>> extract_title("Team sync in 10 min", "", "gmail")
        'Team sync'
    """

    subject_title = title_from_text(_SUBJECT_PREFIX.sub("", title or ""))
    if subject_title and len(subject_title.split()) >= 2:
        return subject_title
    content = (body or title or "").lower()
    if source_app == "gmail":
        keyword_title = _gmail_keyword_title(content)
    else:
        keyword_title = _generic_keyword_title(f"{title} {body}".lower())
    if keyword_title:
        return keyword_title
    if subject_title:
        return f"Handle {subject_title.lower()}"
    return "Reply email"


def title_from_text(text: str) -> str:
    """Return up to three meaningful words from text with time phrases removed."""

    cleaned = _TIME_PHRASES.sub(" ", text or "")
    words = [re.sub(r"[^\w'-]", "", word) for word in cleaned.split()]
    meaningful = [
        word
        for word in words
        if word and (len(word) > 2 or word.isdigit()) and word.lower() not in _STOPWORDS
    ][:3]
    if not meaningful:
        return ""
    phrase = " ".join(meaningful)
    return phrase[0].upper() + phrase[1:]


def _gmail_keyword_title(content: str) -> str:
    if any(word in content for word in ("submit", "submission", "assignment", "deliverable", "turn in", "upload")):
        return "Submit file"
    if "deadline" in content or re.search(r"\bdue\b", content):
        return "Meet deadline"
    if "project" in content and ("review" in content or "check" in content):
        return "Review project"
    if any(word in content for word in ("meeting", "zoom", "google meet")) or re.search(r"\bmeet\b", content):
        return "Join meeting"
    if any(word in content for word in ("invoice", "payment", "bill")):
        return "Pay invoice"
    if any(word in content for word in ("approve", "approval")) or re.search(r"\bsign\b", content):
        return "Review approval"
    if re.search(r"\b(?:hi|hello|hangout|chat)\b", content):
        return "Reply email"
    return ""


def _generic_keyword_title(text: str) -> str:
    if "meeting" in text or re.search(r"\bmeet\b", text):
        return "Join meeting" if ("google meet" in text or "zoom" in text) else "Schedule meeting"
    if "review" in text or "check" in text:
        return "Review item"
    if "call" in text or "phone" in text:
        return "Make call"
    if "submit" in text or "send" in text:
        return "Submit task"
    if "deadline" in text or re.search(r"\bdue\b", text):
        return "Complete deadline"
    if "boss" in text or "manager" in text:
        return "Contact manager"
    return ""


def _fallback_description(title: str, body: str) -> str:
    return (
        f"Complete email content:\n\n{title}\n\n{body or 'No content available'}"
        "\n\nAction needed: Review and respond to this notification."
    )


def _parse_payloads(text: str) -> list[AiTaskPayload]:
    """Summary: Validate AI output as one object or an array of objects.

    Importance: Schema violations trigger the fallback instead of propagating.
    Alternatives: Trust the backend's JSON mode.
    """

    if not text or not text.strip():
        return []
    try:
        raw: Any = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError:
        return []
    if isinstance(raw, dict) and isinstance(raw.get("tasks"), list):
        raw = raw["tasks"]
    items = raw if isinstance(raw, list) else [raw]
    payloads: list[AiTaskPayload] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            payloads.append(AiTaskPayload.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping invalid AI task object: %s", exc.errors())
    return payloads


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    return stripped.strip()


def _parse_due(value: str | None) -> datetime | None:
    if not value or value.lower() == "null":
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.info("Discarding invalid AI due time %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _format_offset(minutes: int) -> str:
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{sign}{hours:02d}:{mins:02d}"
