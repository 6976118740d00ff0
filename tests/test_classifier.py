"""Summary: Tests for AI-first classification with the deterministic fallback.

Importance: Ensures priorities, due times, and titles stay sane when the AI misbehaves.
Alternatives: Validate classification manually against live providers.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from flowhub.ai import MockAiProvider
from flowhub.classifier import FallbackClassifier, ItemClassifier, extract_title
from flowhub.errors import AiProviderError
from flowhub.models import IMPORTANT, NORMAL, SKIP, URGENT, User
from flowhub.storage.sqlite_store import SqliteStore

from fakes import ScriptedAiProvider


def _payload(**overrides: object) -> str:
    payload = {
        "title": "Prepare slides",
        "description": "Slides for the client review",
        "priority": "important",
        "estimatedMinutes": 45,
        "dueAt": "2026-10-19T12:00:00Z",
    }
    payload.update(overrides)
    return json.dumps(payload)


def _busy() -> AiProviderError:
    return AiProviderError("model is overloaded", status=503, retryable=True)


def test_ai_result_is_normalized(clock) -> None:
    """Summary: Verify a valid AI response produces an AI-sourced result.

    Importance: The AI path is preferred whenever it returns valid JSON.
    Alternatives: Always use the keyword classifier.
    """

    classifier = ItemClassifier(ScriptedAiProvider([_payload()]), clock=clock)
    result = classifier.classify("Client review", "Please prepare slides", "gmail")
    assert result.source == "ai"
    assert result.priority == IMPORTANT
    assert result.title == "Prepare slides"
    assert result.estimated_minutes == 45
    assert result.due_at == datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_retryable_errors_back_off_then_succeed(clock) -> None:
    """Summary: Verify overload errors are retried with exponential backoff.

    Importance: Waits of 2s then 4s protect an overloaded backend.
    Alternatives: Fail immediately to the fallback.
    """

    sleeps: list[float] = []
    provider = ScriptedAiProvider([_busy(), _busy(), _payload()])
    classifier = ItemClassifier(provider, sleep=sleeps.append, clock=clock)
    result = classifier.classify("Client review", "Please prepare slides", "gmail")
    assert result.source == "ai"
    assert provider.calls == 3
    assert sleeps == [2.0, 4.0]


def test_exhausted_retries_use_fallback(clock) -> None:
    sleeps: list[float] = []
    provider = ScriptedAiProvider([_busy()])
    classifier = ItemClassifier(provider, sleep=sleeps.append, clock=clock)
    result = classifier.classify("Quarterly report", "Submit the report today", "gmail")
    assert provider.calls == 3
    assert sleeps == [2.0, 4.0]
    assert result.source == "fallback"
    assert result.priority == IMPORTANT


def test_non_retryable_error_falls_back_immediately(clock) -> None:
    sleeps: list[float] = []
    provider = ScriptedAiProvider([AiProviderError("bad request", status=400)])
    classifier = ItemClassifier(provider, sleep=sleeps.append, clock=clock)
    result = classifier.classify("hey", "how are you", "gmail")
    assert provider.calls == 1
    assert sleeps == []
    assert result.source == "fallback"
    assert result.priority == NORMAL


def test_unexpected_provider_exception_falls_back(clock) -> None:
    provider = ScriptedAiProvider([RuntimeError("socket closed")])
    classifier = ItemClassifier(provider, clock=clock)
    result = classifier.classify("Outage", "server down, fix immediately", "gmail")
    assert result.source == "fallback"
    assert result.priority == URGENT


def test_invalid_output_falls_back_without_retry(clock) -> None:
    provider = ScriptedAiProvider(["I think this is important!"])
    classifier = ItemClassifier(provider, clock=clock)
    result = classifier.classify("Budget review", "Review the budget tomorrow", "gmail")
    assert provider.calls == 1
    assert result.source == "fallback"


def test_out_of_range_fields_are_clamped(clock) -> None:
    """Summary: Verify bad priorities, estimates, titles, and due times are repaired.

    Importance: AI output is untrusted; normalization keeps stored tasks valid.
    Alternatives: Reject the whole response.
    """

    provider = ScriptedAiProvider(
        [_payload(priority="critical", estimatedMinutes=1000, title="reply email", dueAt="soon")]
    )
    classifier = ItemClassifier(provider, clock=clock)
    result = classifier.classify("Team sync in 10 min", "", "gmail")
    assert result.priority == NORMAL
    assert result.estimated_minutes == 480
    assert result.title == "Team sync"
    assert result.due_at == clock() + timedelta(minutes=10)


@pytest.mark.parametrize(
    "raw_estimate",
    ["1e999", "-1e999", "NaN", '"about 20"', "null", "true"],
)
def test_unusable_estimates_default_without_dropping_result(clock, raw_estimate: str) -> None:
    """Summary: Verify non-numeric or non-finite estimates fall back to the default.

    Importance: One bad field must not discard the rest of the AI result.
    Alternatives: Reject the object and use the keyword classifier.
    """

    text = (
        '{"title": "Prepare slides", "priority": "important", '
        f'"estimatedMinutes": {raw_estimate}}}'
    )
    classifier = ItemClassifier(ScriptedAiProvider([text]), clock=clock)
    result = classifier.classify("Client review", "Please prepare slides", "gmail")
    assert result.source == "ai"
    assert result.title == "Prepare slides"
    assert result.priority == IMPORTANT
    assert result.estimated_minutes == 15


def test_numeric_string_estimate_is_accepted(clock) -> None:
    classifier = ItemClassifier(
        ScriptedAiProvider([_payload(estimatedMinutes="25")]), clock=clock
    )
    assert classifier.classify("Client review", "", "gmail").estimated_minutes == 25


def test_ai_array_yields_multiple_results(clock) -> None:
    payload = json.dumps(
        [
            {"title": "Submit draft", "priority": "important", "dueAt": "2026-10-23T03:30:00Z"},
            {"title": "Send final", "priority": "important", "dueAt": "2026-10-26T03:30:00Z"},
        ]
    )
    classifier = ItemClassifier(ScriptedAiProvider([payload]), clock=clock)
    results = classifier.classify_multi("Drafts", "Draft by Friday, final next Monday", "gmail")
    assert [result.title for result in results] == ["Submit draft", "Send final"]
    assert all(result.estimated_minutes == 15 for result in results)


def test_fallback_priority_precedence() -> None:
    """Summary: Verify urgent beats casual beats work keywords.

    Importance: "hey, server down asap" must be urgent despite the greeting.
    Alternatives: Score keywords and take the maximum.
    """

    fallback = FallbackClassifier()
    assert fallback.priority_for("hey, server down, need help asap")[0] == URGENT
    assert fallback.priority_for("hey how are you")[0] == NORMAL
    assert fallback.priority_for("client meeting tomorrow")[0] == IMPORTANT
    assert fallback.priority_for("lunch menu attached")[0] == NORMAL


def test_fallback_skips_system_messages_but_not_work(clock) -> None:
    fallback = FallbackClassifier()
    skipped = fallback.classify(
        "Your verification code", "Your verification code is 482913", "gmail", clock()
    )
    assert skipped.priority == SKIP
    kept = fallback.classify(
        "Security alert", "Project review access was granted to the team", "gmail", clock()
    )
    assert kept.priority != SKIP


def test_fallback_splits_distinct_deadlines(clock) -> None:
    """Summary: Verify one message with two deadlines yields two results.

    Importance: "Submit draft by Friday, final version next Monday" is two tasks.
    Alternatives: Keep one task with both deadlines in the description.
    """

    classifier = ItemClassifier(MockAiProvider(), clock=clock)
    results = classifier.classify_multi(
        "Draft deadlines", "Submit draft by Friday, final version next Monday", "gmail"
    )
    assert [result.title for result in results] == ["Submit draft", "Final version"]
    assert [result.due_at for result in results] == [
        datetime(2026, 10, 23, 3, 30, tzinfo=timezone.utc),
        datetime(2026, 10, 26, 3, 30, tzinfo=timezone.utc),
    ]
    assert all(result.priority == IMPORTANT for result in results)


def test_priority_contact_forces_urgent(clock) -> None:
    classifier = ItemClassifier(MockAiProvider(), clock=clock)
    result = classifier.classify(
        "hey", "how are you", "gmail", sender="boss@corp.example", priority_contacts=["Boss@Corp.example"]
    )
    assert result.priority == URGENT
    assert result.source == "priority_contact"

    skipped = classifier.classify(
        "Your verification code",
        "Your verification code is 482913",
        "gmail",
        sender="boss@corp.example",
        priority_contacts=["boss@corp.example"],
    )
    assert skipped.priority == URGENT
    assert skipped.title != "Skip"


def test_ai_calls_are_audited(tmp_path: Path, clock) -> None:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    user_id = store.ensure_user(User(display_name="Local User", email="local@flowhub"))
    provider = ScriptedAiProvider([_busy(), _payload()])
    classifier = ItemClassifier(provider, store=store, sleep=lambda _: None, clock=clock)
    classifier.classify("Client review", "Please prepare slides", "gmail", user_id=user_id)
    assert store.count_ai_requests(purpose="classify_item") == 2


def test_extract_title_replaces_generic_subjects() -> None:
    assert extract_title("Team sync in 10 min", "", "gmail") == "Team sync"
    assert extract_title("Re: hi", "Please submit the assignment", "gmail") == "Submit file"
    assert extract_title("", "", "gmail") == "Reply email"
