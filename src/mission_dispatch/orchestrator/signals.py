"""Adapter turning raw completion payloads into structured completion signals."""

from __future__ import annotations

import re
from dataclasses import dataclass

from mission_dispatch.orchestrator.errors import InvalidRequestError, MalformedSignalError
from mission_dispatch.orchestrator.models import AttemptOutcome

COMPLETION_MARKER = "TASK_COMPLETE"
DEFAULT_SUMMARY = "Task finished"

_COMPLETION_PATTERN = re.compile(rf"{COMPLETION_MARKER}:\s*(.+)", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class DirectTaskSelector:
    task_id: str


@dataclass(slots=True, frozen=True)
class SessionSelector:
    session_key: str


@dataclass(slots=True)
class CompletionSignal:
    """Structured ``(task | session, outcome, summary)`` consumed by the completion handler."""

    selector: DirectTaskSelector | SessionSelector
    outcome: AttemptOutcome
    summary: str
    error: str | None = None


def parse_completion_marker(transcript: str) -> str:
    """Extract the summary following ``TASK_COMPLETE:`` from free text."""

    match = _COMPLETION_PATTERN.search(transcript or "")
    if match is None:
        raise MalformedSignalError(
            "Invalid completion message format. Expected: TASK_COMPLETE: [summary]",
        )
    return match.group(1).strip()


def build_signal(  # noqa: PLR0913
    *,
    task_id: str | None = None,
    session_key: str | None = None,
    message: str | None = None,
    outcome: str | None = None,
    error: str | None = None,
    summary: str | None = None,
) -> CompletionSignal:
    """Translate a webhook-style payload; ``task_id`` wins over session + message."""

    normalized = AttemptOutcome.normalize(outcome)
    if task_id:
        return CompletionSignal(
            selector=DirectTaskSelector(task_id=task_id),
            outcome=normalized,
            summary=summary or DEFAULT_SUMMARY,
            error=error,
        )
    if session_key and message is not None:
        return CompletionSignal(
            selector=SessionSelector(session_key=session_key),
            outcome=normalized,
            summary=parse_completion_marker(message),
            error=error,
        )
    raise InvalidRequestError("Invalid payload. Provide either task_id or session_id + message")
