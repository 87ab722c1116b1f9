#!/usr/bin/env python3
"""
Error kinds raised by the interaction engine.

Only the orchestrator (worker.py) decides between retry, recovery,
escalation and final failure; everything below it just raises.
"""


class RunnerError(Exception):
    """Base class for run worker errors."""


# ── Completion detector ───────────────────────────────────────────────

class ResponseStalledError(RunnerError):
    """Generation indicator stayed on for the whole wait."""


class ResponseFailedError(RunnerError):
    """Generation stopped and no completion signal followed."""


class ResponseTimeoutError(RunnerError):
    """Wait elapsed without a stall or failure being observed."""


# ── Submission ────────────────────────────────────────────────────────

class SubmissionMismatchError(RunnerError):
    """Prompt readback never matched the intended text."""


class SubmissionNotDetectedError(RunnerError):
    """Send was triggered but no signal confirmed the message."""


class PromptInputUnavailableError(RunnerError):
    """The prompt input never became available for typing."""


class ConversationUrlMissingError(RunnerError):
    """The page never moved to a conversation address after submitting."""


class ConversationBusyError(RunnerError):
    """A continued conversation is still generating its previous reply."""


# ── Escalation ────────────────────────────────────────────────────────

class NeedsUserError(RunnerError):
    """Automated progress requires a human (login, challenge, approval)."""

    def __init__(self, reason: str, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


class AccessBlockedError(NeedsUserError):
    """A login wall or anti-automation challenge is in the way."""


class AuthorizationRequiredError(NeedsUserError):
    """A destructive recovery step needs explicit permission."""

    def __init__(self, detail: str):
        super().__init__("authorization-required", detail)


class BrowserUnresponsiveError(RunnerError):
    """Health checks failed and recovery ran out of options."""


class RunCanceledError(RunnerError):
    """An external cancel marker was observed."""


class PageScriptError(RunnerError):
    """An inspection script threw inside the page."""


class AttachmentError(RunnerError):
    """An attachment path is missing, unreadable or too large."""


class ThinkingUnavailableError(RunnerError):
    """The run has no conversation with reasoning output to read yet."""


_DETACHED_MARKERS = (
    "detached frame",
    "execution context was destroyed",
    "cannot find context with specified id",
    "target closed",
    "session closed",
)

# Failures that say nothing about browser health
_NON_BROWSER_ERRORS = (
    SubmissionMismatchError,
    SubmissionNotDetectedError,
    PromptInputUnavailableError,
    ConversationUrlMissingError,
    ConversationBusyError,
    AttachmentError,
    NeedsUserError,
    RunCanceledError,
)


def is_detached_frame_error(error: BaseException) -> bool:
    """True when the page's frame or target went away under us."""
    message = str(error).lower()
    return any(marker in message for marker in _DETACHED_MARKERS)


def should_skip_recovery(error: BaseException) -> bool:
    return isinstance(error, _NON_BROWSER_ERRORS)
