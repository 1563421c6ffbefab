"""Shared error codes, user-facing messages and session exceptions."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
PROTOCOL_FAILURE = "PROTOCOL_FAILURE"
UNRECOGNIZED_ENGINE_ERROR = "UNRECOGNIZED_ENGINE_ERROR"
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
NO_ACTIVE_TARGET = "NO_ACTIVE_TARGET"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission is required in system settings.",
    TRANSPORT_FAILURE: "Connection to the recognition service failed.",
    PROTOCOL_FAILURE: "The recognition service rejected the task.",
    UNRECOGNIZED_ENGINE_ERROR: "The on-device recognizer stopped unexpectedly.",
    CONFIGURATION_ERROR: "Audio or recognizer setup is unusable.",
    NO_ACTIVE_TARGET: "No active input target; use Copy Last Transcript to get the text.",
}

# On-device task terminations that only mean "start a new task".
NO_SPEECH = 1110
TASK_SUPERSEDED = 216
TASK_INTERRUPTED = 209
BENIGN_RESTART_CODES = frozenset({NO_SPEECH, TASK_SUPERSEDED, TASK_INTERRUPTED})


class SessionError(Exception):
    """A failure that ends the current session."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)


class CaptureError(SessionError):
    """The microphone tap could not be installed."""
