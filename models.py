"""Core data models for the app."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class SessionState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    FINALIZING = "FINALIZING"
    PASTING = "PASTING"
    ERROR = "ERROR"


class BackendKind(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


class RecognitionKind(str, Enum):
    STARTED = "started"
    PARTIAL = "partial"
    FINAL = "final"
    REARM = "rearm"
    LEVEL = "level"
    FINISHED = "finished"
    ERROR = "error"


class EdgeKind(str, Enum):
    KEY_DOWN = "key_down"
    KEY_UP = "key_up"
    FLAGS_CHANGED = "flags_changed"


MODIFIERS = ("control", "option", "shift", "command")


@dataclass
class Session:
    session_id: str
    backend: BackendKind
    state: SessionState = SessionState.RECORDING
    started_at: float = field(default_factory=time.time)


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    frame_count: int = 0
    timestamp_ms: int = 0
    level: float = 0.0


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    level: float = 0.0
    code: str = ""
    message: str = ""
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def is_final(self) -> bool:
        return self.kind == RecognitionKind.FINAL.value


@dataclass(frozen=True)
class HotkeyCombo:
    key: str
    modifiers: frozenset[str] = frozenset()
    is_fn: bool = False

    @classmethod
    def fn_key(cls) -> HotkeyCombo:
        return cls(key="fn", is_fn=True)

    @property
    def display_string(self) -> str:
        if self.is_fn:
            return "fn"
        symbols = {"control": "⌃", "option": "⌥", "shift": "⇧", "command": "⌘"}
        parts = [symbols[m] for m in MODIFIERS if m in self.modifiers]
        parts.append(KEY_DISPLAY_NAMES.get(self.key, self.key.upper()))
        return "".join(parts)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "modifiers": sorted(self.modifiers),
            "is_fn": self.is_fn,
        }

    @classmethod
    def from_dict(cls, data: dict) -> HotkeyCombo:
        if data.get("is_fn"):
            return cls.fn_key()
        key = str(data["key"])
        modifiers = frozenset(str(m) for m in data.get("modifiers", []))
        unknown = modifiers - set(MODIFIERS)
        if not key or unknown:
            raise ValueError(f"invalid hotkey combo: {data!r}")
        return cls(key=key, modifiers=modifiers)


KEY_DISPLAY_NAMES = {
    "space": "Space",
    "enter": "↩",
    "tab": "⇥",
    "backspace": "⌫",
    "esc": "⎋",
    "left": "←",
    "right": "→",
    "down": "↓",
    "up": "↑",
    "fn": "fn",
    **{f"f{n}": f"F{n}" for n in range(1, 21)},
}


@dataclass(frozen=True)
class KeyEdge:
    kind: EdgeKind
    key: str = ""
    modifiers: frozenset[str] = frozenset()
    function: bool = False


@dataclass
class SessionFailure:
    code: str
    message: str
    transcript: str = ""


@dataclass
class PasteResult:
    success: bool
    reason: str
    clipboard_restored: bool
