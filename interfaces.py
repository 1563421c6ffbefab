"""Protocol interfaces used by SessionController and the backends."""

from __future__ import annotations

from queue import Queue
from typing import Callable, Protocol

from models import AudioFrame, HotkeyCombo, PasteResult, RecognitionEvent

EventCallback = Callable[[RecognitionEvent], None]


class Recorder(Protocol):
    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class RecognitionBackend(Protocol):
    """One session's recognizer; emits events, never raises from its threads."""

    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: EventCallback,
    ) -> None: ...

    def finish(self) -> None: ...

    def stop(self) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class PasteService(Protocol):
    def paste_text(self, text: str) -> PasteResult: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_hotkey(self) -> HotkeyCombo: ...

    def set_hotkey(self, combo: HotkeyCombo) -> None: ...
