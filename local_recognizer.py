"""On-device recognizer: continuous recognition with automatic re-arm.

A recognition task ends on its own: at an utterance boundary, when it has
run for its maximum duration, or when it heard no speech for a while.
While the session is still active the engine replaces the ended task
with a fresh one fed from the same audio queue, so capture keeps running
and the session stays one continuous transcript.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Callable, Optional, Protocol

from errors import (
    BENIGN_RESTART_CODES,
    CONFIGURATION_ERROR,
    NO_SPEECH,
    UNRECOGNIZED_ENGINE_ERROR,
    SessionError,
)
from interfaces import EventCallback, Scheduler, TimerHandle
from models import AudioFrame, RecognitionEvent, RecognitionKind

try:
    import vosk
except Exception:  # pragma: no cover
    vosk = None  # type: ignore

logger = logging.getLogger(__name__)

ResultCallback = Callable[[str, bool], None]
TaskErrorCallback = Callable[[int, str], None]


class RecognitionTask(Protocol):
    def append(self, pcm: bytes) -> None: ...

    def end_audio(self) -> None: ...

    def cancel(self) -> None: ...


TaskFactory = Callable[[ResultCallback, TaskErrorCallback], RecognitionTask]


@dataclass(frozen=True)
class RestartPolicy:
    """Backoff for consecutive benign task terminations.

    The first restart in a row is immediate; later ones wait ``delay_s``,
    doubling up to ``max_delay_s``. More than ``max_consecutive`` restarts
    in a row without any recognized text ends the session.
    """

    delay_s: float = 0.3
    max_delay_s: float = 2.0
    max_consecutive: int = 20

    def delay_for(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return min(self.delay_s * (2 ** (attempt - 2)), self.max_delay_s)

    def allows(self, attempt: int) -> bool:
        return attempt <= self.max_consecutive


class VoskTask:
    def __init__(
        self,
        model: Any,
        on_result: ResultCallback,
        on_error: TaskErrorCallback,
        sample_rate: int = 16000,
        max_duration_s: float = 60.0,
        no_speech_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._recognizer = vosk.KaldiRecognizer(model, sample_rate)
        self._on_result = on_result
        self._on_error = on_error
        self._max_duration_s = max_duration_s
        self._no_speech_timeout_s = no_speech_timeout_s
        self._clock = clock
        self._started = clock()
        self._text = ""
        self._done = False

    def append(self, pcm: bytes) -> None:
        if self._done:
            return
        if self._recognizer.AcceptWaveform(pcm):
            self._finish(_field(self._recognizer.Result(), "text"))
            return
        partial = _field(self._recognizer.PartialResult(), "partial")
        if partial and partial != self._text:
            self._text = partial
            self._on_result(partial, False)
        elapsed = self._clock() - self._started
        if elapsed >= self._max_duration_s:
            self.end_audio()
        elif not self._text and elapsed >= self._no_speech_timeout_s:
            self._done = True
            self._on_error(NO_SPEECH, "No speech detected")

    def end_audio(self) -> None:
        if self._done:
            return
        self._finish(_field(self._recognizer.FinalResult(), "text"))

    def cancel(self) -> None:
        self._done = True

    def _finish(self, text: str) -> None:
        self._done = True
        self._on_result(text, True)


def _field(raw: str, name: str) -> str:
    try:
        return str(json.loads(raw).get(name, "")).strip()
    except (ValueError, AttributeError):
        return ""


class VoskTaskFactory:
    """Builds Vosk tasks; the model is loaded once and reused across sessions."""

    def __init__(
        self,
        model_path: str = "",
        language: str = "en-us",
        sample_rate: int = 16000,
        max_duration_s: float = 60.0,
        no_speech_timeout_s: float = 5.0,
    ) -> None:
        self._model_path = model_path
        self._language = language
        self._sample_rate = sample_rate
        self._max_duration_s = max_duration_s
        self._no_speech_timeout_s = no_speech_timeout_s
        self._model: Any = None
        self._lock = threading.Lock()

    def prepare(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            if vosk is None:
                raise SessionError(CONFIGURATION_ERROR, "vosk is not installed")
            try:
                if self._model_path:
                    self._model = vosk.Model(self._model_path)
                else:
                    self._model = vosk.Model(lang=self._language)
            except Exception as exc:
                raise SessionError(CONFIGURATION_ERROR, f"cannot load Vosk model: {exc}") from exc
            logger.info("Vosk model loaded (%s)", self._model_path or self._language)

    def __call__(self, on_result: ResultCallback, on_error: TaskErrorCallback) -> VoskTask:
        self.prepare()
        return VoskTask(
            self._model,
            on_result,
            on_error,
            sample_rate=self._sample_rate,
            max_duration_s=self._max_duration_s,
            no_speech_timeout_s=self._no_speech_timeout_s,
        )


class LocalRecognitionEngine:
    def __init__(
        self,
        task_factory: TaskFactory,
        scheduler: Scheduler,
        policy: RestartPolicy = RestartPolicy(),
    ) -> None:
        self._task_factory = task_factory
        self._scheduler = scheduler
        self._policy = policy
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._finishing = threading.Event()
        self._audio_queue: Optional[Queue[AudioFrame | None]] = None
        self._on_event: Optional[EventCallback] = None
        self._task: Optional[RecognitionTask] = None
        self._generation = 0
        self._active = False
        self._consecutive_restarts = 0
        self._rearm_handle: Optional[TimerHandle] = None
        self._finished_emitted = False
        self.rearm_count = 0

    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: EventCallback,
    ) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._audio_queue = audio_queue
            self._on_event = on_event
            self._active = True
            self._stop_event.clear()
            self._finishing.clear()
            self._thread = threading.Thread(target=self._pump, name="local-asr", daemon=True)
            self._thread.start()

    def finish(self) -> None:
        with self._lock:
            self._active = False
            self._cancel_rearm()
            thread = self._thread
        self._finishing.set()
        if thread is None or not thread.is_alive():
            self._emit_finished()

    def stop(self) -> None:
        with self._lock:
            self._active = False
            self._cancel_rearm()
            task = self._task
            self._task = None
            self._generation += 1
        self._stop_event.set()
        self._finishing.set()
        if task is not None:
            task.cancel()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=1.0)

    # ------------------------------------------------------------------
    # Pump (engine thread)
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        audio_queue = self._audio_queue
        if audio_queue is None:
            return
        prepare = getattr(self._task_factory, "prepare", None)
        try:
            if prepare is not None:
                prepare()
            with self._lock:
                if self._active:
                    self._task = self._new_task()
        except SessionError as exc:
            self._deactivate_with_error(exc.code, exc.message)
            return
        logger.info("On-device recognition started")

        while not self._stop_event.is_set():
            try:
                frame = audio_queue.get(timeout=0.1)
            except Empty:
                if self._finishing.is_set():
                    break
                continue
            if frame is None:
                break
            self._emit(RecognitionEvent(kind=RecognitionKind.LEVEL.value, level=frame.level))
            task = self._task
            # No task while a delayed re-arm is pending: the frame is dropped.
            if task is not None:
                task.append(frame.pcm16_bytes)

        if self._stop_event.is_set():
            return
        # The tap is gone; hold the live task until finish() asks for its result.
        self._finishing.wait()
        if not self._stop_event.is_set():
            self._finalize()

    def _finalize(self) -> None:
        with self._lock:
            task = self._task
        if task is not None:
            task.end_audio()
        with self._lock:
            self._task = None
        logger.info("On-device recognition finished after %d re-arms", self.rearm_count)
        self._emit_finished()

    # ------------------------------------------------------------------
    # Task callbacks
    # ------------------------------------------------------------------

    def _new_task(self) -> RecognitionTask:
        self._generation += 1
        generation = self._generation
        return self._task_factory(
            lambda text, is_final: self._on_result(generation, text, is_final),
            lambda code, message: self._on_task_error(generation, code, message),
        )

    def _on_result(self, generation: int, text: str, is_final: bool) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if text:
                self._consecutive_restarts = 0
            rearm = is_final and self._active
        kind = RecognitionKind.FINAL if is_final else RecognitionKind.PARTIAL
        self._emit(RecognitionEvent(kind=kind.value, text=text))
        if rearm:
            self._rearm()

    def _on_task_error(self, generation: int, code: int, message: str) -> None:
        with self._lock:
            if generation != self._generation or not self._active:
                return
            self._task = None
            fatal = code not in BENIGN_RESTART_CODES
            if not fatal:
                self._consecutive_restarts += 1
                attempt = self._consecutive_restarts
                fatal = not self._policy.allows(attempt)
                if fatal:
                    message = f"{attempt} restarts in a row ({message})"
        if fatal:
            logger.error("On-device recognizer error %s: %s", code, message)
            self._deactivate_with_error(UNRECOGNIZED_ENGINE_ERROR, f"{message} (code {code})")
            return
        delay = self._policy.delay_for(attempt)
        logger.debug("Benign termination %s, re-arming in %.2fs", code, delay)
        if delay <= 0:
            self._rearm()
            return
        with self._lock:
            if self._active:
                self._rearm_handle = self._scheduler.call_later(delay, self._rearm)

    def _rearm(self) -> None:
        with self._lock:
            self._rearm_handle = None
            if not self._active:
                return
            previous = self._task
            try:
                self._task = self._new_task()
            except SessionError as exc:
                self._task = None
                error = exc
            else:
                error = None
                self.rearm_count += 1
        if error is not None:
            self._deactivate_with_error(error.code, error.message)
            return
        if previous is not None:
            previous.cancel()
        self._emit(RecognitionEvent(kind=RecognitionKind.REARM.value))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _deactivate_with_error(self, code: str, message: str) -> None:
        with self._lock:
            self._active = False
            self._cancel_rearm()
        self._emit(RecognitionEvent(kind=RecognitionKind.ERROR.value, code=code, message=message))
        self._emit_finished()

    def _cancel_rearm(self) -> None:
        if self._rearm_handle is not None:
            self._rearm_handle.cancel()
            self._rearm_handle = None

    def _emit_finished(self) -> None:
        with self._lock:
            if self._finished_emitted:
                return
            self._finished_emitted = True
        self._emit(RecognitionEvent(kind=RecognitionKind.FINISHED.value))

    def _emit(self, event: RecognitionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
