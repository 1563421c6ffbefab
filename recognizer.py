"""Remote recognizer: DashScope realtime ASR over a duplex websocket.

One client instance serves exactly one session. It connects, sends a
``run-task`` envelope once the socket is open, streams 16 kHz PCM as
binary frames after ``task-started``, and ends with ``finish-task``.
Results arrive as ``result-generated`` envelopes carrying one sentence
each; ``sentence_end`` marks the sentence as final.

Events are delivered to ``on_event`` from the socket thread (results,
lifecycle, errors), the audio pump thread (levels) or the scheduler
thread (teardown), never while the client lock is held.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable, Optional

from errors import CONFIGURATION_ERROR, PROTOCOL_FAILURE, TRANSPORT_FAILURE
from interfaces import EventCallback, Scheduler, TimerHandle
from models import AudioFrame, RecognitionEvent, RecognitionKind

try:
    import websocket
except Exception:  # pragma: no cover
    websocket = None  # type: ignore

logger = logging.getLogger(__name__)

DASHSCOPE_WS_URL = "wss://dashscope.aliyuncs.com/api-ws/v1/inference/"
DEFAULT_MODEL = "fun-asr-realtime"


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_TASK_START = "awaiting_task_start"
    STREAMING = "streaming"
    FINISHING = "finishing"
    CLOSED = "closed"


def build_run_task(task_id: str, model: str = DEFAULT_MODEL, sample_rate: int = 16000) -> dict:
    return {
        "header": {
            "action": "run-task",
            "task_id": task_id,
            "streaming": "duplex",
        },
        "payload": {
            "task_group": "audio",
            "task": "asr",
            "function": "recognition",
            "model": model,
            "parameters": {
                "format": "pcm",
                "sample_rate": sample_rate,
            },
            "input": {},
        },
    }


def build_finish_task(task_id: str) -> dict:
    return {
        "header": {
            "action": "finish-task",
            "task_id": task_id,
            "streaming": "duplex",
        },
        "payload": {"input": {}},
    }


def parse_sentence(data: dict) -> Optional[tuple[str, bool]]:
    """Pull ``(text, sentence_end)`` out of a result-generated envelope."""
    payload = data.get("payload")
    if not isinstance(payload, dict):
        return None
    output = payload.get("output")
    if not isinstance(output, dict):
        return None
    sentence = output.get("sentence")
    if not isinstance(sentence, dict):
        return None
    text = sentence.get("text")
    if not isinstance(text, str):
        return None
    return text, bool(sentence.get("sentence_end", False))


class RemoteRecognitionClient:
    def __init__(
        self,
        api_key: str,
        scheduler: Scheduler,
        url: str = DASHSCOPE_WS_URL,
        model: str = DEFAULT_MODEL,
        sample_rate: int = 16000,
        settle_delay_s: float = 0.5,
        close_grace_s: float = 1.0,
        ws_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._api_key = api_key
        self._scheduler = scheduler
        self._url = url
        self._model = model
        self._sample_rate = sample_rate
        self._settle_delay_s = settle_delay_s
        self._close_grace_s = close_grace_s
        self._ws_factory = ws_factory
        self.task_id = uuid.uuid4().hex

        self._lock = threading.Lock()
        self._state = ClientState.DISCONNECTED
        self._ws: Any = None
        self._ws_thread: Optional[threading.Thread] = None
        self._pump_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._finish_event = threading.Event()
        self._audio_queue: Optional[Queue[AudioFrame | None]] = None
        self._on_event: Optional[EventCallback] = None
        self._timers: list[TimerHandle] = []
        self._run_task_sent = False
        self._finish_requested = False
        self._failed = False
        self._finished_emitted = False

    @property
    def state(self) -> ClientState:
        return self._state

    def start(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: EventCallback,
    ) -> None:
        with self._lock:
            if self._state != ClientState.DISCONNECTED:
                return
            self._audio_queue = audio_queue
            self._on_event = on_event
            factory = self._ws_factory
            if factory is None and websocket is not None:
                factory = websocket.WebSocketApp
            problem = ""
            if factory is None:
                problem = "websocket-client is not installed"
            elif not self._api_key:
                problem = "No API key configured"
            if problem:
                self._state = ClientState.CLOSED
                self._failed = True
            else:
                self._state = ClientState.CONNECTING
                self._ws = factory(
                    self._url,
                    header=[f"Authorization: bearer {self._api_key}"],
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
        if problem:
            self._emit_error(CONFIGURATION_ERROR, problem)
            return

        logger.info("Connecting to %s (task %s)", self._url, self.task_id)
        self._stop_event.clear()
        self._ws_thread = threading.Thread(target=self._run_socket, name="asr-socket", daemon=True)
        self._pump_thread = threading.Thread(target=self._pump, name="asr-pump", daemon=True)
        self._ws_thread.start()
        self._pump_thread.start()

    def finish(self) -> None:
        """Request finalization once.

        The pump sends the frames still queued and then finish-task, so
        no audio is lost or sent after the finalize message.
        """
        with self._lock:
            if self._finish_requested:
                return
            self._finish_requested = True
            deferred = (
                self._state in (ClientState.AWAITING_TASK_START, ClientState.STREAMING)
                and self._run_task_sent
            )
            if not deferred and self._state != ClientState.CLOSED:
                # run-task never went out, so there is nothing to finalize.
                self._state = ClientState.CLOSED
                self._cancel_timers()
        self._finish_event.set()
        if not deferred:
            self._close_socket()
            self._emit_finished()

    def stop(self) -> None:
        with self._lock:
            self._state = ClientState.CLOSED
            self._cancel_timers()
        self._stop_event.set()
        self._finish_event.set()
        self._close_socket()
        current = threading.current_thread()
        for thread in (self._pump_thread, self._ws_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=1.0)

    # ------------------------------------------------------------------
    # Socket callbacks (socket thread)
    # ------------------------------------------------------------------

    def _run_socket(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            ws.run_forever()
        except Exception as exc:
            self._transport_failure(f"socket loop failed: {exc}")

    def _on_open(self, ws: Any) -> None:
        with self._lock:
            if self._state != ClientState.CONNECTING:
                return
            self._state = ClientState.AWAITING_TASK_START
            self._timers.append(
                self._scheduler.call_later(self._settle_delay_s, self._send_run_task)
            )
        logger.debug("Socket open, run-task in %.2fs", self._settle_delay_s)

    def _send_run_task(self) -> None:
        with self._lock:
            if self._state != ClientState.AWAITING_TASK_START or self._finish_requested:
                return
            self._run_task_sent = True
        self._send_json(build_run_task(self.task_id, self._model, self._sample_rate))

    def _on_message(self, ws: Any, message: Any) -> None:
        if isinstance(message, (bytes, bytearray)):
            return
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning("Ignoring malformed message: %.200s", message)
            return
        if not isinstance(data, dict):
            return
        header = data.get("header")
        if not isinstance(header, dict):
            return
        event = header.get("event")

        if event == "task-started":
            with self._lock:
                if self._state == ClientState.AWAITING_TASK_START:
                    self._state = ClientState.STREAMING
            logger.info("Task %s started", self.task_id)
            self._emit(RecognitionEvent(kind=RecognitionKind.STARTED.value))
        elif event == "result-generated":
            if self._state == ClientState.CLOSED:
                return
            sentence = parse_sentence(data)
            if sentence is None:
                logger.warning("result-generated without sentence text")
                return
            text, is_final = sentence
            kind = RecognitionKind.FINAL if is_final else RecognitionKind.PARTIAL
            self._emit(RecognitionEvent(kind=kind.value, text=text))
        elif event == "task-finished":
            logger.info("Task %s finished", self.task_id)
            self._complete()
        elif event == "task-failed":
            message_text = str(header.get("error_message") or "unknown error")
            logger.error("Task %s failed: %s", self.task_id, message_text)
            with self._lock:
                report = not self._failed
                self._state = ClientState.CLOSED
                self._failed = True
                self._cancel_timers()
            if report:
                self._emit_error(PROTOCOL_FAILURE, message_text)
            self._close_socket()
            self._emit_finished()
        else:
            logger.debug("Ignoring event %r", event)

    def _on_error(self, ws: Any, error: Any) -> None:
        self._transport_failure(str(error))

    def _on_close(self, ws: Any, status_code: Any = None, reason: Any = None) -> None:
        with self._lock:
            state = self._state
        if state == ClientState.FINISHING:
            self._complete()
        elif state != ClientState.CLOSED:
            self._transport_failure(f"connection closed ({status_code}: {reason})")

    # ------------------------------------------------------------------
    # Audio pump (pump thread)
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        audio_queue = self._audio_queue
        if audio_queue is None:
            return
        while not self._stop_event.is_set():
            try:
                frame = audio_queue.get(timeout=0.2)
            except Empty:
                if self._finish_event.is_set():
                    break
                continue
            if frame is None:
                break
            self._emit(RecognitionEvent(kind=RecognitionKind.LEVEL.value, level=frame.level))
            # Audio captured before task-started is dropped.
            if self._state == ClientState.STREAMING:
                self._send_binary(frame.pcm16_bytes)

        # The tap is gone; hold finish-task until finish() asks for it.
        self._finish_event.wait()
        if not self._stop_event.is_set():
            self._send_finish()

    def _send_finish(self) -> None:
        with self._lock:
            if self._state not in (ClientState.AWAITING_TASK_START, ClientState.STREAMING):
                return
            self._state = ClientState.FINISHING
        logger.info("Sending finish-task (task %s)", self.task_id)
        self._send_json(build_finish_task(self.task_id))
        with self._lock:
            if self._state == ClientState.FINISHING:
                self._timers.append(
                    self._scheduler.call_later(self._close_grace_s, self._on_grace_expired)
                )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _send_json(self, envelope: dict) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            ws.send(json.dumps(envelope))
        except Exception as exc:
            self._transport_failure(f"send failed: {exc}")

    def _send_binary(self, data: bytes) -> None:
        ws = self._ws
        if ws is None or not data:
            return
        try:
            ws.send(data, websocket.ABNF.OPCODE_BINARY)
        except Exception as exc:
            self._transport_failure(f"audio send failed: {exc}")

    def _on_grace_expired(self) -> None:
        with self._lock:
            if self._state == ClientState.CLOSED:
                return
        logger.warning("No task-finished within %.1fs, closing socket", self._close_grace_s)
        self._complete()

    def _complete(self) -> None:
        with self._lock:
            self._state = ClientState.CLOSED
            self._cancel_timers()
        self._close_socket()
        self._emit_finished()

    def _transport_failure(self, message: str) -> None:
        with self._lock:
            if self._state == ClientState.FINISHING:
                finishing = True
            elif self._state == ClientState.CLOSED or self._failed:
                return
            else:
                finishing = False
                self._state = ClientState.CLOSED
                self._failed = True
                self._cancel_timers()
        if finishing:
            logger.warning("Transport error while finishing: %s", message)
            self._complete()
            return
        logger.error("Transport failure: %s", message)
        self._emit_error(TRANSPORT_FAILURE, message)
        self._close_socket()

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def _close_socket(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            ws.close()
        except Exception as exc:
            logger.debug("Socket close failed: %s", exc)

    def _emit_finished(self) -> None:
        with self._lock:
            if self._finished_emitted:
                return
            self._finished_emitted = True
        self._emit(RecognitionEvent(kind=RecognitionKind.FINISHED.value))

    def _emit_error(self, code: str, message: str) -> None:
        self._emit(RecognitionEvent(kind=RecognitionKind.ERROR.value, code=code, message=message))

    def _emit(self, event: RecognitionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
