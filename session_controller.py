"""State-machine based session orchestration.

The controller owns the single live session: it picks the backend once
per session from the configured credential, builds a fresh backend for
it, and tears everything down in a fixed order.

Capture starts with the session for the on-device backend; for the
remote backend it starts once the service reports ``task-started``.

Every backend event goes through ``_dispatch``. Observer callbacks run
synchronously on whichever thread emitted the event (audio pump, socket
or scheduler thread), with the controller lock held; UI code must hop to
its own thread. Backends are never stopped with the lock held, since
their stop joins threads that may be waiting on it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from queue import Queue
from typing import Callable, Optional

from errors import CONFIGURATION_ERROR, NO_ACTIVE_TARGET, PROTOCOL_FAILURE, SessionError
from interfaces import PasteService, Recorder, RecognitionBackend, Scheduler
from models import (
    AudioFrame,
    BackendKind,
    PasteResult,
    RecognitionEvent,
    RecognitionKind,
    Session,
    SessionFailure,
    SessionState,
)
from silence_watchdog import SilenceWatchdog
from transcript import TaskTranscriptAggregator, TranscriptAggregator

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
TextCallback = Callable[[str], None]
LevelCallback = Callable[[float], None]
ErrorCallback = Callable[[SessionFailure], None]
BackendFactory = Callable[[BackendKind, str], RecognitionBackend]

_TRANSCRIPT_KINDS = (
    RecognitionKind.PARTIAL.value,
    RecognitionKind.FINAL.value,
    RecognitionKind.REARM.value,
)


class SessionController:
    def __init__(
        self,
        recorder: Recorder,
        backend_factory: BackendFactory,
        paste_service: PasteService,
        credential: Callable[[], str],
        scheduler: Scheduler,
        finalize_timeout_s: float = 3.0,
        queue_maxsize: int = 200,
        silence_timeout_s: float = 3.0,
        silence_poll_s: float = 0.5,
        on_state_change: Optional[StateCallback] = None,
        on_transcript: Optional[TextCallback] = None,
        on_level: Optional[LevelCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_final: Optional[TextCallback] = None,
    ) -> None:
        self._recorder = recorder
        self._backend_factory = backend_factory
        self._paste_service = paste_service
        self._credential = credential
        self._finalize_timeout_s = finalize_timeout_s
        self._queue_maxsize = queue_maxsize
        self._on_state_change = on_state_change
        self._on_transcript = on_transcript
        self._on_level = on_level
        self._on_error = on_error
        self._on_final = on_final

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._backend: Optional[RecognitionBackend] = None
        self._aggregator: TranscriptAggregator = TranscriptAggregator()
        self._audio_queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)
        self._finished = threading.Event()
        self._failure_reported = False
        self._capturing = False
        self._watchdog = SilenceWatchdog(
            scheduler,
            on_timeout=self._on_silence,
            has_text=self._has_text,
            threshold_s=silence_timeout_s,
            interval_s=silence_poll_s,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def transcript(self) -> str:
        with self._lock:
            return self._aggregator.current

    @property
    def confirmed_transcript(self) -> str:
        with self._lock:
            return self._aggregator.confirmed

    def start_session(self) -> None:
        with self._lock:
            if self._state != SessionState.IDLE:
                return
            api_key = (self._credential() or "").strip()
            kind = BackendKind.REMOTE if api_key else BackendKind.LOCAL
            session = Session(session_id=uuid.uuid4().hex[:12], backend=kind)
            self._session = session
            self._aggregator = (
                TranscriptAggregator() if kind == BackendKind.REMOTE else TaskTranscriptAggregator()
            )
            self._failure_reported = False
            self._capturing = False
            self._finished.clear()
            self._audio_queue = Queue(maxsize=self._queue_maxsize)
            self._transition(SessionState.RECORDING)
            logger.info("[%s] Session started (%s backend)", session.session_id, kind.value)

            try:
                self._backend = self._backend_factory(kind, api_key)
                self._backend.start(self._audio_queue, self._dispatcher(session.session_id))
            except SessionError as exc:
                self._fail(exc.code, exc.message)
                return
            except Exception as exc:
                logger.exception("[%s] Session start failed", session.session_id)
                self._fail(CONFIGURATION_ERROR, f"start failed: {exc}")
                return
            if self._state != SessionState.RECORDING:
                return
            # The remote backend starts capture on task-started.
            if kind == BackendKind.LOCAL and not self._start_capture():
                return
            self._watchdog.start()

    def stop_session(self) -> None:
        with self._lock:
            if self._state != SessionState.RECORDING or self._session is None:
                return
            session = self._session
            self._transition(SessionState.FINALIZING)
            # The tap goes first so no frame can race the finalize message.
            self._stop_capture()
            self._safe_finish_backend()
            self._watchdog.cancel()

        acknowledged = self._finished.wait(timeout=self._finalize_timeout_s)

        with self._lock:
            if self._state != SessionState.FINALIZING or self._session is not session:
                return
            if not acknowledged:
                logger.warning(
                    "[%s] Backend did not confirm completion within %.1fs",
                    session.session_id,
                    self._finalize_timeout_s,
                )
            backend = self._detach_backend()
        _stop_backend(backend)

        with self._lock:
            if self._state != SessionState.FINALIZING or self._session is not session:
                return
            final_text = self._aggregator.current.strip()
            logger.info("[%s] Final transcript: %d chars", session.session_id, len(final_text))
            self._report_level(0.0)
            if self._on_final:
                self._on_final(final_text)
            if not final_text:
                self._end_session()
                return

            self._transition(SessionState.PASTING)
            result = self._run_paste(final_text)
            if not result.success:
                self._emit_failure(NO_ACTIVE_TARGET, result.reason, final_text)
            self._end_session()

    def cancel_session(self, reason: str) -> None:
        with self._lock:
            if self._state == SessionState.IDLE:
                return
            session_id = self._session.session_id if self._session else "-"
            logger.info("[%s] Session cancelled: %s", session_id, reason)
            self._watchdog.cancel()
            self._stop_capture()
            backend = self._detach_backend()
            self._finished.set()
            self._report_level(0.0)
            self._end_session()
        _stop_backend(backend)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def _dispatcher(self, session_id: str) -> Callable[[RecognitionEvent], None]:
        def on_event(event: RecognitionEvent) -> None:
            self._dispatch(session_id, event)

        return on_event

    def _dispatch(self, session_id: str, event: RecognitionEvent) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                return
            kind = event.kind
            if kind == RecognitionKind.LEVEL.value:
                if self._state == SessionState.RECORDING:
                    self._report_level(event.level)
                return
            if kind in _TRANSCRIPT_KINDS:
                if self._aggregator.apply(event):
                    self._watchdog.touch()
                    if self._on_transcript:
                        self._on_transcript(self._aggregator.current)
                return
            if kind == RecognitionKind.STARTED.value:
                logger.info("[%s] Backend streaming", session_id)
                if self._state == SessionState.RECORDING and session.backend == BackendKind.REMOTE:
                    self._start_capture()
                return
            if kind == RecognitionKind.FINISHED.value:
                self._finished.set()
                return
            if kind == RecognitionKind.ERROR.value:
                if self._state in (SessionState.RECORDING, SessionState.FINALIZING):
                    self._fail(event.code or PROTOCOL_FAILURE, event.message)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _start_capture(self) -> bool:
        if self._capturing:
            return True
        try:
            self._recorder.start(self._audio_queue)
        except SessionError as exc:
            self._fail(exc.code, exc.message)
            return False
        except Exception as exc:
            logger.exception("Capture start failed")
            self._fail(CONFIGURATION_ERROR, f"capture failed: {exc}")
            return False
        self._capturing = True
        return True

    def _stop_capture(self) -> None:
        if not self._capturing:
            return
        self._capturing = False
        try:
            self._recorder.stop()
        except Exception:  # pragma: no cover
            logger.exception("Recorder stop failed")

    def _on_silence(self) -> None:
        # stop_session blocks on the backend, so it must not run on the scheduler thread.
        threading.Thread(target=self.stop_session, name="silence-stop", daemon=True).start()

    def _has_text(self) -> bool:
        with self._lock:
            return bool(self._aggregator.current.strip())

    def _run_paste(self, text: str) -> PasteResult:
        try:
            return self._paste_service.paste_text(text)
        except Exception as exc:  # pragma: no cover
            return PasteResult(success=False, reason=str(exc), clipboard_restored=False)

    def _fail(self, code: str, message: str) -> None:
        session_id = self._session.session_id if self._session else "-"
        logger.error("[%s] Session failed: %s %s", session_id, code, message)
        confirmed = self._aggregator.confirmed
        self._transition(SessionState.ERROR)
        self._watchdog.cancel()
        self._stop_capture()
        backend = self._detach_backend()
        if backend is not None:
            # Usually on a backend thread with the lock held: stop elsewhere.
            threading.Thread(
                target=_stop_backend, args=(backend,), name="backend-stop", daemon=True
            ).start()
        self._finished.set()
        self._emit_failure(code, message, confirmed)
        self._report_level(0.0)
        self._end_session()

    def _emit_failure(self, code: str, message: str, transcript: str) -> None:
        if self._failure_reported:
            return
        self._failure_reported = True
        if self._on_error:
            self._on_error(SessionFailure(code=code, message=message, transcript=transcript))

    def _report_level(self, level: float) -> None:
        if self._on_level:
            self._on_level(level)

    def _end_session(self) -> None:
        self._transition(SessionState.IDLE)
        self._session = None
        self._backend = None

    def _detach_backend(self) -> Optional[RecognitionBackend]:
        backend = self._backend
        self._backend = None
        return backend

    def _safe_finish_backend(self) -> None:
        if self._backend is None:
            return
        try:
            self._backend.finish()
        except Exception:  # pragma: no cover
            logger.exception("Backend finish failed")

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._session is not None:
            self._session.state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)


def _stop_backend(backend: Optional[RecognitionBackend]) -> None:
    if backend is None:
        return
    try:
        backend.stop()
    except Exception:  # pragma: no cover
        logger.exception("Backend stop failed")
