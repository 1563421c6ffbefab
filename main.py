"""Application entrypoint."""

from __future__ import annotations

import logging
import sys
import threading

from auto_paste import ClipboardPasteService
from config import CONFIG_DIR, JsonConfigStore
from errors import ERROR_MESSAGES, SessionError
from hotkey import GlobalHotkeyAdapter, HotkeyGate
from interfaces import RecognitionBackend
from local_recognizer import LocalRecognitionEngine, VoskTaskFactory
from logging_setup import setup_logging
from models import BackendKind, HotkeyCombo, SessionFailure, SessionState
from overlay import OverlayWindow
from recognizer import RemoteRecognitionClient
from recorder import AudioCaptureEngine
from scheduler import ThreadScheduler
from session_controller import SessionController

try:
    from PySide6.QtCore import QObject, Signal, QSize
    from PySide6.QtGui import QAction, QIcon, QPixmap, QPainter, QColor, QBrush
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QMessageBox, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger("ummm")


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"      # grey
ICON_RECORDING = "#FF4444"  # red
ICON_ERROR = "#FF8800"     # orange


class UIBridge(QObject):
    transcript_signal = Signal(str)
    level_signal = Signal(float)
    error_signal = Signal(str)
    state_signal = Signal(str, str)  # from_state, to_state
    hotkey_signal = Signal(str)


class App:
    def __init__(self) -> None:
        self.config_store = JsonConfigStore()
        setup_logging(self.config_store.get_log_level(), CONFIG_DIR / "logs" / "app.log")

        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.overlay = OverlayWindow()
        self.ui = UIBridge()
        self.ui.transcript_signal.connect(self._on_transcript_ui)
        self.ui.level_signal.connect(self.overlay.set_level)
        self.ui.error_signal.connect(self._on_error_ui)
        self.ui.state_signal.connect(self._on_state_change_ui)
        self.ui.hotkey_signal.connect(self._on_hotkey_captured_ui)

        self.scheduler = ThreadScheduler()
        self.local_tasks = VoskTaskFactory(
            model_path=self.config_store.get_local_model_path(),
            language=self.config_store.get_local_language(),
        )
        self.last_transcript = ""
        self.controller = SessionController(
            recorder=AudioCaptureEngine(),
            backend_factory=self._build_backend,
            paste_service=ClipboardPasteService(),
            credential=self.config_store.get_api_key,
            scheduler=self.scheduler,
            on_state_change=self._on_state_change,
            on_transcript=self.ui.transcript_signal.emit,
            on_level=self.ui.level_signal.emit,
            on_error=self._on_error,
            on_final=self._on_final,
        )
        self.gate = HotkeyGate(
            self.config_store.get_hotkey(),
            on_press=self._on_hotkey_press,
            on_release=self._on_hotkey_release,
            on_captured=self._on_hotkey_captured,
        )
        self.hotkey = GlobalHotkeyAdapter(self.gate)

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self._set_ready_tooltip()
        self._setup_menu()
        self.tray.show()

    def _build_backend(self, kind: BackendKind, api_key: str) -> RecognitionBackend:
        if kind == BackendKind.REMOTE:
            return RemoteRecognitionClient(api_key=api_key, scheduler=self.scheduler)
        return LocalRecognitionEngine(self.local_tasks, self.scheduler)

    def _setup_menu(self) -> None:
        menu = QMenu()

        api_action = QAction("Set API Key", menu)
        api_action.triggered.connect(self._set_api_key)
        menu.addAction(api_action)

        hotkey_action = QAction("Record Hotkey", menu)
        hotkey_action.triggered.connect(self._record_hotkey)
        menu.addAction(hotkey_action)

        fn_action = QAction("Use fn Key", menu)
        fn_action.triggered.connect(lambda: self._apply_hotkey(HotkeyCombo.fn_key()))
        menu.addAction(fn_action)

        copy_action = QAction("Copy Last Transcript", menu)
        copy_action.triggered.connect(self._copy_last_transcript)
        menu.addAction(copy_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(
            None, "API Key", "DashScope API Key (leave empty for on-device recognition)"
        )
        if not ok:
            return
        self.config_store.set_api_key(value)
        self._set_ready_tooltip()
        QMessageBox.information(None, "Saved", "API Key saved. It applies to the next recording.")

    def _record_hotkey(self) -> None:
        self.gate.begin_capture()
        self.overlay.set_text("Press the new hotkey…")

    def _apply_hotkey(self, combo: HotkeyCombo) -> None:
        self.gate.set_combo(combo)
        self.config_store.set_hotkey(combo)
        self._set_ready_tooltip()

    def _copy_last_transcript(self) -> None:
        if self.last_transcript:
            self.app.clipboard().setText(self.last_transcript)

    def _set_ready_tooltip(self) -> None:
        engine = "DashScope" if self.config_store.get_api_key() else "on-device"
        self.tray.setToolTip(f"Ummm: ready ({engine}, hold {self.gate.combo.display_string})")

    # ------------------------------------------------------------------
    # Worker-thread callbacks; they only emit signals
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        self.ui.state_signal.emit(from_state.value, to_state.value)

    def _on_error(self, failure: SessionFailure) -> None:
        summary = ERROR_MESSAGES.get(failure.code, failure.code)
        detail = f"{summary} {failure.message}".strip()
        self.ui.error_signal.emit(detail)

    def _on_final(self, text: str) -> None:
        if text:
            self.last_transcript = text

    def _on_hotkey_captured(self, combo: HotkeyCombo) -> None:
        self.config_store.set_hotkey(combo)
        self.ui.hotkey_signal.emit(combo.display_string)

    # ------------------------------------------------------------------
    # UI thread handlers
    # ------------------------------------------------------------------

    def _on_transcript_ui(self, text: str) -> None:
        self.overlay.set_text(text or "🎙️ Listening...")

    def _on_error_ui(self, msg: str) -> None:
        self.tray.setIcon(_create_icon(ICON_ERROR))
        self.overlay.show_error(msg)

    def _on_hotkey_captured_ui(self, display: str) -> None:
        self.overlay.set_text(f"Hotkey: {display}")
        self.overlay.hide_with_delay(1200)
        self._set_ready_tooltip()

    def _on_state_change_ui(self, from_state: str, to_state: str) -> None:
        if to_state == SessionState.RECORDING.value:
            self.tray.setIcon(_create_icon(ICON_RECORDING))
            self.tray.setToolTip("Ummm: recording")
            self.overlay.set_text("🎙️ Listening...")
        elif to_state == SessionState.FINALIZING.value:
            self.tray.setToolTip("Ummm: finishing")
        elif to_state == SessionState.IDLE.value:
            if from_state != SessionState.ERROR.value:
                self.tray.setIcon(_create_icon(ICON_IDLE))
                self.overlay.hide_with_delay(400)
            self._set_ready_tooltip()
        elif to_state == SessionState.ERROR.value:
            self.tray.setIcon(_create_icon(ICON_ERROR))

    # ------------------------------------------------------------------
    # Hotkey handlers
    # ------------------------------------------------------------------

    def _on_hotkey_press(self) -> None:
        self.controller.start_session()

    def _on_hotkey_release(self) -> None:
        # stop_session waits for the backend; keep it off the listener thread.
        threading.Thread(
            target=self.controller.stop_session,
            daemon=True,
        ).start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _preload_local_model(self) -> None:
        try:
            self.local_tasks.prepare()
        except SessionError as exc:
            logger.warning("On-device recognizer unavailable: %s", exc.message)

    def run(self) -> int:
        if not self.config_store.get_api_key():
            threading.Thread(target=self._preload_local_model, daemon=True).start()
        try:
            self.hotkey.start()
        except Exception as exc:
            logger.error("Hotkey listener failed: %s", exc)
            self.overlay.show_error(f"Hotkey disabled: {exc}")
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.controller.cancel_session("app quit")
        self.scheduler.close()
        self.app.quit()


def main() -> int:
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
