"""Floating overlay: live transcript and input level."""

from __future__ import annotations

try:
    from PySide6.QtCore import Qt, QTimer
    from PySide6.QtWidgets import QApplication, QLabel, QProgressBar, QVBoxLayout, QWidget
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QTimer = None  # type: ignore
    QApplication = None  # type: ignore
    QLabel = object  # type: ignore
    QProgressBar = object  # type: ignore
    QVBoxLayout = object  # type: ignore
    QWidget = object  # type: ignore

_TEXT_STYLE = "color: {color}; font-size: 18px; padding: 16px 16px 8px 16px;"
_PANEL_STYLE = "background: rgba(0,0,0,190); border-radius: 12px;"
_LEVEL_STYLE = (
    "QProgressBar { background: rgba(255,255,255,40); border: none; border-radius: 2px; }"
    "QProgressBar::chunk { background: #4CD964; border-radius: 2px; }"
)


class OverlayWindow(QWidget):
    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(
            Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool
        )
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setAttribute(Qt.WA_ShowWithoutActivating, True)
        self.setFixedWidth(600)

        panel = QWidget()
        panel.setStyleSheet(_PANEL_STYLE)
        self._label = QLabel("")
        self._label.setWordWrap(True)
        self._label.setStyleSheet(_TEXT_STYLE.format(color="white"))

        self._level = QProgressBar()
        self._level.setRange(0, 100)
        self._level.setTextVisible(False)
        self._level.setFixedHeight(4)
        self._level.setStyleSheet(_LEVEL_STYLE)

        inner = QVBoxLayout(panel)
        inner.setContentsMargins(0, 0, 0, 12)
        inner.addWidget(self._label)
        inner.addWidget(self._level)

        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.addWidget(panel)
        self.setLayout(layout)

        self._hide_timer: QTimer | None = None

    def _center_top(self) -> None:
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + 40
        self.move(x, y)

    def set_text(self, text: str) -> None:
        """Show the live transcript at the top center of the screen."""
        self._cancel_hide_timer()
        self._label.setStyleSheet(_TEXT_STYLE.format(color="white"))
        self._label.setText(text)
        self._center_top()
        self.show()

    def set_level(self, level: float) -> None:
        self._level.setValue(int(max(0.0, min(level, 1.0)) * 100))

    def hide_with_delay(self, delay_ms: int = 400) -> None:
        self._cancel_hide_timer()
        if QTimer is not None:
            self._hide_timer = QTimer()
            self._hide_timer.setSingleShot(True)
            self._hide_timer.timeout.connect(self.hide)
            self._hide_timer.start(delay_ms)

    def show_error(self, text: str, hide_after_ms: int = 2500) -> None:
        self.set_text(f"⚠️ {text}")
        self._label.setStyleSheet(_TEXT_STYLE.format(color="#FF6B6B"))
        self.set_level(0.0)
        self.hide_with_delay(hide_after_ms)

    def _cancel_hide_timer(self) -> None:
        if self._hide_timer is not None:
            self._hide_timer.stop()
            self._hide_timer = None
