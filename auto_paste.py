"""Hands the final transcript to the focused app: clipboard plus paste keystroke."""

from __future__ import annotations

import logging
import sys
import time
from typing import Any

from errors import NO_ACTIVE_TARGET
from models import PasteResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

logger = logging.getLogger(__name__)


def paste_modifier() -> Any:
    return Key.cmd if sys.platform == "darwin" else Key.ctrl


class ClipboardPasteService:
    """Copies the text, sends the paste shortcut, optionally restores the clipboard.

    With ``restore_clipboard=False`` the transcript stays on the clipboard,
    so it survives a paste into nowhere.
    """

    def __init__(self, paste_delay_s: float = 0.05, restore_clipboard: bool = False) -> None:
        self._paste_delay_s = paste_delay_s
        self._restore_clipboard = restore_clipboard

    def paste_text(self, text: str) -> PasteResult:
        if not text.strip():
            return PasteResult(success=False, reason="empty text", clipboard_restored=True)
        if pyperclip is None:
            return PasteResult(success=False, reason="pyperclip is not installed", clipboard_restored=False)

        previous: str | None = None
        try:
            if self._restore_clipboard:
                previous = pyperclip.paste()
            pyperclip.copy(text)
        except Exception as exc:
            logger.error("Clipboard unavailable: %s", exc)
            return PasteResult(success=False, reason=f"clipboard unavailable: {exc}", clipboard_restored=False)

        if Controller is None or Key is None:
            return PasteResult(
                success=False,
                reason=f"{NO_ACTIVE_TARGET}: keyboard control unavailable",
                clipboard_restored=False,
            )
        try:
            time.sleep(self._paste_delay_s)
            keyboard = Controller()
            with keyboard.pressed(paste_modifier()):
                keyboard.press("v")
                keyboard.release("v")
        except Exception as exc:
            logger.warning("Paste keystroke failed: %s", exc)
            return PasteResult(
                success=False,
                reason=f"{NO_ACTIVE_TARGET}: {exc}",
                clipboard_restored=self._restore(previous),
            )
        return PasteResult(success=True, reason="ok", clipboard_restored=self._restore(previous))

    def _restore(self, previous: str | None) -> bool:
        if previous is None:
            return not self._restore_clipboard
        time.sleep(0.1)
        try:
            pyperclip.copy(previous)
        except Exception as exc:
            logger.warning("Clipboard restore failed: %s", exc)
            return False
        return True
