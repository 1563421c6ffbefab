from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace

import auto_paste
from auto_paste import ClipboardPasteService
from errors import ERROR_MESSAGES, NO_ACTIVE_TARGET


class FakeClipboard:
    def __init__(self, content: str = "") -> None:
        self.content = content
        self.history: list[str] = []

    def copy(self, text: str) -> None:
        self.content = text
        self.history.append(text)

    def paste(self) -> str:
        return self.content


class FakeController:
    actions: list[str] = []
    fail = False

    @contextmanager
    def pressed(self, key):  # noqa: ANN001
        FakeController.actions.append(f"hold {key}")
        yield
        FakeController.actions.append(f"let go {key}")

    def press(self, key) -> None:  # noqa: ANN001
        if FakeController.fail:
            raise OSError("no focused window")
        FakeController.actions.append(f"press {key}")

    def release(self, key) -> None:  # noqa: ANN001
        FakeController.actions.append(f"release {key}")


def _install(monkeypatch, clipboard: FakeClipboard, fail: bool = False) -> None:  # noqa: ANN001
    FakeController.actions = []
    FakeController.fail = fail
    monkeypatch.setattr(auto_paste, "pyperclip", clipboard)
    monkeypatch.setattr(auto_paste, "Controller", FakeController)
    monkeypatch.setattr(auto_paste, "Key", SimpleNamespace(cmd="cmd", ctrl="ctrl"))
    monkeypatch.setattr(auto_paste.sys, "platform", "darwin")


def test_paste_returns_failure_when_dependencies_missing(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(auto_paste, "pyperclip", None)
    monkeypatch.setattr(auto_paste, "Controller", None)
    monkeypatch.setattr(auto_paste, "Key", None)

    service = ClipboardPasteService()
    result = service.paste_text("hello")

    assert result.success is False
    assert result.clipboard_restored is False


def test_paste_returns_failure_on_empty_text() -> None:
    service = ClipboardPasteService()
    result = service.paste_text("   ")

    assert result.success is False
    assert result.clipboard_restored is True


def test_paste_copies_then_sends_shortcut(monkeypatch) -> None:  # noqa: ANN001
    clipboard = FakeClipboard("old")
    _install(monkeypatch, clipboard)

    result = ClipboardPasteService(paste_delay_s=0).paste_text("今天天气很好。")

    assert result.success is True
    assert clipboard.content == "今天天气很好。"
    assert FakeController.actions == ["hold cmd", "press v", "release v", "let go cmd"]


def test_paste_restores_previous_clipboard(monkeypatch) -> None:  # noqa: ANN001
    clipboard = FakeClipboard("old")
    _install(monkeypatch, clipboard)
    monkeypatch.setattr(auto_paste.time, "sleep", lambda s: None)

    result = ClipboardPasteService(paste_delay_s=0, restore_clipboard=True).paste_text("new text")

    assert result.success is True
    assert result.clipboard_restored is True
    assert clipboard.history == ["new text", "old"]


def test_keystroke_failure_is_no_active_target(monkeypatch) -> None:  # noqa: ANN001
    clipboard = FakeClipboard()
    _install(monkeypatch, clipboard, fail=True)

    result = ClipboardPasteService(paste_delay_s=0).paste_text("hello")

    assert result.success is False
    assert result.reason.startswith(NO_ACTIVE_TARGET)
    assert clipboard.content == "hello"


def test_no_target_message_holds_when_clipboard_is_restored(monkeypatch) -> None:  # noqa: ANN001
    clipboard = FakeClipboard("old")
    _install(monkeypatch, clipboard, fail=True)
    monkeypatch.setattr(auto_paste.time, "sleep", lambda s: None)

    result = ClipboardPasteService(paste_delay_s=0, restore_clipboard=True).paste_text("hello")

    assert result.success is False
    assert result.clipboard_restored is True
    assert clipboard.content == "old"
    assert "clipboard" not in ERROR_MESSAGES[NO_ACTIVE_TARGET].lower()
