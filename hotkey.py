"""Push-to-talk hotkey: an edge-driven gate plus a pynput adapter.

The gate turns key edges into exactly one press and one release per hold
of the configured combo. The fn key never produces a key-down of its own;
it only flips a modifier flag, so for an fn combo press and release are
taken from the rising and falling edge of that flag.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Optional

from models import EdgeKind, HotkeyCombo, KeyEdge

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = logging.getLogger(__name__)

# macOS reports fn as virtual key 63.
FN_VIRTUAL_KEY = 63

MODIFIER_KEYS = {
    "cmd": "command",
    "cmd_l": "command",
    "cmd_r": "command",
    "alt": "option",
    "alt_l": "option",
    "alt_r": "option",
    "alt_gr": "option",
    "ctrl": "control",
    "ctrl_l": "control",
    "ctrl_r": "control",
    "shift": "shift",
    "shift_l": "shift",
    "shift_r": "shift",
}


class GateState(str, Enum):
    IDLE = "idle"
    HELD = "held"
    LISTENING = "listening"


class HotkeyGate:
    def __init__(
        self,
        combo: HotkeyCombo,
        on_press: Callable[[], None],
        on_release: Callable[[], None],
        on_captured: Optional[Callable[[HotkeyCombo], None]] = None,
    ) -> None:
        self._combo = combo
        self._on_press = on_press
        self._on_release = on_release
        self._on_captured = on_captured
        self._state = GateState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def combo(self) -> HotkeyCombo:
        return self._combo

    def set_combo(self, combo: HotkeyCombo) -> None:
        with self._lock:
            was_held = self._state == GateState.HELD
            self._combo = combo
            if self._state != GateState.LISTENING:
                self._state = GateState.IDLE
        if was_held:
            self._on_release()

    def begin_capture(self) -> None:
        """Record the next non-modifier key (or fn) as the new combo."""
        with self._lock:
            was_held = self._state == GateState.HELD
            self._state = GateState.LISTENING
        if was_held:
            self._on_release()

    def cancel_capture(self) -> None:
        with self._lock:
            if self._state == GateState.LISTENING:
                self._state = GateState.IDLE

    def handle(self, edge: KeyEdge) -> bool:
        """Feed one edge. Returns True when the edge belonged to the combo."""
        with self._lock:
            if self._state == GateState.LISTENING:
                captured = self._capture(edge)
                if captured is None:
                    return False
                self._combo = captured
                self._state = GateState.IDLE
                action = "captured"
            else:
                action = self._match(edge)
                if action is None:
                    return False
        if action == "press":
            self._on_press()
        elif action == "release":
            self._on_release()
        elif action == "captured":
            logger.info("Hotkey set to %s", self._combo.display_string)
            if self._on_captured is not None:
                self._on_captured(self._combo)
        return True

    def _match(self, edge: KeyEdge) -> Optional[str]:
        combo = self._combo
        if combo.is_fn:
            if edge.kind != EdgeKind.FLAGS_CHANGED:
                return None
            if edge.function and self._state == GateState.IDLE:
                self._state = GateState.HELD
                return "press"
            if not edge.function and self._state == GateState.HELD:
                self._state = GateState.IDLE
                return "release"
            return None

        if edge.kind == EdgeKind.FLAGS_CHANGED or edge.key != combo.key:
            return None
        if edge.kind == EdgeKind.KEY_DOWN:
            if edge.modifiers != combo.modifiers:
                return None
            if self._state == GateState.IDLE:
                self._state = GateState.HELD
                return "press"
            return "repeat"
        if self._state == GateState.HELD:
            self._state = GateState.IDLE
            return "release"
        return None

    def _capture(self, edge: KeyEdge) -> Optional[HotkeyCombo]:
        if edge.kind == EdgeKind.FLAGS_CHANGED:
            return HotkeyCombo.fn_key() if edge.function else None
        if edge.kind != EdgeKind.KEY_DOWN or edge.key in MODIFIER_KEYS or not edge.key:
            return None
        return HotkeyCombo(key=edge.key, modifiers=edge.modifiers)


def key_identity(key: Any) -> str:
    """Stable name for a pynput key: ``space``, ``f5``, ``a``, ``fn``, ``vk123``."""
    name = getattr(key, "name", None)
    if isinstance(name, str) and name:
        return name
    char = getattr(key, "char", None)
    if isinstance(char, str) and char:
        return char.lower()
    vk = getattr(key, "vk", None)
    if vk == FN_VIRTUAL_KEY:
        return "fn"
    if vk is not None:
        return f"vk{vk}"
    return str(key)


class GlobalHotkeyAdapter:
    """Feeds a HotkeyGate from a pynput global keyboard listener."""

    def __init__(self, gate: HotkeyGate) -> None:
        self._gate = gate
        self._listener: Optional[Any] = None
        self._modifiers: set[str] = set()
        self._function = False
        self._lock = threading.Lock()

    def start(self) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        self._listener = keyboard.Listener(on_press=self._on_press, on_release=self._on_release)
        self._listener.start()

    def stop(self) -> None:
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None

    def _on_press(self, key: Any) -> None:
        self._gate.handle(self._edge(key, pressed=True))

    def _on_release(self, key: Any) -> None:
        self._gate.handle(self._edge(key, pressed=False))

    def _edge(self, key: Any, pressed: bool) -> KeyEdge:
        ident = key_identity(key)
        with self._lock:
            if ident == "fn":
                self._function = pressed
                kind = EdgeKind.FLAGS_CHANGED
            elif ident in MODIFIER_KEYS:
                modifier = MODIFIER_KEYS[ident]
                if pressed:
                    self._modifiers.add(modifier)
                else:
                    self._modifiers.discard(modifier)
                kind = EdgeKind.FLAGS_CHANGED
            else:
                kind = EdgeKind.KEY_DOWN if pressed else EdgeKind.KEY_UP
            return KeyEdge(
                kind=kind,
                key=ident,
                modifiers=frozenset(self._modifiers),
                function=self._function,
            )
