"""Simple JSON-based config store."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from models import HotkeyCombo

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "ummm"
API_KEY_ENV = "DASHSCOPE_API_KEY"


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or CONFIG_DIR / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_api_key(self) -> str:
        """Stored key, else the environment; empty selects on-device recognition."""
        data = self._read_all()
        stored = str(data.get("api_key", "")).strip()
        return stored or os.getenv(API_KEY_ENV, "").strip()

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key.strip()
        self._write_all(data)

    def get_hotkey(self) -> HotkeyCombo:
        data = self._read_all()
        raw = data.get("hotkey")
        if not isinstance(raw, dict):
            return HotkeyCombo.fn_key()
        try:
            return HotkeyCombo.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Invalid hotkey in %s, using fn", self._path)
            return HotkeyCombo.fn_key()

    def set_hotkey(self, combo: HotkeyCombo) -> None:
        data = self._read_all()
        data["hotkey"] = combo.to_dict()
        self._write_all(data)

    def get_local_model_path(self) -> str:
        return str(self._read_all().get("local_model_path", ""))

    def get_local_language(self) -> str:
        return str(self._read_all().get("local_language", "en-us"))

    def get_log_level(self) -> str:
        return str(self._read_all().get("log_level", "INFO")).upper()

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
