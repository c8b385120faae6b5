"""Daily token usage and per-target cooldown tracking."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Any

_log = logging.getLogger(__name__)

STATE_FILE = "diagnose_state.json"


def _today() -> str:
    return date.today().isoformat()


def _now() -> int:
    return int(time.time())


def _key(plugin: str, target: str) -> str:
    return f"{plugin}::{target}"


def _require_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer")
    return value


class DiagnoseState:
    """Token usage for the current day and cooldown expiry times, persisted as JSON."""

    def __init__(self, state_dir: str | os.PathLike[str]) -> None:
        self.path = Path(state_dir) / STATE_FILE
        self.date = _today()
        self.input_tokens = 0
        self.output_tokens = 0
        self.cooldowns: dict[str, int] = {}
        self._lock = threading.Lock()

    def add_tokens(self, input_tokens: int, output_tokens: int) -> None:
        with self._lock:
            self._reset_if_new_day()
            self.input_tokens += input_tokens
            self.output_tokens += output_tokens

    def total_tokens(self) -> int:
        with self._lock:
            self._reset_if_new_day()
            return self.input_tokens + self.output_tokens

    def update_cooldown(self, plugin: str, target: str, duration: float | timedelta) -> None:
        """Start a cooldown of ``duration`` (seconds or timedelta) for the target."""
        if isinstance(duration, timedelta):
            duration = duration.total_seconds()
        with self._lock:
            self.cooldowns[_key(plugin, target)] = int(time.time() + duration)

    def is_cooldown_active(self, plugin: str, target: str) -> bool:
        key = _key(plugin, target)
        with self._lock:
            expires = self.cooldowns.get(key)
            if expires is None:
                return False
            if _now() >= expires:
                del self.cooldowns[key]
                return False
            return True

    def is_daily_limit_reached(self, limit: int) -> bool:
        """Whether today's token usage has reached ``limit``; 0 or less means no limit."""
        if limit <= 0:
            return False
        return self.total_tokens() >= limit

    def format_usage(self) -> str:
        with self._lock:
            return (
                f"date={self.date} input={self.input_tokens} output={self.output_tokens} "
                f"total={self.input_tokens + self.output_tokens}"
            )

    def load(self) -> None:
        """Read state from disk; a missing file leaves the state unchanged."""
        try:
            raw = self.path.read_bytes()
        except OSError:
            return
        with self._lock:
            try:
                self._apply(json.loads(raw))
            except (ValueError, TypeError) as exc:
                _log.warning("failed to parse diagnose state at %s, resetting: %s", self.path, exc)
                self.date = _today()
                self.input_tokens = 0
                self.output_tokens = 0
            self._reset_if_new_day()
            self._clean_expired_cooldowns()

    def save(self) -> None:
        """Write state to disk atomically; failures are logged."""
        with self._lock:
            data = json.dumps(
                {
                    "date": self.date,
                    "input_tokens": self.input_tokens,
                    "output_tokens": self.output_tokens,
                    "cooldowns": dict(self.cooldowns),
                },
                indent=2,
            )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("failed to create state dir: %s", exc)
            return
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp.write_text(data, encoding="utf-8")
        except OSError as exc:
            _log.warning("failed to write state file: %s", exc)
            return
        try:
            os.replace(tmp, self.path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            _log.warning("failed to rename state file: %s", exc)

    def _apply(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise TypeError("state is not a JSON object")
        day = data.get("date", self.date)
        if not isinstance(day, str):
            raise TypeError("date must be a string")
        input_tokens = _require_int(data.get("input_tokens", self.input_tokens), "input_tokens")
        output_tokens = _require_int(data.get("output_tokens", self.output_tokens), "output_tokens")
        raw_cooldowns = data.get("cooldowns", self.cooldowns)
        if raw_cooldowns is None:
            raw_cooldowns = {}
        if not isinstance(raw_cooldowns, dict):
            raise TypeError("cooldowns must be an object")
        cooldowns = {str(k): _require_int(v, "cooldown") for k, v in raw_cooldowns.items()}
        self.date = day
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.cooldowns = cooldowns

    def _reset_if_new_day(self) -> None:
        today = _today()
        if self.date != today:
            self.date = today
            self.input_tokens = 0
            self.output_tokens = 0

    def _clean_expired_cooldowns(self) -> None:
        now = _now()
        self.cooldowns = {k: v for k, v in self.cooldowns.items() if now < v}