"""Core data types shared by the diagnosis subsystem."""

from __future__ import annotations

import enum
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

_log = logging.getLogger(__name__)

MODE_ALERT = "alert"
MODE_INSPECT = "inspect"

EVENT_STATUS_CRITICAL = "Critical"
EVENT_STATUS_WARNING = "Warning"
EVENT_STATUS_INFO = "Info"
EVENT_STATUS_OK = "Ok"


class DiagnoseError(Exception):
    """Raised when a diagnosis step cannot be completed."""


class ToolScope(enum.IntEnum):
    """Where a diagnostic tool executes."""

    LOCAL = 0  # runs on this host (disk, cpu, mem)
    REMOTE = 1  # needs a connection to the remote target (redis, mysql)

    def __str__(self) -> str:
        return {ToolScope.LOCAL: "local", ToolScope.REMOTE: "remote"}.get(self, "unknown")


@dataclass
class ToolParam:
    """One parameter accepted by a diagnostic tool."""

    name: str
    type: str = ""
    description: str = ""
    required: bool = False


@dataclass
class DiagnoseTool:
    """A diagnostic tool that the AI can invoke."""

    name: str
    description: str = ""
    parameters: list[ToolParam] = field(default_factory=list)
    scope: ToolScope = ToolScope.LOCAL
    supported_os: list[str] = field(default_factory=list)
    execute: Callable[[dict[str, str]], str] | None = None
    remote_execute: Callable[[DiagnoseSession, dict[str, str]], str] | None = None

    def supports_os(self, goos: str) -> bool:
        """Whether the tool is exposed on the given OS; no list means every OS."""
        return not self.supported_os or goos in self.supported_os


@dataclass
class ToolCategory:
    """A group of related tools registered by one plugin."""

    name: str
    plugin: str = ""
    description: str = ""
    scope: ToolScope = ToolScope.LOCAL
    tools: list[DiagnoseTool] = field(default_factory=list)


@dataclass
class CheckSnapshot:
    """State of one alerting check at the moment a diagnosis is triggered."""

    check: str = ""
    status: str = ""
    current_value: str = ""
    threshold_desc: str = ""
    description: str = ""


class ProgressEventType(enum.IntEnum):
    """Kind of progress milestone fired during a diagnosis run."""

    AI_START = 0
    AI_DONE = 1
    TOOL_START = 2
    TOOL_DONE = 3


@dataclass
class ProgressEvent:
    """Details about one progress milestone; durations are in seconds."""

    type: ProgressEventType
    round: int = 0
    tool_name: str = ""
    tool_args: str = ""
    reasoning: str = ""
    duration: float = 0.0
    result_len: int = 0
    is_error: bool = False
    tool_output: str = ""


ProgressCallback = Callable[[ProgressEvent], None]
StreamCallback = Callable[[str, str, bool, "dict[str, Any] | None"], None]


@dataclass
class DiagnoseRequest:
    """A request to diagnose (or inspect) one target; times are in seconds."""

    mode: str = ""
    events: list[Any] = field(default_factory=list)
    plugin: str = ""
    target: str = ""
    runtime_os: str = ""
    checks: list[CheckSnapshot] = field(default_factory=list)
    instance_ref: Any = None
    timeout: float = 0.0
    cooldown: float = 0.0
    descriptions: str = ""
    on_progress: ProgressCallback | None = None


@dataclass
class AlertRecord:
    """Alert context that triggered a diagnosis."""

    plugin: str = ""
    target: str = ""
    checks: list[CheckSnapshot] = field(default_factory=list)


@dataclass
class AIRecord:
    """Model usage for one diagnosis."""

    model: str = ""
    total_rounds: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ToolCallRecord:
    """One tool invocation within a round."""

    name: str = ""
    args: dict[str, str] = field(default_factory=dict)
    result: str = ""
    duration_ms: int = 0


@dataclass
class RoundRecord:
    """One round of AI interaction."""

    round: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    ai_reasoning: str = ""


_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(r"^(?P<base>.+T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$")


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    text = value.isoformat()
    if value.utcoffset() == _ZERO_TIME.utcoffset():
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    normalized = match["base"]
    if match["frac"]:
        normalized += "." + match["frac"][:6].ljust(6, "0")
    tz = match["tz"]
    if tz:
        normalized += "+00:00" if tz == "Z" else tz
    return datetime.fromisoformat(normalized)


def _check_to_dict(check: CheckSnapshot) -> dict[str, Any]:
    out: dict[str, Any] = {
        "check": check.check,
        "status": check.status,
        "current_value": check.current_value,
    }
    if check.threshold_desc:
        out["threshold_desc"] = check.threshold_desc
    out["description"] = check.description
    return out


def _check_from_dict(data: dict[str, Any]) -> CheckSnapshot:
    return CheckSnapshot(
        check=data.get("check", ""),
        status=data.get("status", ""),
        current_value=data.get("current_value", ""),
        threshold_desc=data.get("threshold_desc", ""),
        description=data.get("description", ""),
    )


def _tool_call_to_dict(call: ToolCallRecord) -> dict[str, Any]:
    out: dict[str, Any] = {"name": call.name}
    if call.args:
        out["args"] = dict(call.args)
    out["result"] = call.result
    out["duration_ms"] = call.duration_ms
    return out


def _round_to_dict(rnd: RoundRecord) -> dict[str, Any]:
    out: dict[str, Any] = {"round": rnd.round}
    if rnd.tool_calls:
        out["tool_calls"] = [_tool_call_to_dict(c) for c in rnd.tool_calls]
    if rnd.ai_reasoning:
        out["ai_reasoning"] = rnd.ai_reasoning
    return out


def _round_from_dict(data: dict[str, Any]) -> RoundRecord:
    return RoundRecord(
        round=data.get("round", 0),
        tool_calls=[
            ToolCallRecord(
                name=c.get("name", ""),
                args=dict(c.get("args") or {}),
                result=c.get("result", ""),
                duration_ms=c.get("duration_ms", 0),
            )
            for c in data.get("tool_calls") or []
        ],
        ai_reasoning=data.get("ai_reasoning", ""),
    )


@dataclass
class DiagnoseRecord:
    """Full trace of a single diagnosis run, stored as JSON."""

    id: str = ""
    mode: str = ""
    status: str = ""
    error: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now().astimezone())
    duration_ms: int = 0
    alert: AlertRecord = field(default_factory=AlertRecord)
    ai: AIRecord = field(default_factory=AIRecord)
    rounds: list[RoundRecord] = field(default_factory=list)
    report: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of the record."""
        out: dict[str, Any] = {"id": self.id, "mode": self.mode, "status": self.status}
        if self.error:
            out["error"] = self.error
        out["created_at"] = _format_time(self.created_at)
        out["duration_ms"] = self.duration_ms
        out["alert"] = {
            "plugin": self.alert.plugin,
            "target": self.alert.target,
            "checks": [_check_to_dict(c) for c in self.alert.checks],
        }
        out["ai"] = {
            "model": self.ai.model,
            "total_rounds": self.ai.total_rounds,
            "input_tokens": self.ai.input_tokens,
            "output_tokens": self.ai.output_tokens,
        }
        out["rounds"] = [_round_to_dict(r) for r in self.rounds]
        if self.report:
            out["report"] = self.report
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiagnoseRecord:
        """Build a record from its JSON form."""
        alert = data.get("alert") or {}
        ai = data.get("ai") or {}
        created = data.get("created_at")
        return cls(
            id=data.get("id", ""),
            mode=data.get("mode", ""),
            status=data.get("status", ""),
            error=data.get("error", ""),
            created_at=_parse_time(created) if created else _ZERO_TIME,
            duration_ms=data.get("duration_ms", 0),
            alert=AlertRecord(
                plugin=alert.get("plugin", ""),
                target=alert.get("target", ""),
                checks=[_check_from_dict(c) for c in alert.get("checks") or []],
            ),
            ai=AIRecord(
                model=ai.get("model", ""),
                total_rounds=ai.get("total_rounds", 0),
                input_tokens=ai.get("input_tokens", 0),
                output_tokens=ai.get("output_tokens", 0),
            ),
            rounds=[_round_from_dict(r) for r in data.get("rounds") or []],
            report=data.get("report", ""),
        )


@dataclass
class DiagnoseSession:
    """Lifecycle of one diagnosis run; remote tools share one accessor."""

    record: DiagnoseRecord | None = None
    accessor: Any = None
    start_time: float = field(default_factory=time.monotonic)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def close(self) -> None:
        """Release the shared accessor if it can be closed."""
        closer = getattr(self.accessor, "close", None)
        if self.accessor is None or not callable(closer):
            return
        try:
            closer()
        except Exception as exc:  # accessor failures must not break teardown
            _log.debug("session accessor close error: %s", exc)

    def __enter__(self) -> DiagnoseSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def severity_rank(status: str) -> int:
    """Numeric rank of an event status; higher is more severe."""
    return {
        EVENT_STATUS_CRITICAL: 3,
        EVENT_STATUS_WARNING: 2,
        EVENT_STATUS_INFO: 1,
    }.get(status, 0)