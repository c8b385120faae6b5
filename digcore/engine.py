"""Coordinator of AI-driven diagnosis runs and the process-wide engine."""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from .executor import (
    execute_tool,
    format_tool_args_display,
    parse_args,
    runtime_os,
    truncate_for_record,
    truncate_output,
)
from .prompt import build_inspect_prompt, build_system_prompt, format_direct_tools, is_remote_target
from .record import new_diagnose_record, save_record
from .registry import ToolRegistry
from .report import format_report_description
from .selftest import format_duration
from .state import DiagnoseState
from .toolset import ChatClient, Message, ToolCall, build_tool_set
from .types import (
    MODE_INSPECT,
    DiagnoseError,
    DiagnoseRecord,
    DiagnoseRequest,
    DiagnoseSession,
    ProgressCallback,
    ProgressEvent,
    ProgressEventType,
    RoundRecord,
    StreamCallback,
    ToolCallRecord,
)

_log = logging.getLogger(__name__)

T = TypeVar("T")

CONTEXT_NEARLY_FULL = "上下文空间即将耗尽。请基于目前收集到的信息，立即输出最终诊断报告。不要再调用任何工具。"
LAST_ROUND = "你已使用了所有可用的工具调用轮次。请基于目前收集到的信息，立即输出最终诊断报告。不要再调用任何工具。"
INCOMPLETE_ZH = "[诊断未完成] 已达到最大轮次限制，AI 未能在限定轮次内输出最终报告。"
INCOMPLETE_EN = "[Incomplete] Max round limit reached, AI did not produce a final report."
DESC_FORMAT_MARKDOWN = "markdown"

_POLL_INTERVAL = 0.02
_SMALL_CONTEXT_WINDOW = 12800


@dataclass
class EngineConfig:
    """Engine settings; times are in seconds, limits of 0 mean unlimited/unknown.

    ``notifier`` receives each forwarded report event and returns whether it was sent.
    """

    enabled: bool = True
    model: str = ""
    max_rounds: int = 8
    request_timeout: float = 60.0
    tool_timeout: float = 30.0
    max_concurrent_diagnoses: int = 3
    daily_token_limit: int = 0
    context_window_limit: int = 0
    language: str = "zh"
    notifier: Callable[[dict[str, Any]], bool] | None = None


class _Cancellation:
    """Cancellation flag with an optional deadline, chained to a parent."""

    def __init__(self, timeout: float = 0.0, parent: _Cancellation | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout > 0 else None
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    def error(self) -> str | None:
        if self._event.is_set():
            return "context canceled"
        if self._parent is not None:
            parent_error = self._parent.error()
            if parent_error:
                return parent_error
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return "context deadline exceeded"
        return None

    def run(self, func: Callable[[], T]) -> T:
        """Run ``func``; give up with DiagnoseError once cancelled or past the deadline."""
        err = self.error()
        if err:
            raise DiagnoseError(err)
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = func()
            except BaseException as exc:  # re-raised in the calling thread
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=target, daemon=True).start()
        while not done.wait(_POLL_INTERVAL):
            err = self.error()
            if err:
                raise DiagnoseError(err)
        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]


def _event_field(event: Any, name: str, default: Any = None) -> Any:
    if isinstance(event, dict):
        return event.get(name, default)
    return getattr(event, name, default)


def _emit(callback: ProgressCallback | None, event: ProgressEvent) -> None:
    if callback is not None:
        callback(event)


class DiagnoseEngine:
    """Runs diagnoses with cooldowns, a daily token budget and a concurrency limit."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: EngineConfig,
        client: ChatClient,
        state_dir: str | Path,
    ) -> None:
        self._registry = registry
        self._config = config
        self._client = client
        self._state_dir = Path(state_dir)
        self._state = DiagnoseState(self._state_dir)
        self._state.load()
        self._max_rounds = config.max_rounds
        self._context_window_limit = config.context_window_limit
        self._tool_timeout = config.tool_timeout
        self._lock = threading.Lock()
        self._in_flight: dict[str, _Cancellation] = {}
        self._slots = threading.BoundedSemaphore(max(config.max_concurrent_diagnoses, 0))
        self._stopped = threading.Event()

        limit = self._context_window_limit
        if 0 < limit < _SMALL_CONTEXT_WINDOW:
            _log.warning(
                "context_window is very small; system prompt with many tools may consume most "
                "of the budget (context_window_limit=%d, minimum_recommended=16000)",
                limit,
            )

    @property
    def state(self) -> DiagnoseState:
        """Token usage and cooldown state."""
        return self._state

    @property
    def registry(self) -> ToolRegistry:
        """The tool registry in use."""
        return self._registry

    def try_acquire(self) -> bool:
        """Take a concurrency slot without waiting; False when all are in use."""
        return self._slots.acquire(blocking=False)

    def release(self) -> None:
        """Give back a slot taken with try_acquire."""
        self._slots.release()

    def submit(self, req: DiagnoseRequest) -> None:
        """Schedule a diagnosis in the background unless a limit forbids it."""
        if self._stopped.is_set():
            return
        key = f"{req.plugin}::{req.target}"
        if self._state.is_cooldown_active(req.plugin, req.target):
            _log.debug("diagnose skipped: cooldown active (key=%s)", key)
            return
        if self._state.is_daily_limit_reached(self._config.daily_token_limit):
            _log.warning(
                "diagnose skipped: daily token limit reached (usage=%s, limit=%d)",
                self._state.format_usage(),
                self._config.daily_token_limit,
            )
            return
        if not self.try_acquire():
            _log.warning(
                "diagnose skipped: concurrency limit reached (key=%s, limit=%d)",
                key,
                self._config.max_concurrent_diagnoses,
            )
            return

        def worker() -> None:
            try:
                self.run_diagnose(req)
            finally:
                self.release()

        threading.Thread(target=worker, name=f"diagnose-{key}", daemon=True).start()

    def run_diagnose(self, req: DiagnoseRequest) -> DiagnoseRecord:
        """Run one diagnosis to the end, save its record and update the state."""
        session = DiagnoseSession(record=new_diagnose_record(req))
        record = session.record
        assert record is not None
        timeout = req.timeout or self._config.request_timeout * self._max_rounds
        cancellation = _Cancellation(timeout)
        self._register(req, cancellation)
        report = ""
        try:
            _log.info(
                "diagnose started (plugin=%s, target=%s, checks=%d)",
                req.plugin, req.target, len(req.checks),
            )
            try:
                report = self._diagnose(cancellation, req, session)
            except Exception as exc:
                record.status = "failed"
                record.error = str(exc)
                _log.warning(
                    "diagnose failed (plugin=%s, target=%s): %s", req.plugin, req.target, exc
                )
            else:
                record.status = "success"
                record.report = report
                _log.info(
                    "diagnose completed (plugin=%s, target=%s, rounds=%d, tokens=%d)",
                    req.plugin, req.target, record.ai.total_rounds,
                    record.ai.input_tokens + record.ai.output_tokens,
                )
            record.duration_ms = int((time.monotonic() - session.start_time) * 1000)

            try:
                save_record(record, self._state_dir)
            except DiagnoseError as exc:
                _log.warning("failed to save diagnose record: %s", exc)

            if report and req.events:
                self._forward_report(req, record, report)

            self._state.add_tokens(record.ai.input_tokens, record.ai.output_tokens)
            if req.mode != MODE_INSPECT:
                self._state.update_cooldown(req.plugin, req.target, req.cooldown)
            self._state.save()
            return record
        finally:
            self._unregister(req)
            session.close()

    def run_diagnose_streaming(
        self, req: DiagnoseRequest, callback: StreamCallback | None
    ) -> str:
        """Run a diagnosis reporting progress through ``callback``; return the report.

        Limits, cooldowns and records are left to the caller; errors are raised.
        """

        def stream(delta: str, stage: str) -> None:
            if callback is not None:
                callback(delta, stage, False, None)

        def on_progress(event: ProgressEvent) -> None:
            if event.type == ProgressEventType.AI_START:
                stream(f"[Round {event.round}] AI thinking...", "thinking")
            elif event.type == ProgressEventType.AI_DONE:
                if event.reasoning:
                    stream(event.reasoning, "answer")
            elif event.type == ProgressEventType.TOOL_START:
                stream(f"[Tool] {event.tool_name} {event.tool_args}", "tool_call")
            elif event.type == ProgressEventType.TOOL_DONE:
                status = "error" if event.is_error else "ok"
                stream(
                    f"[Tool done] {event.tool_name} ({status}, {event.result_len}B, "
                    f"{format_duration(event.duration)})",
                    "tool_result",
                )

        req.on_progress = on_progress
        session = DiagnoseSession(record=new_diagnose_record(req))
        record = session.record
        assert record is not None
        _log.info(
            "streaming_diagnose_started (plugin=%s, target=%s, mode=%s)",
            req.plugin, req.target, req.mode,
        )
        try:
            report = self._diagnose(_Cancellation(req.timeout), req, session)
        except Exception as exc:
            _log.warning(
                "streaming_diagnose_failed (plugin=%s, target=%s): %s", req.plugin, req.target, exc
            )
            raise
        finally:
            session.close()
        _log.info(
            "streaming_diagnose_completed (plugin=%s, target=%s, rounds=%d, tokens=%d)",
            req.plugin, req.target, record.ai.total_rounds,
            record.ai.input_tokens + record.ai.output_tokens,
        )
        return report

    def shutdown(self) -> None:
        """Refuse new work and cancel every running diagnosis."""
        self._stopped.set()
        with self._lock:
            cancellations = list(self._in_flight.values())
        for cancellation in cancellations:
            cancellation.cancel()
        _log.info("diagnose engine shutdown (cancelled=%d)", len(cancellations))

    def _register(self, req: DiagnoseRequest, cancellation: _Cancellation) -> None:
        with self._lock:
            self._in_flight[f"{req.plugin}::{req.target}"] = cancellation

    def _unregister(self, req: DiagnoseRequest) -> None:
        with self._lock:
            self._in_flight.pop(f"{req.plugin}::{req.target}", None)

    def _init_accessor(self, req: DiagnoseRequest, session: DiagnoseSession) -> None:
        if req.instance_ref is None or not self._registry.has_accessor_factory(req.plugin):
            return
        try:
            session.accessor = self._registry.create_accessor(req.plugin, req.instance_ref)
        except Exception as exc:
            raise DiagnoseError(
                f"create accessor: create accessor for {req.plugin}::{req.target}: {exc}"
            ) from exc

    def _build_prompt(self, req: DiagnoseRequest, direct_tools: str) -> str:
        catalog = self._registry.list_tool_catalog_smart_for_os(req.runtime_os)
        build = build_inspect_prompt if req.mode == MODE_INSPECT else build_system_prompt
        return build(
            req, direct_tools, catalog, socket.gethostname(),
            is_remote_target(req.target), self._config.language,
        )

    def _diagnose(
        self, cancellation: _Cancellation, req: DiagnoseRequest, session: DiagnoseSession
    ) -> str:
        record = session.record
        assert record is not None
        self._init_accessor(req, session)
        if not req.runtime_os:
            req.runtime_os = runtime_os()
        ai_tools, direct = build_tool_set(self._registry, req)
        messages = [Message(role="system", content=self._build_prompt(req, format_direct_tools(direct)))]

        record.ai.model = self._config.model
        limit = self._context_window_limit
        estimated_tokens = 0
        context_warned = False
        progress = req.on_progress

        for round_index in range(self._max_rounds):
            round_num = round_index + 1
            err = cancellation.error()
            if err:
                raise DiagnoseError(err)

            if limit > 0 and not context_warned and estimated_tokens > limit * 90 // 100:
                context_warned = True
                messages.append(Message(role="user", content=CONTEXT_NEARLY_FULL))
            elif round_index == self._max_rounds - 1:
                messages.append(Message(role="user", content=LAST_ROUND))

            _emit(progress, ProgressEvent(type=ProgressEventType.AI_START, round=round_num))
            ai_start = time.monotonic()
            snapshot = list(messages)
            try:
                resp, model_name = cancellation.run(lambda: self._client.chat(snapshot, ai_tools))
            except Exception as exc:
                _emit(progress, ProgressEvent(
                    type=ProgressEventType.AI_DONE, round=round_num,
                    duration=time.monotonic() - ai_start, is_error=True,
                ))
                raise DiagnoseError(f"AI API error at round {round_num}: {exc}") from exc
            ai_elapsed = time.monotonic() - ai_start
            record.ai.model = model_name

            if resp.usage.total_tokens > 0:
                estimated_tokens = resp.usage.total_tokens
            record.ai.input_tokens += resp.usage.prompt_tokens
            record.ai.output_tokens += resp.usage.completion_tokens

            content = ""
            tool_calls: list[ToolCall] = []
            if resp.choices:
                content = resp.choices[0].message.content
                tool_calls = list(resp.choices[0].message.tool_calls)

            _emit(progress, ProgressEvent(
                type=ProgressEventType.AI_DONE, round=round_num,
                reasoning=content, duration=ai_elapsed,
            ))

            if not tool_calls:
                record.ai.total_rounds = round_num
                return content

            messages.append(Message(role="assistant", content=content, tool_calls=tool_calls))
            round_record = RoundRecord(round=round_num)
            for call in tool_calls:
                round_record.tool_calls.append(
                    self._run_tool_call(cancellation, session, call, round_num, progress, messages)
                )
            round_record.ai_reasoning = content
            record.rounds.append(round_record)

        record.ai.total_rounds = self._max_rounds
        return INCOMPLETE_ZH if self._config.language == "zh" else INCOMPLETE_EN

    def _run_tool_call(
        self,
        cancellation: _Cancellation,
        session: DiagnoseSession,
        call: ToolCall,
        round_num: int,
        progress: ProgressCallback | None,
        messages: list[Message],
    ) -> ToolCallRecord:
        name = call.function.name
        raw_args = call.function.arguments
        display = format_tool_args_display(name, raw_args)
        _emit(progress, ProgressEvent(
            type=ProgressEventType.TOOL_START, round=round_num, tool_name=name, tool_args=display
        ))
        tool_cancellation = _Cancellation(self._tool_timeout, parent=cancellation)
        start = time.monotonic()
        is_error = False
        try:
            result = tool_cancellation.run(
                lambda: execute_tool(self._registry, session, name, raw_args)
            )
        except Exception as exc:  # tool failures are reported to the model
            is_error = True
            result = f"error: {exc}"
        elapsed = time.monotonic() - start
        truncated = truncate_output(result)
        _emit(progress, ProgressEvent(
            type=ProgressEventType.TOOL_DONE, round=round_num, tool_name=name,
            tool_args=display, duration=elapsed, result_len=len(result.encode("utf-8")),
            is_error=is_error, tool_output=truncated,
        ))
        messages.append(Message(role="tool", tool_call_id=call.id, content=truncated))
        return ToolCallRecord(
            name=name,
            args=parse_args(raw_args),
            result=truncate_for_record(result),
            duration_ms=int(elapsed * 1000),
        )

    def _forward_report(self, req: DiagnoseRequest, record: DiagnoseRecord, report: str) -> None:
        notifier = self._config.notifier
        if notifier is None:
            return
        description = format_report_description(
            record, report, self._config.language, self._state_dir
        )
        now = int(time.time())
        seen: set[str] = set()
        for original in req.events:
            alert_key = _event_field(original, "alert_key", "")
            if alert_key in seen:
                continue
            seen.add(alert_key)
            attrs = _event_field(original, "attrs") or None
            event = {
                "event_time": now,
                "event_status": _event_field(original, "event_status", ""),
                "alert_key": alert_key,
                "labels": dict(_event_field(original, "labels") or {}),
                "attrs": dict(attrs) if attrs else None,
                "description": description,
                "description_format": DESC_FORMAT_MARKDOWN,
            }
            if notifier(event):
                _log.info(
                    "diagnose report forwarded (alert_key=%s, plugin=%s, target=%s)",
                    alert_key, req.plugin, req.target,
                )
            else:
                _log.warning(
                    "diagnose report forward failed (alert_key=%s, plugin=%s, target=%s)",
                    alert_key, req.plugin, req.target,
                )


_global_lock = threading.RLock()
_global_engine: DiagnoseEngine | None = None


def init_engine(
    registry: ToolRegistry,
    config: EngineConfig,
    client: ChatClient,
    state_dir: str | Path,
) -> DiagnoseEngine | None:
    """Create the process-wide engine; None when diagnosis is disabled."""
    global _global_engine
    if not config.enabled:
        _log.info("AI diagnose disabled")
        return None
    with _global_lock:
        _global_engine = DiagnoseEngine(registry, config, client, state_dir)
        _log.info(
            "AI diagnose engine initialized (max_rounds=%d, max_concurrent=%d, tools=%d)",
            config.max_rounds, config.max_concurrent_diagnoses, registry.tool_count(),
        )
        return _global_engine


def global_engine() -> DiagnoseEngine | None:
    """The process-wide engine, or None when not initialized."""
    with _global_lock:
        return _global_engine


def shutdown_engine() -> None:
    """Stop the process-wide engine and forget it."""
    global _global_engine
    with _global_lock:
        if _global_engine is not None:
            _global_engine.shutdown()
        _global_engine = None
        _log.info("AI diagnose engine shutdown complete")