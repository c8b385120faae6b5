import threading
import time

import pytest

from digcore.engine import (
    DiagnoseEngine,
    EngineConfig,
    global_engine,
    init_engine,
    shutdown_engine,
)
from digcore.record import record_file_path
from digcore.registry import ToolRegistry
from digcore.toolset import ChatResponse, Choice, FunctionCall, Message, ToolCall, Usage
from digcore.types import (
    MODE_INSPECT,
    CheckSnapshot,
    DiagnoseError,
    DiagnoseRequest,
    DiagnoseTool,
    ToolScope,
)


def tool_response(name, arguments="{}", usage=None):
    return ChatResponse(
        id="r",
        choices=[Choice(
            message=Message(
                role="assistant",
                tool_calls=[ToolCall(id="tc-1", function=FunctionCall(name=name, arguments=arguments))],
            ),
            finish_reason="tool_calls",
        )],
        usage=usage or Usage(),
    )


def text_response(content, usage=None):
    return ChatResponse(
        id="r",
        choices=[Choice(message=Message(role="assistant", content=content), finish_reason="stop")],
        usage=usage or Usage(),
    )


class ScriptedClient:
    def __init__(self, responses):
        self._responses = list(responses)
        self.requests = []
        self._lock = threading.Lock()

    def chat(self, messages, tools):
        with self._lock:
            self.requests.append(list(messages))
            index = min(len(self.requests) - 1, len(self._responses) - 1)
        resp = self._responses[index]
        if isinstance(resp, Exception):
            raise resp
        return resp, "test-model"


class BlockingClient:
    def __init__(self):
        self.release = threading.Event()

    def chat(self, messages, tools):
        self.release.wait(5)
        return text_response("done"), "test-model"


class Closer:
    name = "mock-accessor"

    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def make_registry():
    registry = ToolRegistry()
    registry.register_category("redis", "redis", "Redis diagnostic tools", ToolScope.REMOTE)
    registry.register("redis", DiagnoseTool(
        name="test_local_tool",
        description="A test tool",
        scope=ToolScope.LOCAL,
        execute=lambda args: "used_memory:1234567\nmaxmemory:0",
    ))
    return registry


def redis_request(**kwargs):
    defaults = dict(
        plugin="redis",
        target="10.0.0.1:6379",
        checks=[CheckSnapshot(
            check="redis::used_memory",
            status="Warning",
            current_value="1.2GB",
            threshold_desc="Warning ≥ 1GB, Critical ≥ 2GB",
            description="redis used memory 1.2GB >= warning threshold 1GB",
        )],
        timeout=60,
        cooldown=600,
    )
    defaults.update(kwargs)
    return DiagnoseRequest(**defaults)


def test_diagnose_end_to_end(tmp_path):
    client = ScriptedClient([
        tool_response("test_local_tool", usage=Usage(100, 20, 120)),
        text_response("## 诊断摘要\nRedis 内存使用正常。\n## 根因分析\n无异常。", usage=Usage(200, 50, 250)),
    ])
    engine = DiagnoseEngine(make_registry(), EngineConfig(max_rounds=8), client, tmp_path)
    record = engine.run_diagnose(redis_request())

    assert record.status == "success", record.error
    assert "诊断摘要" in record.report
    assert record.ai.total_rounds == 2
    assert record.ai.model == "test-model"
    assert len(record.rounds) == 1
    assert len(record.rounds[0].tool_calls) == 1
    call = record.rounds[0].tool_calls[0]
    assert call.name == "test_local_tool"
    assert "used_memory:1234567" in call.result
    assert record_file_path(record, tmp_path).exists()
    assert engine.state.is_cooldown_active("redis", "10.0.0.1:6379")
    assert engine.state.total_tokens() == 370
    assert record.ai.input_tokens == 300
    assert record.ai.output_tokens == 70
    assert client.requests[1][-1].role == "tool"
    assert "used_memory:1234567" in client.requests[1][-1].content


def test_diagnose_meta_tools(tmp_path):
    registry = ToolRegistry()
    registry.register_category("disk", "disk", "Disk diagnostic tools", ToolScope.LOCAL)
    registry.register("disk", DiagnoseTool(
        name="disk_usage", description="Show disk usage", scope=ToolScope.LOCAL,
        execute=lambda args: "/dev/sda1: 80% used",
    ))
    client = ScriptedClient([
        tool_response("list_tool_categories", usage=Usage(total_tokens=50)),
        tool_response("list_tools", '{"category":"disk"}', usage=Usage(total_tokens=100)),
        text_response("诊断完成。", usage=Usage(total_tokens=150)),
    ])
    engine = DiagnoseEngine(registry, EngineConfig(max_rounds=8), client, tmp_path)
    record = engine.run_diagnose(redis_request(target="localhost:6379", timeout=30, cooldown=60))

    assert record.status == "success", record.error
    assert len(client.requests) == 3
    assert "disk" in record.rounds[0].tool_calls[0].result
    assert "disk_usage" in record.rounds[1].tool_calls[0].result


def test_no_context_warning_when_limit_unknown(tmp_path):
    registry = ToolRegistry()
    registry.register_category("mem", "mem", "Memory diagnostic tools", ToolScope.LOCAL)
    registry.register("mem", DiagnoseTool(
        name="test_local_tool", description="A test tool", execute=lambda args: "ok"
    ))
    client = ScriptedClient([
        tool_response("test_local_tool", usage=Usage(100, 20, 120)),
        text_response("诊断完成。", usage=Usage(120, 30, 150)),
    ])
    engine = DiagnoseEngine(
        registry, EngineConfig(max_rounds=4, context_window_limit=0), client, tmp_path
    )
    record = engine.run_diagnose(
        DiagnoseRequest(mode=MODE_INSPECT, plugin="mem", target="localhost", timeout=30)
    )

    assert record.status == "success", record.error
    assert len(client.requests[0]) == 1
    assert client.requests[0][0].role == "system"
    assert record.ai.total_rounds == 2
    assert len(record.rounds) == 1


def test_context_warning_injected_near_limit(tmp_path):
    client = ScriptedClient([
        tool_response("test_local_tool", usage=Usage(900, 50, 950)),
        text_response("done"),
    ])
    engine = DiagnoseEngine(
        make_registry(), EngineConfig(max_rounds=4, context_window_limit=1000), client, tmp_path
    )
    record = engine.run_diagnose(redis_request())

    assert record.status == "success"
    last = client.requests[1][-1]
    assert last.role == "user"
    assert "上下文空间即将耗尽" in last.content


def test_max_rounds_reached_zh(tmp_path):
    client = ScriptedClient([tool_response("test_local_tool")])
    engine = DiagnoseEngine(make_registry(), EngineConfig(max_rounds=2), client, tmp_path)
    record = engine.run_diagnose(redis_request())

    assert record.status == "success"
    assert record.report.startswith("[诊断未完成]")
    assert record.ai.total_rounds == 2
    assert len(record.rounds) == 2
    assert "所有可用的工具调用轮次" in client.requests[1][-1].content


def test_max_rounds_reached_en(tmp_path):
    client = ScriptedClient([tool_response("test_local_tool")])
    engine = DiagnoseEngine(
        make_registry(), EngineConfig(max_rounds=1, language="en"), client, tmp_path
    )
    record = engine.run_diagnose(redis_request())

    assert record.report == "[Incomplete] Max round limit reached, AI did not produce a final report."
    assert client.requests[0][-1].role == "user"


def test_ai_error_marks_record_failed(tmp_path):
    client = ScriptedClient([RuntimeError("boom")])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    record = engine.run_diagnose(redis_request())

    assert record.status == "failed"
    assert "AI API error at round 1" in record.error
    assert "boom" in record.error
    assert record_file_path(record, tmp_path).exists()


def test_unknown_tool_reported_as_error_result(tmp_path):
    client = ScriptedClient([tool_response("no_such_tool"), text_response("done")])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    record = engine.run_diagnose(redis_request())

    assert record.status == "success"
    assert record.rounds[0].tool_calls[0].result == "error: unknown tool: no_such_tool"


def test_inspect_mode_does_not_set_cooldown(tmp_path):
    client = ScriptedClient([text_response("ok", usage=Usage(5, 5, 10))])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    record = engine.run_diagnose(redis_request(mode=MODE_INSPECT))

    assert record.mode == MODE_INSPECT
    assert record.status == "success"
    assert not engine.state.is_cooldown_active("redis", "10.0.0.1:6379")
    assert engine.state.total_tokens() == 10


def test_remote_tool_uses_session_accessor(tmp_path):
    registry = ToolRegistry()
    registry.register_category("redis", "redis", "Redis tools", ToolScope.REMOTE)
    registry.register("redis", DiagnoseTool(
        name="redis_info", description="INFO", scope=ToolScope.REMOTE,
        remote_execute=lambda session, args: f"via {session.accessor.name}",
    ))
    accessor = Closer()
    registry.register_accessor_factory("redis", lambda ref: accessor)
    client = ScriptedClient([tool_response("redis_info"), text_response("done")])
    engine = DiagnoseEngine(registry, EngineConfig(), client, tmp_path)
    record = engine.run_diagnose(redis_request(instance_ref=object()))

    assert record.rounds[0].tool_calls[0].result == "via mock-accessor"
    assert accessor.closed is True


def test_accessor_factory_failure_fails_diagnosis(tmp_path):
    registry = make_registry()

    def failing(ref):
        raise RuntimeError("refused")

    registry.register_accessor_factory("redis", failing)
    client = ScriptedClient([text_response("done")])
    engine = DiagnoseEngine(registry, EngineConfig(), client, tmp_path)
    record = engine.run_diagnose(redis_request(instance_ref="ref"))

    assert record.status == "failed"
    assert "create accessor for redis::10.0.0.1:6379" in record.error
    assert client.requests == []


def test_report_forwarded_once_per_alert_key(tmp_path):
    sent = []

    def notifier(event):
        sent.append(event)
        return True

    client = ScriptedClient([text_response("all good")])
    engine = DiagnoseEngine(
        make_registry(), EngineConfig(language="en", notifier=notifier), client, tmp_path
    )
    events = [
        {"alert_key": "k1", "event_status": "Warning", "labels": {"a": "1"}},
        {"alert_key": "k1", "event_status": "Warning", "labels": {"a": "1"}},
        {"alert_key": "k2", "event_status": "Critical", "labels": {}, "attrs": {"x": "y"}},
    ]
    record = engine.run_diagnose(redis_request(events=events))

    assert record.status == "success"
    assert record.report == "all good"
    assert [e["alert_key"] for e in sent] == ["k1", "k2"]
    assert "all good" in sent[0]["description"]
    assert record.id in sent[0]["description"]
    assert sent[0]["labels"] == {"a": "1"}
    assert sent[0]["attrs"] is None
    assert sent[1]["attrs"] == {"x": "y"}
    assert sent[1]["description_format"] == "markdown"


def test_try_acquire_and_release(tmp_path):
    engine = DiagnoseEngine(
        ToolRegistry(), EngineConfig(max_concurrent_diagnoses=1), ScriptedClient([]), tmp_path
    )
    assert engine.try_acquire() is True
    assert engine.try_acquire() is False
    engine.release()
    assert engine.try_acquire() is True


def test_submit_runs_in_background(tmp_path):
    client = ScriptedClient([text_response("done", usage=Usage(5, 5, 10))])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    engine.submit(redis_request())
    deadline = time.monotonic() + 5
    while engine.state.total_tokens() == 0 and time.monotonic() < deadline:
        time.sleep(0.02)

    assert engine.state.total_tokens() == 10
    assert engine.state.is_cooldown_active("redis", "10.0.0.1:6379")


def test_submit_skipped_during_cooldown(tmp_path):
    client = ScriptedClient([text_response("done")])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    engine.state.update_cooldown("redis", "10.0.0.1:6379", 300)
    engine.submit(redis_request())
    time.sleep(0.2)
    assert client.requests == []


def test_submit_skipped_after_shutdown(tmp_path):
    client = ScriptedClient([text_response("done")])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    engine.shutdown()
    engine.submit(redis_request())
    time.sleep(0.2)
    assert client.requests == []


def test_streaming_reports_progress(tmp_path):
    client = ScriptedClient([
        ChatResponse(choices=[Choice(message=Message(
            role="assistant", content="checking memory",
            tool_calls=[ToolCall(id="t", function=FunctionCall(name="test_local_tool", arguments="{}"))],
        ))]),
        text_response("final report"),
    ])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    chunks = []
    report = engine.run_diagnose_streaming(
        redis_request(), lambda delta, stage, done, meta: chunks.append((stage, delta))
    )

    assert report == "final report"
    stages = [stage for stage, _ in chunks]
    assert stages[0] == "thinking"
    assert chunks[0][1] == "[Round 1] AI thinking..."
    assert ("answer", "checking memory") in chunks
    assert ("tool_call", "[Tool] test_local_tool ") in chunks
    assert any(s == "tool_result" and d.startswith("[Tool done] test_local_tool (ok, ") for s, d in chunks)
    assert not engine.state.is_cooldown_active("redis", "10.0.0.1:6379")


def test_streaming_raises_on_ai_error(tmp_path):
    client = ScriptedClient([RuntimeError("down")])
    engine = DiagnoseEngine(make_registry(), EngineConfig(), client, tmp_path)
    with pytest.raises(DiagnoseError, match="AI API error at round 1"):
        engine.run_diagnose_streaming(redis_request(), None)


def test_global_engine_lifecycle(tmp_path):
    registry = make_registry()
    try:
        assert init_engine(registry, EngineConfig(enabled=False), ScriptedClient([]), tmp_path) is None
        engine = init_engine(registry, EngineConfig(), ScriptedClient([]), tmp_path)
        assert global_engine() is engine
        assert engine.registry is registry
    finally:
        shutdown_engine()
    assert global_engine() is None