import pytest

from digcore.executor import (
    MAX_RECORD_RESULT_BYTES,
    MAX_TOOL_OUTPUT_BYTES,
    execute_tool,
    format_tool_args_display,
    parse_args,
    parse_tool_args,
    runtime_os,
    truncate_for_record,
    truncate_output,
)
from digcore.registry import ToolRegistry
from digcore.types import DiagnoseError, DiagnoseSession, DiagnoseTool, ToolParam, ToolScope


def test_parse_args_string_values():
    m = parse_args('{"name":"redis_info","section":"memory"}')
    assert m == {"name": "redis_info", "section": "memory"}


def test_parse_args_numeric_and_bool_coercion():
    m = parse_args('{"count": 10, "verbose": true}')
    assert m["count"] == "10"
    assert m["verbose"] == "true"


def test_parse_args_empty():
    assert parse_args("") == {}


def test_parse_args_invalid_json_falls_back():
    assert parse_args("not-json") == {"_raw": "not-json"}


def test_parse_args_nested_object_reserialized():
    m = parse_args('{"name":"process_detail","tool_args":{"pid":3846}}')
    assert m["name"] == "process_detail"
    assert parse_tool_args(m["tool_args"])["pid"] == "3846"


def test_parse_tool_args_numeric():
    assert parse_tool_args('{"pid": 3846}')["pid"] == "3846"


def test_parse_args_null_is_empty_string():
    assert parse_args('{"pid": null}')["pid"] == ""


def test_parse_args_large_number_decimal():
    assert parse_args('{"big": 100000000000}')["big"] == "100000000000"


def test_parse_args_large_float_not_scientific():
    assert parse_args('{"big": 1e20}')["big"] == "100000000000000000000"


def test_parse_tool_args_empty_is_none():
    assert parse_tool_args("") is None


def test_parse_args_non_object_falls_back():
    assert parse_args("[1, 2]") == {"_raw": "[1, 2]"}


def test_truncate_output_short_unchanged():
    assert truncate_output("hello world") == "hello world"


def test_truncate_output_long():
    result = truncate_output("x" * (MAX_TOOL_OUTPUT_BYTES + 100))
    assert len(result) <= MAX_TOOL_OUTPUT_BYTES + 30
    assert result.endswith("...[output truncated]")


def test_truncate_for_record_long():
    result = truncate_for_record("y" * (MAX_RECORD_RESULT_BYTES + 5))
    assert result.endswith("...[record truncated]")
    assert result.startswith("y" * MAX_RECORD_RESULT_BYTES)


def test_truncate_output_keeps_characters_whole():
    result = truncate_output("你" * MAX_TOOL_OUTPUT_BYTES)
    body = result[: -len("\n...[output truncated]")]
    assert set(body) == {"你"}
    assert len(body.encode("utf-8")) <= MAX_TOOL_OUTPUT_BYTES


def test_format_display_call_tool():
    raw = '{"name":"disk_usage","tool_args":"{\\"path\\":\\"/\\"}"}'
    assert format_tool_args_display("call_tool", raw) == 'disk_usage {"path":"/"}'
    assert format_tool_args_display("call_tool", '{"name":"x","tool_args":"{}"}') == "x"


def test_format_display_list_tools_and_default():
    assert format_tool_args_display("list_tools", '{"category":"disk"}') == "disk"
    assert format_tool_args_display("redis_info", '{"section":"memory"}') == ""


def test_format_display_exec_shell_truncated():
    cmd = "a" * 100
    shown = format_tool_args_display("exec_shell", f'{{"command":"{cmd}"}}')
    assert shown == "a" * 77 + "..."
    assert format_tool_args_display("exec_shell", '{"command":"ls"}') == "ls"


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register_category("disk", "disk", "Disk diagnostic tools", ToolScope.LOCAL)
    reg.register(
        "disk",
        DiagnoseTool(
            name="disk_usage",
            description="Show disk usage",
            parameters=[ToolParam(name="path", type="string", required=True)],
            execute=lambda args: f"usage of {args.get('path', '?')}",
        ),
    )
    reg.register("disk", DiagnoseTool(name="disk_broken", scope=ToolScope.LOCAL))
    reg.register(
        "disk",
        DiagnoseTool(
            name="disk_exotic",
            supported_os=["no-such-os"],
            execute=lambda args: "never",
        ),
    )
    reg.register_category("redis", "redis", "Redis tools", ToolScope.REMOTE)
    reg.register(
        "redis",
        DiagnoseTool(
            name="redis_info",
            scope=ToolScope.REMOTE,
            remote_execute=lambda session, args: f"{session.accessor}:{args.get('section', '')}",
        ),
    )
    return reg


def test_execute_direct_tool(registry):
    assert execute_tool(registry, None, "disk_usage", '{"path":"/var"}') == "usage of /var"


def test_execute_call_tool(registry):
    raw = '{"name":"disk_usage","tool_args":"{\\"path\\":\\"/tmp\\"}"}'
    assert execute_tool(registry, None, "call_tool", raw) == "usage of /tmp"


def test_execute_call_tool_without_args(registry):
    assert execute_tool(registry, None, "call_tool", '{"name":"disk_usage"}') == "usage of ?"


def test_execute_list_tool_categories(registry):
    out = execute_tool(registry, None, "list_tool_categories", "{}")
    assert out == registry.list_categories_for_os(runtime_os())
    assert "disk" in out


def test_execute_list_tools(registry):
    out = execute_tool(registry, None, "list_tools", '{"category":"disk"}')
    assert "disk_usage - Show disk usage" in out


def test_execute_list_tools_requires_category(registry):
    with pytest.raises(DiagnoseError, match="list_tools requires 'category' parameter"):
        execute_tool(registry, None, "list_tools", "{}")


def test_execute_call_tool_requires_name(registry):
    with pytest.raises(DiagnoseError, match="call_tool requires 'name' parameter"):
        execute_tool(registry, None, "call_tool", "{}")


def test_execute_unknown_tool(registry):
    with pytest.raises(DiagnoseError, match="unknown tool: nope"):
        execute_tool(registry, None, "nope", "{}")
    with pytest.raises(DiagnoseError, match="unknown tool: nope"):
        execute_tool(registry, None, "call_tool", '{"name":"nope"}')


def test_execute_unsupported_os(registry):
    with pytest.raises(DiagnoseError, match="is not supported on"):
        execute_tool(registry, None, "disk_exotic", "{}")


def test_execute_missing_execute(registry):
    with pytest.raises(DiagnoseError, match="has no Execute function"):
        execute_tool(registry, None, "disk_broken", "{}")


def test_execute_remote_needs_session(registry):
    with pytest.raises(DiagnoseError, match="no session available for remote tool redis_info"):
        execute_tool(registry, None, "redis_info", "{}")


def test_execute_remote_with_session(registry):
    session = DiagnoseSession(accessor="conn")
    assert execute_tool(registry, session, "redis_info", '{"section":"memory"}') == "conn:memory"


def test_runtime_os_is_lower_case():
    name = runtime_os()
    assert name == name.lower()
    assert name