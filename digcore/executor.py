"""Routing of model tool calls and handling of their arguments and output."""

from __future__ import annotations

import json
import platform
from decimal import Decimal
from typing import Any

from .registry import ToolRegistry
from .report import truncate_utf8
from .types import DiagnoseError, DiagnoseSession, DiagnoseTool, ToolScope

MAX_TOOL_OUTPUT_BYTES = 32 * 1024  # per tool output sent to the model
MAX_RECORD_RESULT_BYTES = 64 * 1024  # per tool result stored in a record

_OUTPUT_SUFFIX = "\n...[output truncated]"
_RECORD_SUFFIX = "\n...[record truncated]"
_DISPLAY_LIMIT = 80

_OS_NAMES = {"linux": "linux", "darwin": "darwin", "windows": "windows"}


def runtime_os() -> str:
    """Name of the running operating system: linux, darwin, windows, ..."""
    system = platform.system().lower()
    return _OS_NAMES.get(system, system)


def execute_tool(
    registry: ToolRegistry, session: DiagnoseSession | None, name: str, raw_args: str
) -> str:
    """Run one tool call: a meta tool (list/call) or a directly offered tool."""
    args = parse_args(raw_args)
    goos = runtime_os()

    if name == "list_tool_categories":
        return registry.list_categories_for_os(goos)

    if name == "list_tools":
        category = args.get("category", "")
        if not category:
            raise DiagnoseError("list_tools requires 'category' parameter")
        return registry.list_tools_for_os(category, goos)

    if name == "call_tool":
        tool_name = args.get("name", "")
        if not tool_name:
            raise DiagnoseError("call_tool requires 'name' parameter")
        tool = _lookup(registry, tool_name, goos)
        tool_args = parse_tool_args(args.get("tool_args", "")) or {}
        return _run(session, tool, tool_args)

    return _run(session, _lookup(registry, name, goos), args)


def _lookup(registry: ToolRegistry, name: str, goos: str) -> DiagnoseTool:
    tool = registry.get(name)
    if tool is None:
        raise DiagnoseError(f"unknown tool: {name}")
    if not registry.tool_supported_on(name, goos):
        raise DiagnoseError(f"tool {name} is not supported on {goos}")
    return tool


def _run(session: DiagnoseSession | None, tool: DiagnoseTool, args: dict[str, str]) -> str:
    if tool.scope == ToolScope.LOCAL:
        if tool.execute is None:
            raise DiagnoseError(f"tool {tool.name} has no Execute function")
        return tool.execute(args)

    if tool.remote_execute is None:
        raise DiagnoseError(f"tool {tool.name} has no RemoteExecute function")
    if session is None:
        raise DiagnoseError(f"no session available for remote tool {tool.name}")
    with session.lock:
        return tool.remote_execute(session, args)


def parse_args(raw: str) -> dict[str, str]:
    """Flat string map of a call's JSON arguments; never None.

    Input that is not a JSON object is kept under the ``_raw`` key.
    """
    if not raw:
        return {}
    parsed = _string_map(raw)
    return {"_raw": raw} if parsed is None else parsed


def parse_tool_args(raw: str) -> dict[str, str] | None:
    """Like parse_args for the nested ``tool_args`` string, but None when empty."""
    if not raw:
        return None
    parsed = _string_map(raw)
    return {"_raw": raw} if parsed is None else parsed


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _string_map(raw: str) -> dict[str, str] | None:
    try:
        data = json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return {key: _to_text(value) for key, value in data.items()}


def _format_number(value: int | float) -> str:
    if isinstance(value, int):
        return str(value)
    return format(Decimal(repr(value)).normalize(), "f")


def _marshal(value: Any) -> str:
    text = json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, (dict, list)):
        return _marshal(value)
    return str(value)


def format_tool_args_display(name: str, raw_args: str) -> str:
    """Short human-readable summary of a call's arguments, or ""."""
    args = parse_args(raw_args)
    if name == "call_tool":
        tool_name = args.get("name", "")
        tool_args = args.get("tool_args", "")
        if tool_args and tool_args != "{}":
            return f"{tool_name} {tool_args}"
        return tool_name
    if name == "list_tools":
        return args.get("category", "")
    if name == "exec_shell":
        cmd = args.get("command", "")
        if len(cmd) > _DISPLAY_LIMIT:
            cmd = cmd[: _DISPLAY_LIMIT - 3] + "..."
        return cmd
    return ""


def truncate_output(s: str) -> str:
    """Limit tool output sent to the model to MAX_TOOL_OUTPUT_BYTES."""
    if len(s.encode("utf-8")) <= MAX_TOOL_OUTPUT_BYTES:
        return s
    return truncate_utf8(s, MAX_TOOL_OUTPUT_BYTES) + _OUTPUT_SUFFIX


def truncate_for_record(s: str) -> str:
    """Limit tool output stored in a record to MAX_RECORD_RESULT_BYTES."""
    if len(s.encode("utf-8")) <= MAX_RECORD_RESULT_BYTES:
        return s
    return truncate_utf8(s, MAX_RECORD_RESULT_BYTES) + _RECORD_SUFFIX