"""Multi-turn chat with tool calling and bounded history."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

from .executor import format_tool_args_display, parse_args, parse_tool_args, runtime_os, truncate_output
from .registry import ToolRegistry
from .toolset import (
    ChatClient,
    Message,
    Parameters,
    Property,
    Tool,
    ToolFunction,
    Usage,
)
from .types import DiagnoseError, ProgressCallback, ProgressEvent, ProgressEventType, ToolScope

CHAT_MAX_ROUNDS = 20
MAX_HISTORY_MESSAGES = 40

INCOMPLETE_REPLY = "[incomplete] max tool-calling rounds reached"
REJECTED_REPLY = "user rejected command execution"


@runtime_checkable
class ShellExecutor(Protocol):
    """Runs shell commands after the user approves them."""

    def execute_shell(self, command: str, timeout: float) -> tuple[str, bool]:
        """Return the output and whether the user approved; raise on failure."""
        ...


@dataclass
class ChatStreamConfig:
    """Settings for a chat stream; tool_timeout is in seconds, 0 or less means none."""

    client: ChatClient
    registry: ToolRegistry
    tool_timeout: float = 30.0
    system_prompt: str = ""
    allow_shell: bool = False
    shell_executor: ShellExecutor | None = None
    progress_callback: ProgressCallback | None = None


def _call_with_timeout(func: Callable[[], str], timeout: float) -> str:
    if timeout <= 0:
        return func()
    outcome: dict[str, object] = {}

    def target() -> None:
        try:
            outcome["value"] = func()
        except BaseException as exc:  # re-raised in the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise DiagnoseError("context deadline exceeded")
    error = outcome.get("error")
    if isinstance(error, BaseException):
        raise error
    return str(outcome.get("value", ""))


class ChatStream:
    """A conversation with the model that keeps history across user messages."""

    def __init__(self, config: ChatStreamConfig) -> None:
        self._client = config.client
        self._registry = config.registry
        self._tools = build_chat_tool_set(config.allow_shell)
        self._messages: list[Message] = [Message(role="system", content=config.system_prompt)]
        self._tool_timeout = config.tool_timeout
        self._shell_executor = config.shell_executor
        self._progress = config.progress_callback

    @property
    def messages(self) -> list[Message]:
        """A copy of the current history."""
        return list(self._messages)

    def reset(self) -> None:
        """Drop the history, keeping only the system prompt."""
        if self._messages and self._messages[0].role == "system":
            self._messages = [self._messages[0]]
        else:
            self._messages = []

    def handle_message(self, text: str) -> tuple[str, Usage]:
        """Process one user message and return the reply with token usage.

        On failure the user message is removed from history and the error raised.
        """
        self._messages.append(Message(role="user", content=text))
        self._messages = trim_history(self._messages)
        count = len(self._messages)
        try:
            return self._conversation_loop()
        except Exception:
            del self._messages[count - 1:]
            raise

    def _emit(self, event: ProgressEvent) -> None:
        if self._progress is not None:
            self._progress(event)

    def _conversation_loop(self) -> tuple[str, Usage]:
        total = Usage()
        for round_num in range(1, CHAT_MAX_ROUNDS + 1):
            self._emit(ProgressEvent(type=ProgressEventType.AI_START, round=round_num))
            start = time.monotonic()
            try:
                resp, _model = self._client.chat(list(self._messages), self._tools)
            except Exception as exc:
                self._emit(ProgressEvent(
                    type=ProgressEventType.AI_DONE, round=round_num, duration=time.monotonic() - start
                ))
                raise DiagnoseError(f"AI API call failed: {exc}") from exc
            self._emit(ProgressEvent(
                type=ProgressEventType.AI_DONE, round=round_num, duration=time.monotonic() - start
            ))

            total.prompt_tokens += resp.usage.prompt_tokens
            total.completion_tokens += resp.usage.completion_tokens
            total.total_tokens += resp.usage.total_tokens

            if not resp.choices:
                raise DiagnoseError("AI returned empty response")

            message = resp.choices[0].message
            content = message.content
            tool_calls = list(message.tool_calls)

            if not tool_calls:
                self._messages.append(Message(role="assistant", content=content))
                return content, total

            if content:
                self._emit(ProgressEvent(
                    type=ProgressEventType.AI_DONE, round=round_num, reasoning=content
                ))

            self._messages.append(Message(role="assistant", content=content, tool_calls=tool_calls))

            for call in tool_calls:
                name = call.function.name
                display = format_tool_args_display(name, call.function.arguments)
                self._emit(ProgressEvent(
                    type=ProgressEventType.TOOL_START, round=round_num, tool_name=name, tool_args=display
                ))
                tool_start = time.monotonic()
                is_error = False
                try:
                    result = self._execute_tool(name, call.function.arguments)
                except Exception as exc:  # tool failures are reported to the model
                    is_error = True
                    result = f"error: {exc}"
                elapsed = time.monotonic() - tool_start
                result = truncate_output(result)
                self._emit(ProgressEvent(
                    type=ProgressEventType.TOOL_DONE,
                    round=round_num,
                    tool_name=name,
                    tool_args=display,
                    duration=elapsed,
                    result_len=len(result.encode("utf-8")),
                    is_error=is_error,
                    tool_output=result,
                ))
                self._messages.append(Message(role="tool", tool_call_id=call.id, content=result))

        return INCOMPLETE_REPLY, total

    def _execute_tool(self, name: str, raw_args: str) -> str:
        args = parse_args(raw_args)
        goos = runtime_os()

        if name == "list_tool_categories":
            return self._registry.list_categories_for_os(goos)

        if name == "list_tools":
            category = args.get("category", "")
            if not category:
                raise DiagnoseError("list_tools requires 'category' parameter")
            return self._registry.list_tools_for_os(category, goos)

        if name == "call_tool":
            tool_name = args.get("name", "")
            if not tool_name:
                raise DiagnoseError("call_tool requires 'name' parameter")
            tool = self._registry.get(tool_name)
            if tool is None:
                raise DiagnoseError(f"unknown tool: {tool_name}")
            if tool.scope == ToolScope.REMOTE:
                raise DiagnoseError(
                    f"tool {tool.name} requires a remote connection (not available in chat mode)"
                )
            execute = tool.execute
            if execute is None:
                raise DiagnoseError(f"tool {tool.name} has no Execute function")
            tool_args = parse_tool_args(args.get("tool_args", "")) or {}
            return _call_with_timeout(lambda: execute(tool_args), self._tool_timeout)

        if name == "exec_shell":
            if self._shell_executor is None:
                raise DiagnoseError("shell execution not enabled (no ShellExecutor configured)")
            command = args.get("command", "")
            if not command:
                raise DiagnoseError("exec_shell requires 'command' parameter")
            output, approved = self._shell_executor.execute_shell(command, self._tool_timeout)
            if not approved:
                return REJECTED_REPLY
            return output

        tool = self._registry.get(name)
        if tool is None:
            raise DiagnoseError(f"unknown tool: {name}")
        execute = tool.execute
        if execute is None:
            raise DiagnoseError(f"tool {tool.name} has no Execute function")
        return _call_with_timeout(lambda: execute(args), self._tool_timeout)


def build_chat_tool_set(allow_shell: bool) -> list[Tool]:
    """Function definitions offered to the model in chat mode."""
    tools = [
        Tool(function=ToolFunction(
            name="call_tool",
            description="Invoke a diagnostic tool by name. All available tools are listed in the system prompt.",
            parameters=Parameters(
                properties={
                    "name": Property(type="string", description="Tool name"),
                    "tool_args": Property(type="string", description="Tool arguments as JSON string"),
                },
                required=["name"],
            ),
        )),
        Tool(function=ToolFunction(
            name="list_tool_categories",
            description="List all available tool categories (plugins). Use this to explore available diagnostic areas.",
            parameters=Parameters(properties={}, required=[]),
        )),
        Tool(function=ToolFunction(
            name="list_tools",
            description="Show detailed parameter info for tools in a category. Use only when you need parameter details not shown in the catalog.",
            parameters=Parameters(
                properties={"category": Property(type="string", description="Tool category name")},
                required=["category"],
            ),
        )),
    ]
    if allow_shell:
        tools.append(Tool(function=ToolFunction(
            name="exec_shell",
            description="Execute a shell command. Use when built-in tools are insufficient.",
            parameters=Parameters(
                properties={"command": Property(type="string", description="Shell command to execute")},
                required=["command"],
            ),
        )))
    return tools


def _in_tool_sequence(msg: Message) -> bool:
    return msg.role == "tool" or (msg.role == "assistant" and bool(msg.tool_calls))


def trim_history(messages: list[Message]) -> list[Message]:
    """Keep the system prompt and the most recent messages.

    A tool-call sequence (assistant call plus tool replies) is never split.
    """
    if len(messages) <= MAX_HISTORY_MESSAGES + 1:
        return messages

    cut = len(messages) - MAX_HISTORY_MESSAGES
    safe_cut = next(
        (i for i in range(cut, len(messages)) if not _in_tool_sequence(messages[i])),
        len(messages),
    )

    if safe_cut < len(messages):
        cut = safe_cut
    elif len(messages) <= MAX_HISTORY_MESSAGES * 2:
        return messages

    return [messages[0], *messages[cut:]]