"""Chat message types and conversion of tools to function-calling definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

from .types import DiagnoseRequest, DiagnoseTool

if TYPE_CHECKING:
    from .registry import ToolRegistry


@dataclass
class FunctionCall:
    """Name and JSON arguments of a requested function call."""

    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    """One tool call requested by the model."""

    id: str = ""
    type: str = "function"
    function: FunctionCall = field(default_factory=FunctionCall)


@dataclass
class Message:
    """One chat message."""

    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""


@dataclass
class Property:
    """Schema of one function parameter."""

    type: str = ""
    description: str = ""


@dataclass
class Parameters:
    """Object schema of a function's parameters."""

    type: str = "object"
    properties: dict[str, Property] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)


@dataclass
class ToolFunction:
    """A function the model may call."""

    name: str
    description: str = ""
    parameters: Parameters | None = None


@dataclass
class Tool:
    """A tool definition offered to the model."""

    function: ToolFunction
    type: str = "function"


@dataclass
class Usage:
    """Token counts reported for one request."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Choice:
    """One completion choice."""

    message: Message
    index: int = 0
    finish_reason: str = ""


@dataclass
class ChatResponse:
    """A chat completion response."""

    id: str = ""
    choices: list[Choice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


@runtime_checkable
class ChatClient(Protocol):
    """A chat model endpoint; ``chat`` returns the response and the model name used."""

    def chat(self, messages: Sequence[Message], tools: Sequence[Tool]) -> tuple[ChatResponse, str]:
        """Send the conversation and return the response with the serving model's name."""
        ...


def build_tool_set(
    registry: ToolRegistry, req: DiagnoseRequest
) -> tuple[list[Tool], list[DiagnoseTool]]:
    """Direct tools of the request's plugin followed by the meta tools.

    Returns the definitions for the model and the direct tools themselves.
    """
    direct = registry.by_plugin_for_os(req.plugin, req.runtime_os)
    ai_tools = [diagnose_tool_to_ai(t) for t in direct]
    ai_tools.extend(meta_tools())
    return ai_tools, direct


def meta_tools() -> list[Tool]:
    """Tools that let the model discover and call any registered tool."""
    return [
        Tool(
            function=ToolFunction(
                name="list_tools",
                description="查看某个工具类别下所有工具的详细参数说明（仅在需要参数细节时使用）",
                parameters=Parameters(
                    properties={"category": Property(type="string", description="工具大类名称")},
                    required=["category"],
                ),
            )
        ),
        Tool(
            function=ToolFunction(
                name="call_tool",
                description="调用一个非直接注入的诊断工具（工具名和参数见系统提示中的工具目录）",
                parameters=Parameters(
                    properties={
                        "name": Property(type="string", description="工具名称"),
                        "tool_args": Property(type="string", description="工具参数，JSON 字符串格式"),
                    },
                    required=["name"],
                ),
            )
        ),
    ]


def diagnose_tool_to_ai(tool: DiagnoseTool) -> Tool:
    """Function-calling definition of a diagnostic tool."""
    parameters = None
    if tool.parameters:
        parameters = Parameters(
            properties={
                p.name: Property(type=p.type, description=p.description) for p in tool.parameters
            },
            required=[p.name for p in tool.parameters if p.required],
        )
    return Tool(
        function=ToolFunction(name=tool.name, description=tool.description, parameters=parameters)
    )