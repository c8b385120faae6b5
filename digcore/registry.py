"""Registry of the diagnostic tools contributed by plugins."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Iterable

from .types import DiagnoseError, DiagnoseTool, ToolCategory, ToolParam, ToolScope

_log = logging.getLogger(__name__)

AccessorFactory = Callable[[Any], Any]

MCP_PREFIX = "mcp:"


def _quote(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def _category_supports_os(cat: ToolCategory, goos: str) -> bool:
    desc = cat.description.lower()
    if "linux only." in desc:
        return goos == "linux"
    if "darwin only." in desc or "macos only." in desc:
        return goos == "darwin"
    if "windows only." in desc:
        return goos == "windows"
    return True


def _format_params_compact(params: Iterable[ToolParam]) -> str:
    return ", ".join(p.name + ("*" if p.required else "") for p in params)


def _format_tool_details(tools: Iterable[DiagnoseTool]) -> str:
    lines = []
    for tool in tools:
        lines.append(f"{tool.name} - {tool.description}\n")
        for p in tool.parameters:
            req = " (required)" if p.required else ""
            lines.append(f"  {p.name} ({p.type}): {p.description}{req}\n")
    return "".join(lines)


def _format_catalog_tools(tools: Iterable[DiagnoseTool]) -> str:
    return "".join(
        f"  {t.name}({_format_params_compact(t.parameters)}) - {t.description}\n" for t in tools
    )


def _catalog_entry(cat: ToolCategory, tools: list[DiagnoseTool], smart: bool) -> str:
    desc = cat.description or cat.name
    if smart and cat.name.startswith(MCP_PREFIX):
        return (
            f"[{cat.name}] ({len(tools)} tools) {desc} — "
            f"使用前先 list_tools(category={_quote(cat.name)})\n"
        )
    return f"[{cat.name}] {desc}\n" + _format_catalog_tools(tools)


class ToolRegistry:
    """All diagnostic tools, grouped by category; safe for concurrent reads."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._categories: dict[str, ToolCategory] = {}
        self._tools: dict[str, DiagnoseTool] = {}
        self._factories: dict[str, AccessorFactory] = {}

    def register(self, category: str, tool: DiagnoseTool) -> None:
        """Add a tool to a category, creating the category if needed.

        A tool whose name is already registered is logged and skipped.
        """
        with self._lock:
            if tool.name in self._tools:
                _log.warning(
                    "diagnose: duplicate tool name %r in category %r, skipped", tool.name, category
                )
                return
            cat = self._categories.get(category)
            if cat is None:
                cat = ToolCategory(name=category, plugin=category, scope=tool.scope)
                self._categories[category] = cat
            cat.tools.append(tool)
            self._tools[tool.name] = tool

    def register_category(self, name: str, plugin: str, description: str, scope: ToolScope) -> None:
        """Create or update a category's metadata."""
        with self._lock:
            cat = self._categories.get(name)
            if cat is None:
                cat = ToolCategory(name=name)
                self._categories[name] = cat
            cat.plugin = plugin
            cat.description = description
            cat.scope = scope

    def register_accessor_factory(self, plugin: str, factory: AccessorFactory) -> None:
        """Register the factory that builds a plugin's shared remote accessor."""
        with self._lock:
            self._factories[plugin] = factory

    def create_accessor(self, plugin: str, instance_ref: Any) -> Any:
        """Build an accessor with the plugin's registered factory."""
        with self._lock:
            factory = self._factories.get(plugin)
        if factory is None:
            raise DiagnoseError(f"no accessor factory registered for plugin {_quote(plugin)}")
        return factory(instance_ref)

    def has_accessor_factory(self, plugin: str) -> bool:
        with self._lock:
            return plugin in self._factories

    def get(self, name: str) -> DiagnoseTool | None:
        """The tool with this name, or None."""
        with self._lock:
            return self._tools.get(name)

    def by_plugin(self, plugin: str) -> list[DiagnoseTool]:
        """All tools of a category."""
        with self._lock:
            cat = self._categories.get(plugin)
            return list(cat.tools) if cat else []

    def by_plugin_for_os(self, plugin: str, goos: str) -> list[DiagnoseTool]:
        """Tools of a category that are supported on ``goos``."""
        with self._lock:
            cat = self._categories.get(plugin)
            if cat is None or not _category_supports_os(cat, goos):
                return []
            return [t for t in cat.tools if t.supports_os(goos)]

    def _sorted_categories(self) -> list[ToolCategory]:
        return sorted(self._categories.values(), key=lambda c: c.name)

    def list_categories(self) -> str:
        """One line per category, sorted by name."""
        with self._lock:
            return "".join(
                f"{cat.name:<12} ({len(cat.tools)} tools) - "
                f"{cat.description or cat.name + ' diagnostics'}\n"
                for cat in self._sorted_categories()
            )

    def list_categories_for_os(self, goos: str) -> str:
        """Like list_categories, keeping only categories with tools for ``goos``."""
        with self._lock:
            lines = []
            for cat in self._sorted_categories():
                if not _category_supports_os(cat, goos):
                    continue
                count = sum(1 for t in cat.tools if t.supports_os(goos))
                if count == 0:
                    continue
                desc = cat.description or cat.name + " diagnostics"
                lines.append(f"{cat.name:<12} ({count} tools) - {desc}\n")
            return "".join(lines)

    def list_tools(self, category: str) -> str:
        """Detailed listing of the tools in a category."""
        with self._lock:
            cat = self._categories.get(category)
            if cat is None:
                return f"unknown category: {_quote(category)}"
            return _format_tool_details(cat.tools)

    def list_tools_for_os(self, category: str, goos: str) -> str:
        """Detailed listing of a category's tools that are supported on ``goos``."""
        with self._lock:
            cat = self._categories.get(category)
            if cat is None:
                return f"unknown category: {_quote(category)}"
            none_msg = f"no tools in category {_quote(category)} support os={_quote(goos)}"
            if not _category_supports_os(cat, goos):
                return none_msg
            tools = [t for t in cat.tools if t.supports_os(goos)]
            if not tools:
                return none_msg
            return _format_tool_details(tools)

    def categories(self) -> list[str]:
        """Sorted category names."""
        with self._lock:
            return sorted(self._categories)

    def tool_count(self) -> int:
        with self._lock:
            return len(self._tools)

    def categories_with_tools(self) -> list[ToolCategory]:
        """Copies of all categories, sorted by name."""
        with self._lock:
            return [replace(cat, tools=list(cat.tools)) for cat in self._sorted_categories()]

    def list_all_tools(self) -> str:
        """Compact catalog of every tool, grouped by category."""
        with self._lock:
            return "".join(
                _catalog_entry(cat, cat.tools, smart=False) for cat in self._sorted_categories()
            )

    def tool_supported_on(self, name: str, goos: str) -> bool:
        """Whether the named tool and its category are available on ``goos``."""
        with self._lock:
            tool = self._tools.get(name)
            if tool is None or not tool.supports_os(goos):
                return False
            for cat in self._categories.values():
                if any(t.name == name for t in cat.tools):
                    return _category_supports_os(cat, goos)
            return True

    def list_tool_catalog_smart(self) -> str:
        """Catalog with full detail for built-in categories and a summary for MCP ones."""
        with self._lock:
            return "".join(
                _catalog_entry(cat, cat.tools, smart=True) for cat in self._sorted_categories()
            )

    def list_tool_catalog_smart_for_os(self, goos: str) -> str:
        """Smart catalog restricted to tools supported on ``goos``."""
        with self._lock:
            parts = []
            for cat in self._sorted_categories():
                if not _category_supports_os(cat, goos):
                    continue
                tools = [t for t in cat.tools if t.supports_os(goos)]
                if tools:
                    parts.append(_catalog_entry(cat, tools, smart=True))
            return "".join(parts)