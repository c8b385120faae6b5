"""System prompts for alert diagnosis and proactive inspection."""

from __future__ import annotations

from typing import Iterable

from .types import MODE_ALERT, MODE_INSPECT, CheckSnapshot, DiagnoseRequest, DiagnoseTool

NO_DIRECT_TOOLS = "(无直接工具)"


def build_system_prompt(
    req: DiagnoseRequest,
    direct_tools: str,
    tool_catalog: str,
    local_host: str,
    is_remote: bool,
    language: str,
) -> str:
    """Prompt for diagnosing the alerts of a request."""
    return _render(MODE_ALERT, req, direct_tools, tool_catalog, local_host, is_remote, language)


def build_inspect_prompt(
    req: DiagnoseRequest,
    direct_tools: str,
    tool_catalog: str,
    local_host: str,
    is_remote: bool,
    language: str,
) -> str:
    """Prompt for a proactive health inspection of a target."""
    return _render(MODE_INSPECT, req, direct_tools, tool_catalog, local_host, is_remote, language)


def format_direct_tools(tools: Iterable[DiagnoseTool]) -> str:
    """Listing of the tools the model may call directly."""
    lines = []
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}\n")
        for p in tool.parameters:
            req = " (必需)" if p.required else ""
            lines.append(f"  参数 {p.name} ({p.type}): {p.description}{req}\n")
    return "".join(lines) or NO_DIRECT_TOOLS


def is_remote_target(target: str) -> bool:
    """Whether the target lives on another host than this one."""
    t = target.lower()
    if t.startswith(("localhost", "127.", "[::1]", "::1")):
        return False
    return t not in ("", "/")


def _single_check(check: CheckSnapshot) -> str:
    text = (
        "### 告警详情\n"
        f"检查项: {check.check}\n"
        f"严重级别: {check.status}\n"
        f"当前值: {check.current_value}"
    )
    if check.threshold_desc:
        text += f"\n阈值: {check.threshold_desc}"
    return text + f"\n描述: {check.description}"


def _multiple_checks(checks: list[CheckSnapshot]) -> str:
    parts = [f"### 告警详情（同一目标有 {len(checks)} 个异常检查项，可能存在关联）\n"]
    for number, check in enumerate(checks, start=1):
        parts.append(f"\n[{number}] {check.check} - {check.status}\n    当前值: {check.current_value}")
        if check.threshold_desc:
            parts.append(f"\n    阈值: {check.threshold_desc}")
        parts.append(f"\n    描述: {check.description}")
    parts.append("\n请特别关注这些异常之间是否存在共同根因。")
    return "".join(parts)


def _alert_details(req: DiagnoseRequest) -> str:
    if len(req.checks) == 1:
        return _single_check(req.checks[0])
    if len(req.checks) > 1:
        return _multiple_checks(req.checks)
    if req.descriptions:
        return f"### 告警上下文\n{req.descriptions}"
    return ""


def _intro(req: DiagnoseRequest, inspect: bool, system_inspect: bool) -> str:
    if not inspect:
        return (
            "\n\ncatpaw 监控系统检测到以下告警：\n\n"
            f"插件: {req.plugin}\n"
            f"目标: {req.target}\n\n"
            + _alert_details(req)
            + "\n\n你的任务是诊断这个问题的根因，并给出建议操作。"
        )
    text = (
        "\n\n用户请求对以下目标进行主动健康巡检：\n\n"
        f"插件: {req.plugin}\n"
        f"目标: {req.target}\n"
        f"当前运行环境: {req.runtime_os}\n\n"
        "这不是告警触发的诊断，而是一次主动巡检。"
    )
    if system_inspect:
        return text + "\n你的任务是对整个系统做全面健康体检，发现潜在问题，并给出按优先级排序的建议。"
    return text + (
        f"\n你的任务是围绕 {req.plugin} 领域做专项巡检，优先检查与该领域直接相关的指标。"
        "\n除非已经发现明确线索表明问题由其他领域引起，否则不要扩展到无关领域。"
    )


def _tools_section(plugin: str, direct_tools: str, tool_catalog: str) -> str:
    return (
        "\n\n## 可用工具\n\n"
        f"你可以直接调用以下 {plugin} 工具（无需通过 call_tool）：\n"
        f"{direct_tools}\n\n"
        "以下是系统中所有可用的诊断工具（按领域分类）：\n\n"
        f"{tool_catalog}\n\n"
        "调用其他领域的工具：call_tool(name=\"工具名\", tool_args='{\"参数名\":\"值\"}')\n"
        "如需查看某类工具的详细参数说明：list_tools(category=\"类别名\")\n\n"
        f"注意：上述 {plugin} 工具请直接调用，不要通过 call_tool 包装。"
    )


def _strategy(plugin: str, inspect: bool, system_inspect: bool) -> str:
    if not inspect:
        return (
            "\n\n## 诊断策略\n\n"
            "- **效率优先**：如果当前信息已足以判断根因，立即输出结论，不要为了全面性进行不必要的检查\n"
            "- **并行调用**：需要多个领域数据时，在同一轮中并行调用多个工具\n"
            "- **聚焦问题**：优先检查与告警直接相关的指标；只在初步分析无法解释问题时才扩展到其他领域\n"
            f"- 根因可能不在 {plugin} 自身（如数据库慢可能源于磁盘 I/O），但请先确认直接相关指标后再决定是否扩展"
        )
    if system_inspect:
        return (
            "\n\n## 巡检策略"
            "\n1. 这是 \"inspect system\"，允许做跨领域系统体检"
            "\n2. 先收集 CPU、内存、磁盘、网络、进程等系统核心指标"
            "\n3. 根据异常现象再深入到具体子领域"
            "\n4. **每轮尽可能并行调用多个工具**，减少交互轮次"
        )
    return (
        "\n\n## 巡检策略"
        f"\n1. 这是 \"inspect {plugin}\"，默认只做 {plugin} 领域专项巡检，不要把它当成整机体检"
        f"\n2. 首先使用 {plugin} 的核心工具收集关键指标"
        f"\n3. 只有在 {plugin} 结果已经显示出明确关联时，才允许扩展到 1-2 个相关领域"
        f"\n4. 对 {plugin} 无直接帮助的工具不要调用"
        "\n5. **优先少而准**，不要为了“全面”而调用无关工具"
    )


def _location(req: DiagnoseRequest, is_remote: bool, local_host: str) -> str:
    if is_remote:
        return (
            f"\n- [!] 目标 {req.target} 是远端主机，本机基础设施工具（disk、cpu、memory 等）"
            f"\n  反映的是 catpaw 所在主机 {local_host} 的状态，不是目标主机的状态"
            "\n  这些工具的结果仅在 catpaw 与目标部署在同一台机器时有参考价值"
        )
    return (
        f"\n- catpaw 与目标 {req.target} 在同一台机器上，本机基础设施工具可直接用于辅助诊断"
        f"\n- 当前操作系统是 {req.runtime_os}，只应使用该操作系统支持的工具；不要请求其他操作系统专属工具"
    )


def _output_requirements(inspect: bool) -> str:
    if inspect:
        return (
            "\n\n## 输出要求\n\n"
            "请按以下格式输出健康报告：\n\n"
            "### 1. 巡检摘要\n"
            "一句话总结目标的整体健康状态\n\n"
            "### 2. 检查项明细\n"
            "逐项列出检查结果，每项使用状态标记：\n"
            "- [OK] 正常：指标在健康范围内\n"
            "- [WARN] 警告：指标偏离正常但尚未达到告警阈值，需关注\n"
            "- [CRIT] 异常：指标已达到危险水平，需立即处理\n\n"
            "每项附带关键数值和判断依据\n\n"
            "### 3. 风险与建议\n"
            "- 发现的潜在风险（尚未触发告警但趋势不好的指标）\n"
            "- 优化建议（按紧急程度排序）"
        )
    return (
        "\n\n## 输出要求\n\n"
        "- 语言精炼，关键数值内嵌到分析要点中\n"
        "- 最终输出请按以下格式：\n"
        "  1. 诊断摘要（一句话）\n"
        "  2. 根因分析（要点列表，每条含关键数值）\n"
        "  3. 建议操作（按紧急/短期/中期分类）\n"
        "- 不要输出原始数据的完整内容，只引用关键数值"
    )


def _render(
    mode: str,
    req: DiagnoseRequest,
    direct_tools: str,
    tool_catalog: str,
    local_host: str,
    is_remote: bool,
    language: str,
) -> str:
    inspect = mode == MODE_INSPECT
    system_inspect = inspect and req.plugin == "system"
    parts = [
        "你是一位资深运维和 DBA 专家。",
        _intro(req, inspect, system_inspect),
        _tools_section(req.plugin, direct_tools, tool_catalog),
        _strategy(req.plugin, inspect, system_inspect),
        _location(req, is_remote, local_host),
        _output_requirements(inspect),
        "\n\n请只使用工具获取信息，不要假设或编造数据。",
    ]
    if language != "zh":
        parts.append(
            f"\n\nIMPORTANT: You MUST respond in {language}. All output including section headers, "
            f"analysis, and recommendations must be in {language}."
        )
    return "".join(parts)