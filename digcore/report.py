"""Compact diagnosis report text for notification descriptions."""

from __future__ import annotations

import os

from .record import record_file_path
from .types import DiagnoseRecord

MAX_DESCRIPTION_BYTES = 2048


def truncate_utf8(s: str, max_bytes: int) -> str:
    """Cut ``s`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    data = s.encode("utf-8")
    if len(data) <= max_bytes:
        return s
    if max_bytes <= 0:
        return ""
    end = max_bytes
    while end > 0 and data[end] & 0xC0 == 0x80:
        end -= 1
    return data[:end].decode("utf-8")


def _byte_len(s: str) -> int:
    return len(s.encode("utf-8"))


def format_header(record: DiagnoseRecord, language: str) -> str:
    created = record.created_at.strftime("%Y-%m-%d %H:%M:%S")
    if language == "zh":
        lines = [
            f"[*] AI 诊断报告 [{record.status}]",
            f"插件: {record.alert.plugin} | 目标: {record.alert.target}",
            f"诊断时间: {created} | 耗时: {record.duration_ms}ms | AI轮次: {record.ai.total_rounds}",
        ]
    else:
        lines = [
            f"[*] AI Diagnosis Report [{record.status}]",
            f"Plugin: {record.alert.plugin} | Target: {record.alert.target}",
            f"Time: {created} | Duration: {record.duration_ms}ms | Rounds: {record.ai.total_rounds}",
        ]
    return "\n".join(lines) + "\n---\n"


def format_footer(record: DiagnoseRecord, language: str, state_dir: str | os.PathLike[str]) -> str:
    path = record_file_path(record, state_dir)
    if language == "zh":
        return f"\n---\n查看命令: catpaw diagnose show {record.id}\n完整记录: {path}\n"
    return f"\n---\nView command: catpaw diagnose show {record.id}\nFull record: {path}\n"


def _trunc_suffix(language: str) -> str:
    if language == "zh":
        return "\n...[诊断报告已截断，完整内容请查看本地记录]"
    return "\n...[Report truncated, see local record for full content]"


def format_report_description(
    record: DiagnoseRecord, report: str, language: str, state_dir: str | os.PathLike[str]
) -> str:
    """Header, report body and footer, at most MAX_DESCRIPTION_BYTES bytes long."""
    header = format_header(record, language)
    footer = format_footer(record, language, state_dir)
    overhead = _byte_len(header) + _byte_len(footer)
    if overhead >= MAX_DESCRIPTION_BYTES:
        return truncate_utf8(header, MAX_DESCRIPTION_BYTES)

    suffix = _trunc_suffix(language)
    suffix_len = _byte_len(suffix)
    budget = MAX_DESCRIPTION_BYTES - overhead
    body = report
    if _byte_len(body) > budget:
        if budget > suffix_len:
            body = truncate_utf8(body, budget - suffix_len) + suffix
        else:
            body = truncate_utf8(body, budget)
    return header + body + footer