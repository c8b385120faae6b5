"""Self-test that runs every local diagnostic tool with safe arguments."""

from __future__ import annotations

import platform
import socket
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .executor import runtime_os
from .registry import ToolRegistry
from .report import truncate_utf8
from .types import DiagnoseError, DiagnoseTool, ToolCategory, ToolScope

STATUS_OK = "PASS"
STATUS_FAIL = "FAIL"
STATUS_SKIP = "SKIP"
STATUS_WARN = "WARN"

DEFAULT_TIMEOUT = 30.0
SLOW_THRESHOLD = 15.0

SAFE_DEFAULTS: dict[str, str] = {
    "pid": "1",
    "host": "localhost",
    "path": "/",
    "since": "1h",
    "delay": "1",
    "lines": "5",
    "pattern": "error",
    "table": "filter",
    "interface": "",
    "port": "",
    "max": "10",
    "top": "5",
}

COMMAND_PACKAGES: dict[str, str] = {
    "traceroute": "traceroute",
    "ss": "iproute2",
    "ip": "iproute2",
    "nft": "nftables",
    "iptables": "iptables",
    "vgs": "lvm2",
    "lvs": "lvm2",
    "getenforce": "libselinux-utils",
    "ausearch": "auditd",
    "aa-status": "apparmor-utils",
    "coredumpctl": "systemd-coredump",
    "lsblk": "util-linux",
    "dmesg": "util-linux",
}

_STATUS_COLORS = {STATUS_OK: "32", STATUS_FAIL: "31", STATUS_WARN: "33", STATUS_SKIP: "90"}

_ARCH_NAMES = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64", "i386": "386", "i686": "386"}


@dataclass
class SelfTestResult:
    """Outcome of testing one tool; duration is in seconds."""

    category: str
    tool: str
    status: str = ""
    duration: float = 0.0
    out_size: int = 0
    message: str = ""
    args: dict[str, str] = field(default_factory=dict)


def _kernel_version() -> str:
    if runtime_os() != "linux":
        return ""
    try:
        fields = Path("/proc/version").read_text(encoding="utf-8", errors="replace").split()
    except OSError:
        return ""
    return fields[2] if len(fields) >= 3 else ""


def _arch() -> str:
    machine = platform.machine()
    return _ARCH_NAMES.get(machine.lower(), machine.lower())


def run_self_test(registry: ToolRegistry, filter_text: str, verbose: bool) -> list[SelfTestResult]:
    """Run every local tool, print a report and return the results.

    Raises DiagnoseError when any tool fails.
    """
    kernel = _kernel_version()
    hostname = socket.gethostname()

    banner = f"catpaw selftest — {registry.tool_count()} tools registered, {runtime_os()}/{_arch()}"
    if kernel:
        banner += f", kernel {kernel}"
    if hostname:
        banner += f", host {hostname}"
    print(banner)
    print("=" * 70)
    print()

    results: list[SelfTestResult] = []
    for cat in registry.categories_with_tools():
        if filter_text and filter_text not in cat.name and filter_text not in cat.plugin:
            continue
        header_printed = False

        def show(result: SelfTestResult, cat: ToolCategory = cat) -> None:
            nonlocal header_printed
            if not header_printed:
                header_printed = True
                print(f"{cat.name} ({len(cat.tools)} tools)")
            _print_result(result)

        for tool in cat.tools:
            skip_reason = _skip_reason(tool)
            if skip_reason:
                result = SelfTestResult(cat.name, tool.name, STATUS_SKIP, message=skip_reason)
                results.append(result)
                if verbose:
                    show(result)
                continue
            result = run_one_tool(cat.name, tool, build_safe_args(tool), DEFAULT_TIMEOUT)
            results.append(result)
            show(result)

        if header_printed:
            print()

    counts = {
        status: sum(1 for r in results if r.status == status)
        for status in (STATUS_OK, STATUS_FAIL, STATUS_SKIP, STATUS_WARN)
    }
    print("=" * 70)
    print(
        f"Summary: {counts[STATUS_OK]} PASS, {counts[STATUS_SKIP]} SKIP, {counts[STATUS_WARN]} WARN, "
        f"{counts[STATUS_FAIL]} FAIL (total {len(results)})"
    )

    if counts[STATUS_FAIL]:
        print()
        print("FAIL details:")
        for r in results:
            if r.status == STATUS_FAIL:
                print(f"  [FAIL] {r.tool:<28} {r.message}")

    if counts[STATUS_WARN]:
        print()
        print("WARN details:")
        for r in results:
            if r.status == STATUS_WARN:
                hint = install_hint(r.message)
                print(f"  [WARN] {r.tool:<28} {r.message}")
                if hint:
                    print(f"         {hint}")

    if counts[STATUS_FAIL]:
        raise DiagnoseError(f"{counts[STATUS_FAIL]} tool(s) failed")
    return results


def _skip_reason(tool: DiagnoseTool) -> str:
    if tool.scope == ToolScope.REMOTE:
        return "remote tool (requires connection)"
    if tool.execute is None:
        return "no Execute function"
    try:
        build_safe_args(tool)
    except DiagnoseError as exc:
        return str(exc)
    return ""


def _print_result(r: SelfTestResult) -> None:
    tag = _color_status(r.status)
    if r.status == STATUS_OK:
        args = " " + _format_test_args(r.args) if r.args else ""
        print(f"  {tag} {r.tool:<28} {format_duration(r.duration):>8} {format_bytes(r.out_size):>6}{args}")
    elif r.status == STATUS_SKIP:
        print(f"  {tag} {r.tool:<28} {r.message}")
    else:
        print(f"  {tag} {r.tool:<28} {format_duration(r.duration):>8} {r.message}")


def _color_status(status: str) -> str:
    color = _STATUS_COLORS.get(status)
    if color is None:
        return f"[{status}]"
    return f"\033[{color}m[{status}]\033[0m"


def build_safe_args(tool: DiagnoseTool) -> dict[str, str]:
    """Arguments built from safe defaults.

    Raises DiagnoseError when a required parameter has no safe default.
    """
    args: dict[str, str] = {}
    for param in tool.parameters:
        value = SAFE_DEFAULTS.get(param.name, "")
        if value:
            args[param.name] = value
        elif param.required:
            raise DiagnoseError(f"requires '{param.name}' parameter (no safe default)")
    return args


def run_one_tool(
    category: str, tool: DiagnoseTool, args: dict[str, str], timeout: float
) -> SelfTestResult:
    """Run one local tool and classify the outcome."""
    result = SelfTestResult(category=category, tool=tool.name, args=args)
    outcome: dict[str, object] = {}

    def target() -> None:
        try:
            if tool.execute is None:
                raise DiagnoseError(f"tool {tool.name} has no Execute function")
            outcome["output"] = tool.execute(args)
        except Exception as exc:  # every tool failure is reported, never raised
            outcome["error"] = str(exc) or type(exc).__name__

    start = time.monotonic()
    worker = threading.Thread(target=target, name=f"selftest-{tool.name}", daemon=True)
    worker.start()
    worker.join(timeout)
    result.duration = time.monotonic() - start

    if worker.is_alive():
        outcome = {"error": "context deadline exceeded"}

    output = str(outcome.get("output") or "")
    result.out_size = len(output.encode("utf-8", errors="surrogatepass"))

    error = outcome.get("error")
    if error is not None:
        message = str(error)
        if _is_expected_platform_error(message):
            result.status, result.message = STATUS_SKIP, message
        elif _is_command_not_found(message):
            result.status, result.message = STATUS_WARN, message
        else:
            result.status, result.message = STATUS_FAIL, _trunc_message(message, 120)
        return result

    if not output:
        result.status, result.message = STATUS_WARN, "empty output"
        return result

    try:
        output.encode("utf-8")
    except UnicodeEncodeError:
        result.status, result.message = STATUS_FAIL, "output contains invalid UTF-8"
        return result

    if result.duration > SLOW_THRESHOLD:
        result.status = STATUS_WARN
        result.message = f"slow execution ({format_duration(result.duration)})"
        return result

    result.status = STATUS_OK
    return result


def _is_expected_platform_error(msg: str) -> bool:
    lower = msg.lower()
    return "requires linux" in lower or "linux only" in lower or "not supported on" in lower


def _is_command_not_found(msg: str) -> bool:
    return (
        "executable file not found" in msg
        or "command not found" in msg
        or "no such file or directory" in msg
    )


def _trunc_message(s: str, max_bytes: int) -> str:
    if len(s.encode("utf-8")) <= max_bytes:
        return s
    return truncate_utf8(s, max_bytes - 3) + "..."


def format_duration(seconds: float) -> str:
    """Compact duration: microseconds, milliseconds or seconds."""
    if seconds < 0.001:
        return f"{int(seconds * 1_000_000)}µs"
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    return f"{seconds:.1f}s"


def format_bytes(n: int) -> str:
    """Byte count as B below 1024, otherwise KB with one decimal."""
    if n < 1024:
        return f"{n}B"
    return f"{n / 1024:.1f}KB"


def install_hint(msg: str) -> str:
    """Package install suggestion for a missing command, or ""."""
    cmd = extract_missing_command(msg)
    if not cmd:
        return ""
    pkg = command_to_package(cmd)
    return f"fix: apt install {pkg}  OR  yum install {pkg}  OR  dnf install {pkg}"


def extract_missing_command(msg: str) -> str:
    """Name of the command an error message reports as missing, or ""."""
    marker = 'exec: "'
    start = msg.find(marker)
    if start >= 0:
        rest = msg[start + len(marker):]
        end = rest.find('"')
        if end > 0:
            return rest[:end]
    idx = msg.find(" not found")
    if idx > 0:
        parts = msg[:idx].split()
        if parts:
            return parts[-1]
    return ""


def command_to_package(cmd: str) -> str:
    """Distribution package that provides ``cmd``."""
    return COMMAND_PACKAGES.get(cmd, cmd)


def _format_test_args(args: dict[str, str]) -> str:
    if not args:
        return ""
    return "(" + ", ".join(f"{k}={v}" for k, v in args.items()) + ")"