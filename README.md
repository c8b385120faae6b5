# digcore

digcore is the core of an AI-assisted diagnosis subsystem for monitoring
agents. It is used in two cases: when an alert fires, and when someone asks
for a health inspection. In both cases digcore does the following:

1. It builds a prompt.
2. It offers a catalog of diagnostic tools to a chat model.
3. It runs the tool calls that the model requests.
4. It records every round.
5. It produces a concise report.

## What is in the package

### `digcore.types`

The shared data classes:

- `DiagnoseTool`, `ToolParam` and `ToolCategory`, which describe tools.
- `ToolScope`, whose values are `LOCAL` and `REMOTE`.
- `CheckSnapshot` and `DiagnoseRequest`, which describe what to diagnose.
- `DiagnoseSession`, which holds the shared remote accessor. Its `close()` call
  closes that accessor.
- The record classes: `DiagnoseRecord`, `AlertRecord`, `AIRecord`,
  `RoundRecord` and `ToolCallRecord`. Use `DiagnoseRecord.to_dict()` and
  `DiagnoseRecord.from_dict()` to convert a record to and from its JSON form.
- `severity_rank()`, which orders event statuses. The order is
  Critical > Warning > Info > anything else.
- `DiagnoseError`, which is raised wherever a step fails.

### `digcore.registry.ToolRegistry`

The registry stores tools by category and is thread-safe.

- Register tools with `register` and categories with `register_category`.
- Register per-plugin accessor factories with `register_accessor_factory`, and
  build accessors with `create_accessor`.
- Look up tools with `get`, `by_plugin` and `by_plugin_for_os`.
- Render text for prompts with `list_categories`, `list_categories_for_os`,
  `list_tools`, `list_tools_for_os`, `list_all_tools`,
  `list_tool_catalog_smart` and `list_tool_catalog_smart_for_os`.

Some categories are restricted to one operating system. A category whose
description contains "Linux only.", "Darwin only.", "macOS only." or
"Windows only." is shown only on that system. `tool_supported_on` checks a
single tool. The smart catalogs list categories whose names start with `mcp:`
as a one-line summary.

### `digcore.toolset`

- The chat message types: `Message`, `ToolCall`, `FunctionCall`, `Tool`,
  `ToolFunction`, `Parameters`, `Property`, `ChatResponse`, `Choice` and
  `Usage`.
- `build_tool_set`, which returns the direct tools of the request's plugin
  plus the meta tools.
- The `ChatClient` protocol.

### `digcore.executor`

- `execute_tool` routes a model's call in one of two ways. It handles the meta
  tools `list_tool_categories`, `list_tools` and `call_tool`, or it runs a tool
  directly.
- `parse_args` and `parse_tool_args` turn loosely typed JSON arguments into
  string maps. Numbers become plain decimal strings, `null` becomes `""`, and
  nested objects are serialized back to JSON.
- `truncate_output` and `truncate_for_record` cut text on UTF-8 boundaries, at
  32 KB and 64 KB respectively.

### `digcore.prompt`

`build_system_prompt` writes the prompt for alert diagnosis, and
`build_inspect_prompt` writes the prompt for proactive inspection. When the
language is not `zh`, the prompt includes an instruction to answer in that
language.

### `digcore.record`

- `new_diagnose_record` creates a record.
- `save_record` writes a record atomically to
  `<state_dir>/diagnoses/<id>.json`.
- `record_file_path` gives that path.

### `digcore.state.DiagnoseState`

This class tracks two things:

- the token usage for the current day, which resets when the date changes;
- the cooldown for each target.

It is stored in `<state_dir>/diagnose_state.json`.

### `digcore.report`

`format_report_description` builds a description for notifications. The
description has at most 2048 bytes: a header, the report body (truncated if
needed) and a footer with the record id and file path.

### `digcore.engine.DiagnoseEngine`

This class runs the diagnosis loop over several rounds.

- `run_diagnose` runs a diagnosis to the end. It then saves the record, adds
  the token usage, and starts the target's cooldown. Inspect mode does not
  start a cooldown.
- `submit` starts a diagnosis on a background thread. It first checks the
  cooldown, the daily token limit and the concurrency limit, and skips the
  request if any of them applies.
- `run_diagnose_streaming` reports progress through a callback and returns the
  report.
- `shutdown` cancels the diagnoses that are running.

The engine also does the following:

- It warns the model when the estimated context use passes 90% of
  `context_window_limit`.
- In the last round, it asks the model for its final report.
- If the request has events, it passes one report event for each distinct
  alert key to `EngineConfig.notifier`.

`init_engine`, `global_engine` and `shutdown_engine` manage one engine for the
whole process.

### `digcore.streaming.ChatStream`

This class holds a conversation over several turns, through `handle_message`.

- History is trimmed to the system prompt plus the last 40 messages. A tool-call
  sequence is never split.
- `reset` clears the history.
- If you pass `allow_shell=True` and a `ShellExecutor`, the model may run shell
  commands. Each command must be approved by the executor.

### `digcore.selftest`

`run_self_test` runs every local tool with safe default arguments and prints a
summary of PASS, SKIP, WARN and FAIL results. It returns the results, and
raises `DiagnoseError` if any tool failed.

## Usage

Register your tools:

```python
from digcore.registry import ToolRegistry
from digcore.types import DiagnoseTool, ToolParam, ToolScope

registry = ToolRegistry()
registry.register_category("disk", "disk", "Disk diagnostic tools", ToolScope.LOCAL)
registry.register("disk", DiagnoseTool(
    name="disk_usage",
    description="Show disk usage",
    scope=ToolScope.LOCAL,
    parameters=[ToolParam(name="path", type="string", description="Mount path", required=True)],
    execute=lambda args: "/dev/sda1: 80% used",
))
print(registry.list_all_tools())
```

The engine works with any object that has a `chat(messages, tools)` method
returning `(ChatResponse, model_name)`:

```python
from digcore.engine import DiagnoseEngine, EngineConfig
from digcore.types import CheckSnapshot, DiagnoseRequest

engine = DiagnoseEngine(registry, EngineConfig(), my_client, state_dir="/var/lib/agent")
record = engine.run_diagnose(DiagnoseRequest(
    plugin="disk",
    target="localhost",
    checks=[CheckSnapshot(check="disk::usage", status="Warning", current_value="91%")],
))
print(record.status, record.report)
```

## What it does not do

- **No model client.** digcore does not talk to any model service itself. You
  supply the `ChatClient`.
- **No context compaction.** The engine does not compact the conversation when
  the context window fills up. It only tells the model to finish.
- **No notification backends.** Reports are passed to the
  `EngineConfig.notifier` callable, if you set one.
- **No alert aggregation, no event de-duplication across runs, and no cleanup
  of old record files.**
- **No command-line program.** The report footer contains a
  `catpaw diagnose show <id>` hint, but that command is not part of this
  package.

## Tests

```
pip install digcore[test]
pytest
```