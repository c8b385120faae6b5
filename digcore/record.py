"""Creation and persistence of diagnosis records."""

from __future__ import annotations

import json
import os
import secrets
import time
from datetime import datetime
from pathlib import Path

from .types import MODE_ALERT, AlertRecord, DiagnoseError, DiagnoseRecord, DiagnoseRequest

DIAGNOSES_DIR = "diagnoses"

_SAFE_BYTES = frozenset(
    b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_"
)


def new_diagnose_record(req: DiagnoseRequest) -> DiagnoseRecord:
    """Create a running record for a request, with a unique id."""
    mode = req.mode or MODE_ALERT
    millis = time.time_ns() // 1_000_000
    record_id = f"{mode}_{req.plugin}_{sanitize_target(req.target)}_{millis}_{secrets.token_hex(2)}"
    return DiagnoseRecord(
        id=record_id,
        mode=mode,
        status="running",
        created_at=datetime.now().astimezone(),
        alert=AlertRecord(plugin=req.plugin, target=req.target, checks=list(req.checks)),
    )


def sanitize_target(target: str) -> str:
    """Replace every byte outside [A-Za-z0-9_-] with an underscore."""
    return "".join(chr(b) if b in _SAFE_BYTES else "_" for b in target.encode("utf-8"))


def record_file_path(record: DiagnoseRecord, state_dir: str | os.PathLike[str]) -> Path:
    """Path where the record is (or will be) stored."""
    return Path(state_dir) / DIAGNOSES_DIR / f"{record.id}.json"


def save_record(record: DiagnoseRecord, state_dir: str | os.PathLike[str]) -> Path:
    """Write the record atomically and return its path."""
    target = record_file_path(record, state_dir)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DiagnoseError(f"create diagnoses dir: {exc}") from exc

    data = json.dumps(record.to_dict(), indent=2, ensure_ascii=False)
    tmp = target.with_name(target.name + ".tmp")
    try:
        tmp.write_text(data, encoding="utf-8")
    except OSError as exc:
        raise DiagnoseError(f"write temp file: {exc}") from exc
    try:
        os.replace(tmp, target)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise DiagnoseError(f"rename temp file: {exc}") from exc
    return target