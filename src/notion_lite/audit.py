"""Append-only audit log of mutating commands (JSON lines)."""

import json
from pathlib import Path
from typing import Optional

from .config import get_audit_log_path


def append_audit_log(event: dict, path: Optional[Path] = None) -> None:
    """Append one event as a JSON line.

    Events look like:
        {"command": "pages.update", "request_id": "...", "idempotency_key": "...",
         "target_ids": ["..."], "ok": true, "timestamp": "..."}
    """
    log_path = path or get_audit_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(event, ensure_ascii=False)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(line + "\n")
