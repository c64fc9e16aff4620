from __future__ import annotations

import json
import logging
import os
from threading import Lock
from typing import Any, Dict

from memory.record_store import RecordStore
from models.schemas import WorkflowEvent
from settings import SETTINGS

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only workflow events, stored in ``workflow_events`` and mirrored to JSONL when configured."""

    def __init__(self, store: RecordStore, path: str | None = None) -> None:
        self.store = store
        self.path = path if path is not None else SETTINGS.audit_log_path
        self._lock = Lock()
        if self.path:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    async def log_event(self, event: WorkflowEvent) -> None:
        payload = event.model_dump(mode="json")
        try:
            await self.store.insert("workflow_events", payload)
            self.log_json(payload)
        except Exception:
            logger.exception("workflow_event_log_failed", extra={"case_id": event.case_id, "event_type": event.event_type})

    def log_json(self, payload: Dict[str, Any]) -> None:
        if not self.path:
            return
        line = json.dumps(payload, ensure_ascii=True)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
