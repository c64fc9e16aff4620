from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from supabase import create_client

from settings import SETTINGS

logger = logging.getLogger(__name__)

Filters = Dict[str, Any]


class RecordStore(ABC):
    """Table-oriented data access used by every funnel component.

    Filters are equality matches; a ``None`` value matches a null column.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> List[dict]:
        raise NotImplementedError

    async def select_one(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> Optional[dict]:
        rows = await self.select(table, filters, order_by=order_by, descending=descending, limit=1)
        return rows[0] if rows else None

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> dict:
        raise NotImplementedError

    @abstractmethod
    async def update(self, table: str, filters: Filters, values: Dict[str, Any]) -> List[dict]:
        raise NotImplementedError

    @abstractmethod
    async def rpc(self, name: str, params: Dict[str, Any]) -> List[dict]:
        raise NotImplementedError

    @abstractmethod
    async def search_text(
        self,
        table: str,
        column: str,
        terms: Iterable[str],
        filters: Filters | None = None,
        limit: int = 3,
    ) -> List[dict]:
        """Rows whose ``column`` contains any of ``terms``, case-insensitive."""
        raise NotImplementedError


def _cosine(a: List[float], b: List[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 0.0
    return dot / (na * nb)


class JsonRecordStore(RecordStore):
    """In-process store with optional JSON file persistence, for tests and local runs."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path if path is not None else SETTINGS.record_store_path
        self._tables: Dict[str, List[dict]] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("record_store_load_failed", extra={"path": self.path, "error": repr(exc)})
            return
        tables = payload.get("tables", {})
        if isinstance(tables, dict):
            self._tables = {str(k): list(v) for k, v in tables.items() if isinstance(v, list)}

    def _persist(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = f"{self.path}.{uuid.uuid4().hex}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump({"tables": self._tables}, fh, ensure_ascii=True, default=str)
            os.replace(tmp, self.path)
        except OSError as exc:
            if os.path.exists(tmp):
                os.remove(tmp)
            logger.warning("record_store_persist_failed", extra={"path": self.path, "error": repr(exc)})

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]) -> None:
        with self._lock:
            for row in rows:
                self._tables.setdefault(table, []).append(self._prepare(row))
            self._persist()

    def rows(self, table: str) -> List[dict]:
        with self._lock:
            return [dict(r) for r in self._tables.get(table, [])]

    @staticmethod
    def _prepare(row: Dict[str, Any]) -> dict:
        out = dict(row)
        out.setdefault("id", str(uuid.uuid4()))
        out.setdefault("created_at", datetime.utcnow().isoformat())
        return out

    @staticmethod
    def _matches(row: dict, filters: Filters | None) -> bool:
        for key, expected in (filters or {}).items():
            if row.get(key) != expected:
                return False
        return True

    @staticmethod
    def _ordered(rows: List[dict], order_by: str | None, descending: bool) -> List[dict]:
        if not order_by:
            return rows
        # ties keep insertion order, reversed along with the sort direction
        indexed = [(i, r) for i, r in enumerate(rows) if r.get(order_by) is not None]
        missing = [r for r in rows if r.get(order_by) is None]
        indexed.sort(key=lambda pair: (pair[1][order_by], pair[0]), reverse=descending)
        return [r for _, r in indexed] + missing

    async def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        with self._lock:
            rows = [dict(r) for r in self._tables.get(table, []) if self._matches(r, filters)]
        rows = self._ordered(rows, order_by, descending)
        return rows[:limit] if limit is not None else rows

    async def insert(self, table, row):
        prepared = self._prepare(row)
        with self._lock:
            self._tables.setdefault(table, []).append(prepared)
            self._persist()
        return dict(prepared)

    async def update(self, table, filters, values):
        changed: List[dict] = []
        with self._lock:
            for row in self._tables.get(table, []):
                if self._matches(row, filters):
                    row.update(values)
                    changed.append(dict(row))
            if changed:
                self._persist()
        return changed

    async def rpc(self, name, params):
        if name == "match_knowledge_chunks":
            return self._match(
                "knowledge_chunks",
                params,
                lambda r: r.get("user_id") == params.get("match_user_id")
                and (r.get("agent_id") is None or params.get("match_agent_id") is None or r.get("agent_id") == params.get("match_agent_id")),
            )
        if name == "match_contact_memories":
            return self._match(
                "contact_memories",
                params,
                lambda r: r.get("user_id") == params.get("match_user_id")
                and r.get("contact_phone") == params.get("match_phone"),
            )
        raise ValueError(f"unknown rpc: {name}")

    def _match(self, table: str, params: Dict[str, Any], scope) -> List[dict]:
        query = list(params.get("query_embedding") or [])
        threshold = float(params.get("match_threshold", 0.5))
        count = int(params.get("match_count", 3))
        with self._lock:
            candidates = [dict(r) for r in self._tables.get(table, []) if r.get("embedding") and scope(r)]
        scored = []
        for row in candidates:
            similarity = _cosine(query, list(row.get("embedding") or []))
            if similarity >= threshold:
                row["similarity"] = similarity
                scored.append(row)
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:count]

    async def search_text(self, table, column, terms, filters=None, limit=3):
        needles = [t.lower() for t in terms if t]
        if not needles:
            return []
        with self._lock:
            rows = [
                dict(r)
                for r in self._tables.get(table, [])
                if self._matches(r, filters) and any(n in str(r.get(column) or "").lower() for n in needles)
            ]
        return rows[:limit]


class SupabaseRecordStore(RecordStore):
    """Supabase-backed store; blocking client calls run in worker threads."""

    def __init__(self, client: Any = None, url: str | None = None, key: str | None = None) -> None:
        if client is None:
            url = url or SETTINGS.supabase_url
            key = key or SETTINGS.supabase_service_key
            if not url or not key:
                raise RuntimeError("Supabase is not configured (set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY).")
            client = create_client(url, key)
        self.client = client

    @staticmethod
    def _apply_filters(query: Any, filters: Filters | None) -> Any:
        for key, value in (filters or {}).items():
            query = query.is_(key, "null") if value is None else query.eq(key, value)
        return query

    async def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        def _run() -> List[dict]:
            query = self._apply_filters(self.client.table(table).select("*"), filters)
            if order_by:
                query = query.order(order_by, desc=descending)
            if limit is not None:
                query = query.limit(limit)
            return query.execute().data or []

        return await asyncio.to_thread(_run)

    async def insert(self, table, row):
        def _run() -> dict:
            data = self.client.table(table).insert(row).execute().data or []
            return data[0] if data else dict(row)

        return await asyncio.to_thread(_run)

    async def update(self, table, filters, values):
        def _run() -> List[dict]:
            query = self._apply_filters(self.client.table(table).update(values), filters)
            return query.execute().data or []

        return await asyncio.to_thread(_run)

    async def rpc(self, name, params):
        return await asyncio.to_thread(lambda: self.client.rpc(name, params).execute().data or [])

    async def search_text(self, table, column, terms, filters=None, limit=3):
        needles = [t.replace(",", " ").strip() for t in terms if t and t.strip()]
        if not needles:
            return []

        def _run() -> List[dict]:
            query = self._apply_filters(self.client.table(table).select("*"), filters)
            query = query.or_(",".join(f"{column}.ilike.%{n}%" for n in needles))
            return query.limit(limit).execute().data or []

        return await asyncio.to_thread(_run)


def build_record_store() -> RecordStore:
    if SETTINGS.supabase_url and SETTINGS.supabase_service_key:
        return SupabaseRecordStore()
    logger.info("record_store_local", extra={"path": SETTINGS.record_store_path or None})
    return JsonRecordStore()
