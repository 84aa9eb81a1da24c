"""Postgres record store (USE_DB=1) and the request-scoped tenant id."""

from __future__ import annotations

import copy
import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, List

from app.db import execute, fetch_all, fetch_one, get_conn

_ORG_ID: ContextVar[str] = ContextVar("org_id", default="default")


def get_org_id() -> str:
    return _ORG_ID.get()


def set_org_id(value: str):
    return _ORG_ID.set(value)


def reset_org_id(token):
    _ORG_ID.reset(token)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_record(row: dict | None) -> dict | None:
    if not row:
        return None
    record = copy.deepcopy(_ensure_json(row.get("data")) or {})
    record["id"] = str(row.get("id"))
    return record


def _where_sql(where: dict | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for key, expected in (where or {}).items():
        if isinstance(expected, (list, tuple, set)):
            clauses.append("data->>%s = any(%s)")
            params.extend([key, [str(v) for v in expected]])
        elif expected is None:
            clauses.append("(data->%s is null or data->%s = 'null'::jsonb)")
            params.extend([key, key])
        else:
            clauses.append("data @> %s::jsonb")
            params.append(json.dumps({key: expected}, default=str))
    return "".join(f" and {c}" for c in clauses), params


class DbRecordStore:
    """Same interface as ``MemoryRecordStore`` over a jsonb ``records`` table.

    Table: ``records (tenant_id text, entity text, id text, data jsonb,
    created_at timestamptz, updated_at timestamptz)``.
    """

    def create(self, entity: str, data: dict, tenant_id: str) -> dict:
        record = copy.deepcopy(data)
        record.setdefault("id", str(uuid.uuid4()))
        now = _now()
        record.setdefault("createdAt", now)
        record["updatedAt"] = now
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into records (tenant_id, entity, id, data, created_at, updated_at)
                values (%s, %s, %s, %s, %s, %s)
                """,
                [tenant_id, entity, record["id"], json.dumps(record, default=str), record["createdAt"], now],
                query_name=f"{entity}.create",
            )
        return record

    def get(self, entity: str, record_id: str, tenant_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select id, data from records where tenant_id=%s and entity=%s and id=%s",
                [tenant_id, entity, record_id],
                query_name=f"{entity}.get",
            )
        return _row_record(row)

    def update(self, entity: str, record_id: str, changes: dict, tenant_id: str) -> dict | None:
        patch = copy.deepcopy(changes)
        patch["updatedAt"] = _now()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update records
                set data = data || %s::jsonb, updated_at = now()
                where tenant_id=%s and entity=%s and id=%s
                returning id, data
                """,
                [json.dumps(patch, default=str), tenant_id, entity, record_id],
                query_name=f"{entity}.update",
            )
        return _row_record(row)

    def delete(self, entity: str, record_id: str, tenant_id: str) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                "delete from records where tenant_id=%s and entity=%s and id=%s",
                [tenant_id, entity, record_id],
                query_name=f"{entity}.delete",
            )
        return bool(count)

    def find(
        self,
        entity: str,
        tenant_id: str,
        where: dict | None = None,
        since: str | None = None,
        before: str | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> List[dict]:
        clause, params = _where_sql(where)
        sql = f"select id, data from records where tenant_id=%s and entity=%s{clause}"
        params = [tenant_id, entity] + params
        if since:
            sql += " and data->>'createdAt' >= %s"
            params.append(since)
        if before:
            sql += " and data->>'createdAt' < %s"
            params.append(before)
        sql += " order by data->>'createdAt' " + ("desc" if newest_first else "asc") + ", created_at " + ("desc" if newest_first else "asc")
        if limit is not None:
            sql += " limit %s"
            params.append(int(limit))
        with get_conn() as conn:
            rows = fetch_all(conn, sql, params, query_name=f"{entity}.find")
        return [_row_record(row) for row in rows]

    def find_one(self, entity: str, tenant_id: str, where: dict | None = None) -> dict | None:
        items = self.find(entity, tenant_id, where=where, limit=1)
        return items[0] if items else None
