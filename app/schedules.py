"""Agent schedule records: CRUD, next-run computation and due selection."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import cron_schedule
from app.audit import write_audit_log
from app.stores import iso

logger = logging.getLogger("agentc2.schedules")

SCHEDULE_FIELDS = ("name", "description", "agentId", "input", "isActive", "timezone", "cronExpr")


def _cron_from(data: dict) -> str | None:
    if data.get("cronExpr"):
        return data["cronExpr"]
    if data.get("frequency"):
        return cron_schedule.build_cron_from_human(
            data["frequency"],
            data.get("time") or "09:00",
            data.get("daysOfWeek"),
            data.get("dayOfMonth"),
        )
    return None


def _with_next_run(record: dict, now: datetime | None = None) -> dict:
    cron_schedule.validate_cron(record["cronExpr"])
    tz = cron_schedule.validate_timezone(record.get("timezone"))
    record["timezone"] = tz
    record["description"] = record.get("description") or cron_schedule.describe_with_timezone(record["cronExpr"], tz)
    record["nextRunAt"] = iso(cron_schedule.next_run_at(record["cronExpr"], tz, now)) if record.get("isActive", True) else None
    return record


def list_schedules(stores, org_id: str, agent_id: str | None = None) -> list[dict]:
    if agent_id:
        return stores.schedules.list(org_id, agentId=agent_id)
    return stores.schedules.list(org_id)


def create_schedule(stores, data: dict, org_id: str, actor_id: str | None = None, now: datetime | None = None) -> dict:
    cron = _cron_from(data)
    if not cron:
        raise cron_schedule.ScheduleError("cronExpr or frequency is required")
    if not data.get("agentId"):
        raise cron_schedule.ScheduleError("agentId is required")
    record = {key: data.get(key) for key in SCHEDULE_FIELDS}
    record.update({"cronExpr": cron, "isActive": data.get("isActive", True) is not False, "runCount": 0, "lastRunAt": None})
    record = _with_next_run(record, now)
    schedule = stores.schedules.create(record, org_id)
    write_audit_log(stores.audit, "SCHEDULE_CREATE", "schedule", schedule["id"], actor_id, org_id, {"cronExpr": cron})
    logger.info("schedule_created org_id=%s schedule_id=%s cron=%s", org_id, schedule["id"], cron)
    return schedule


def update_schedule(stores, schedule_id: str, data: dict, org_id: str, actor_id: str | None = None, now: datetime | None = None) -> dict | None:
    existing = stores.schedules.get(schedule_id, org_id)
    if not existing:
        return None
    merged = dict(existing)
    for key in SCHEDULE_FIELDS:
        if key in data:
            merged[key] = data[key]
    cron = _cron_from(data)
    if cron:
        merged["cronExpr"] = cron
    if "description" not in data and (cron or "timezone" in data):
        merged["description"] = None
    merged = _with_next_run(merged, now)
    changes = {key: merged.get(key) for key in SCHEDULE_FIELDS + ("nextRunAt",)}
    schedule = stores.schedules.update(schedule_id, changes, org_id)
    write_audit_log(stores.audit, "SCHEDULE_UPDATE", "schedule", schedule_id, actor_id, org_id, {"fields": sorted(data)})
    return schedule


def delete_schedule(stores, schedule_id: str, org_id: str, actor_id: str | None = None) -> bool:
    deleted = stores.schedules.delete(schedule_id, org_id)
    if deleted:
        write_audit_log(stores.audit, "SCHEDULE_DELETE", "schedule", schedule_id, actor_id, org_id)
    return deleted


def due_schedules(stores, org_id: str, now: datetime | None = None) -> list[dict]:
    return stores.schedules.due(iso(now or datetime.now(timezone.utc)), org_id)


def mark_fired(stores, schedule: dict, org_id: str, now: datetime | None = None, run_id: str | None = None) -> dict | None:
    now = now or datetime.now(timezone.utc)
    nxt = cron_schedule.next_run_at(schedule["cronExpr"], schedule.get("timezone") or "UTC", now)
    return stores.schedules.update(
        schedule["id"],
        {
            "lastRunAt": iso(now),
            "lastRunId": run_id,
            "runCount": (schedule.get("runCount") or 0) + 1,
            "nextRunAt": iso(nxt),
        },
        org_id,
    )
