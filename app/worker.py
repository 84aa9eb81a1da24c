from __future__ import annotations

import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

from app.agent_invoke import invoke_agent
from app.budget import BudgetEnforcementService
from app.run_recorder import start_run
from app.schedules import due_schedules, mark_fired
from app.stores import Stores, memory_stores
from app.stores_db import DbRecordStore, reset_org_id, set_org_id

logger = logging.getLogger("agentc2.worker")

Invoke = Callable[[dict, str], dict]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _backoff_seconds(attempt: int) -> int:
    return min(60 * (2 ** max(0, attempt - 1)), 3600)


def http_invoke(schedule: dict, org_id: str) -> dict:
    return invoke_agent(schedule["agentId"], schedule.get("input") or "", org_id, {"scheduleId": schedule["id"]})


def fire_schedule(stores: Stores, schedule: dict, org_id: str, invoke: Invoke, now: datetime | None = None) -> dict:
    agent = stores.agents.get(schedule["agentId"], org_id) or {"id": schedule["agentId"], "slug": schedule["agentId"]}
    budget = BudgetEnforcementService(stores.budget).check(agent["id"], org_id, now=now)
    if not budget["allowed"]:
        mark_fired(stores, schedule, org_id, now=now)
        logger.info("schedule_skipped_budget schedule_id=%s agent_id=%s", schedule["id"], agent["id"])
        return {"scheduleId": schedule["id"], "status": "skipped", "reason": budget["violations"][0]["message"]}

    handle = start_run(
        stores.runs,
        stores.budget,
        agent_id=agent["id"],
        agent_slug=agent.get("slug") or agent["id"],
        input=schedule.get("input") or "",
        source="api",
        org_id=org_id,
    )
    mark_fired(stores, schedule, org_id, now=now, run_id=handle.run_id)
    try:
        result = invoke(schedule, org_id)
    except Exception as exc:
        handle.fail(exc)
        logger.warning("schedule_run_failed schedule_id=%s run_id=%s error=%s", schedule["id"], handle.run_id, exc)
        return {"scheduleId": schedule["id"], "status": "failed", "runId": handle.run_id, "error": str(exc)}
    usage = result.get("usage") or {}
    handle.complete(
        output=result.get("output") or "",
        model_provider=result.get("modelProvider"),
        model_name=result.get("modelName"),
        prompt_tokens=usage.get("promptTokens"),
        completion_tokens=usage.get("completionTokens"),
        cost_usd=result.get("costUsd"),
    )
    return {"scheduleId": schedule["id"], "status": "completed", "runId": handle.run_id}


def tick(stores: Stores, org_id: str, invoke: Invoke = http_invoke, now: datetime | None = None) -> dict:
    """Fire every due schedule, then release stale budget reservations."""
    now = now or _now()
    token = set_org_id(org_id)
    try:
        fired = [fire_schedule(stores, schedule, org_id, invoke, now) for schedule in due_schedules(stores, org_id, now)]
        released = BudgetEnforcementService(stores.budget).cleanup_stale_reservations(org_id, now=now)
    finally:
        reset_org_id(token)
    return {"fired": fired, "reservationsReleased": released}


def main() -> None:
    logging.basicConfig(level=os.getenv("AGENTC2_LOG_LEVEL", "INFO"))
    worker_id = os.getenv("WORKER_ID", str(uuid.uuid4()))
    org_ids = [o.strip() for o in (os.getenv("WORKER_ORG_ID") or "default").split(",") if o.strip()]
    poll_ms = int(os.getenv("WORKER_POLL_MS", "1000"))
    use_db = os.getenv("USE_DB", "").strip().lower() in ("1", "true", "yes")
    stores = Stores(DbRecordStore()) if use_db else memory_stores()
    logger.info("worker_started worker_id=%s orgs=%s poll_ms=%s", worker_id, ",".join(org_ids), poll_ms)

    attempt = 0
    while True:
        try:
            for org_id in org_ids:
                result = tick(stores, org_id)
                if result["fired"]:
                    logger.info("worker_tick org_id=%s fired=%s", org_id, len(result["fired"]))
            attempt = 0
        except Exception:
            attempt += 1
            delay = _backoff_seconds(attempt)
            logger.exception("worker_tick_failed worker_id=%s attempt=%s retry_in=%s", worker_id, attempt, delay)
            time.sleep(delay)
            continue
        time.sleep(poll_ms / 1000)


if __name__ == "__main__":
    main()
