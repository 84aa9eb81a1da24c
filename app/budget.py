"""Budget enforcement: month-to-date spend, alerts and cost reservations."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import budget_check
from app.stores import iso

logger = logging.getLogger("agentc2.budget")

ALERT_DEDUPE_WINDOW = timedelta(hours=1)
STALE_RESERVATION_AGE = timedelta(minutes=30)

STATUS_RESERVED = "RESERVED"
STATUS_FINALIZED = "FINALIZED"
STATUS_CANCELLED = "CANCELLED"


def _spend(events: list[dict]) -> float:
    return sum(budget_check.event_cost(e) for e in events if e.get("status") != STATUS_CANCELLED)


class BudgetEnforcementService:
    def __init__(self, store) -> None:
        self.store = store

    def month_to_date(self, org_id: str, now: datetime | None = None, **where) -> float:
        since = iso(budget_check.start_of_month(now))
        return _spend(self.store.list_cost_events(org_id, since=since, **where))

    def check(self, agent_id: str, org_id: str, user_id: str | None = None, now: datetime | None = None) -> dict:
        """Evaluate the subscription, org, user and agent levels for one run."""
        subscription = self.store.get_subscription(org_id)
        org_policy = self.store.get_policy("org", org_id)
        user_policy = self.store.get_policy("user", org_id, userId=user_id) if user_id else None
        agent_policy = self.store.get_policy("agent", org_id, agentId=agent_id)

        result = budget_check.evaluate_budget(
            subscription=subscription,
            org_policy=org_policy,
            org_spend=self.month_to_date(org_id, now) if org_policy else 0.0,
            user_policy=user_policy,
            user_spend=self.month_to_date(org_id, now, userId=user_id) if user_policy else 0.0,
            agent_policy=agent_policy,
            agent_spend=self.month_to_date(org_id, now, agentId=agent_id) if agent_policy else 0.0,
        )
        for warning in result["warnings"]:
            self._maybe_create_alert(org_id, agent_id, user_id, warning, "threshold_warning", now)
        for violation in result["violations"]:
            self._maybe_create_alert(org_id, agent_id, user_id, violation, "limit_reached", now)
        if not result["allowed"]:
            logger.info(
                "budget_blocked org_id=%s agent_id=%s levels=%s",
                org_id,
                agent_id,
                ",".join(v["level"] for v in result["violations"]),
            )
        return result

    def _maybe_create_alert(self, org_id: str, agent_id: str, user_id: str | None, entry: dict, alert_type: str, now: datetime | None) -> dict | None:
        level = entry["level"]
        keys = {"level": level, "type": alert_type}
        if level == "user":
            keys["userId"] = user_id
        if level == "agent":
            keys["agentId"] = agent_id
        since = iso((now or datetime.now(timezone.utc)) - ALERT_DEDUPE_WINDOW)
        if self.store.find_alerts(org_id, since=since, **keys):
            return None
        alert = self.store.add_alert(
            {
                **keys,
                "organizationId": org_id,
                "percentUsed": entry["percentUsed"],
                "currentSpendUsd": entry["currentSpendUsd"],
                "limitUsd": entry["limitUsd"],
                "message": entry["message"],
            },
            org_id,
        )
        logger.info("budget_alert org_id=%s level=%s type=%s", org_id, level, alert_type)
        return alert

    def set_policy(self, org_id: str, level: str, data: dict, user_id: str | None = None, agent_id: str | None = None) -> dict:
        if level not in ("org", "user", "agent"):
            raise ValueError(f"Unknown budget level: {level}")
        keys = {}
        if level == "user":
            keys["userId"] = user_id
        if level == "agent":
            keys["agentId"] = agent_id
        allowed = {k: data[k] for k in ("enabled", "monthlyLimitUsd", "alertAtPct", "hardLimit") if k in data}
        return self.store.upsert_policy(level, allowed, org_id, **keys)

    # reservations

    def create_reservation(self, run_id: str, agent_id: str, estimated_cost_usd: float, org_id: str, user_id: str | None = None) -> str:
        event = self.store.add_cost_event(
            {
                "runId": run_id,
                "agentId": agent_id,
                "tenantId": org_id,
                "userId": user_id,
                "provider": "reservation",
                "modelName": "estimated",
                "costUsd": estimated_cost_usd,
                "billedCostUsd": estimated_cost_usd,
                "status": STATUS_RESERVED,
            },
            org_id,
        )
        return event["id"]

    def finalize_reservation(self, reservation_id: str, actual_cost_usd: float, org_id: str) -> dict | None:
        return self.store.update(
            reservation_id,
            {
                "status": STATUS_FINALIZED,
                "costUsd": actual_cost_usd,
                "billedCostUsd": actual_cost_usd,
                "modelName": "actual",
            },
            org_id,
        )

    def cancel_reservation(self, reservation_id: str, org_id: str) -> dict | None:
        return self.store.update(reservation_id, {"status": STATUS_CANCELLED, "costUsd": 0, "billedCostUsd": 0}, org_id)

    def cleanup_stale_reservations(self, org_id: str, max_age: timedelta = STALE_RESERVATION_AGE, now: datetime | None = None) -> int:
        cutoff = iso((now or datetime.now(timezone.utc)) - max_age)
        stale = self.store.list_cost_events(org_id, before=cutoff, status=STATUS_RESERVED)
        for event in stale:
            self.store.update(event["id"], {"status": STATUS_CANCELLED, "costUsd": 0, "billedCostUsd": 0}, org_id)
        if stale:
            logger.info("budget_reservations_cancelled org_id=%s count=%s", org_id, len(stale))
        return len(stale)
