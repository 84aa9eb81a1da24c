"""Budget hierarchy evaluation (subscription, org, user, agent).

Pure functions over already-loaded policies and month-to-date spend; the
service in ``app/budget.py`` loads the inputs and persists alerts.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List

BudgetViolation = Dict[str, Any]

LEVELS = ("subscription", "org", "user", "agent")
SUBSCRIPTION_WARN_PCT = 80
_LEVEL_LABELS = {"org": "Organization", "user": "User", "agent": "Agent"}


def _round_pct(pct: float) -> int:
    return int(math.floor(pct + 0.5))


def _usd(value: float) -> str:
    return f"${value:.2f}"


def _entry(level: str, spend: float, limit: float, pct: float, message: str) -> BudgetViolation:
    return {
        "level": level,
        "currentSpendUsd": spend,
        "limitUsd": limit,
        "percentUsed": pct,
        "message": message,
    }


def start_of_month(now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def event_cost(event: dict) -> float:
    billed = event.get("billedCostUsd")
    if billed is not None:
        return float(billed)
    return float(event.get("costUsd") or 0)


def check_subscription(subscription: dict | None) -> tuple[List[BudgetViolation], List[BudgetViolation]]:
    violations: List[BudgetViolation] = []
    warnings: List[BudgetViolation] = []
    if not subscription or subscription.get("status") != "active":
        return violations, warnings
    plan = subscription.get("plan") or {}
    total = float(subscription.get("includedCreditsUsd") or 0)
    used = float(subscription.get("usedCreditsUsd") or 0)
    pct = (used / total) * 100 if total > 0 else 0
    if total > 0 and used >= total:
        if not plan.get("overageEnabled"):
            violations.append(
                _entry(
                    "subscription",
                    used,
                    total,
                    pct,
                    f"Included credits exhausted ({_usd(used)} / {_usd(total)}). "
                    f"Overage is not enabled on the {plan.get('name')} plan.",
                )
            )
        else:
            overage_limit = subscription.get("overageSpendLimitUsd")
            accrued = float(subscription.get("overageAccruedUsd") or 0)
            if overage_limit is not None and accrued >= float(overage_limit):
                violations.append(
                    _entry(
                        "subscription",
                        accrued,
                        float(overage_limit),
                        100,
                        f"Overage spend limit reached ({_usd(accrued)} / {_usd(float(overage_limit))}).",
                    )
                )
    elif total > 0 and pct >= SUBSCRIPTION_WARN_PCT:
        warnings.append(
            _entry(
                "subscription",
                used,
                total,
                pct,
                f"{_round_pct(pct)}% of included credits used ({_usd(used)} / {_usd(total)}).",
            )
        )
    return violations, warnings


def check_policy(level: str, policy: dict | None, spend: float) -> tuple[BudgetViolation | None, BudgetViolation | None]:
    """Return ``(violation, warning)`` for an org, user or agent policy."""
    if not policy or not policy.get("enabled") or policy.get("monthlyLimitUsd") is None:
        return None, None
    limit = float(policy["monthlyLimitUsd"])
    label = _LEVEL_LABELS[level]
    if limit <= 0:
        pct = 100.0 if spend > 0 else 0.0
    else:
        pct = (spend / limit) * 100
    if spend >= limit and policy.get("hardLimit"):
        return (
            _entry(level, spend, limit, pct, f"{label} monthly budget exceeded ({_usd(spend)} / {_usd(limit)})."),
            None,
        )
    alert_at = policy.get("alertAtPct")
    if alert_at and pct >= alert_at:
        return (
            None,
            _entry(level, spend, limit, pct, f"{label} budget at {_round_pct(pct)}% ({_usd(spend)} / {_usd(limit)})."),
        )
    return None, None


def evaluate_budget(
    subscription: dict | None = None,
    org_policy: dict | None = None,
    org_spend: float = 0.0,
    user_policy: dict | None = None,
    user_spend: float = 0.0,
    agent_policy: dict | None = None,
    agent_spend: float = 0.0,
) -> dict:
    violations, warnings = check_subscription(subscription)
    for level, policy, spend in (
        ("org", org_policy, org_spend),
        ("user", user_policy, user_spend),
        ("agent", agent_policy, agent_spend),
    ):
        violation, warning = check_policy(level, policy, spend)
        if violation:
            violations.append(violation)
        if warning:
            warnings.append(warning)
    return {"allowed": not violations, "violations": violations, "warnings": warnings}
