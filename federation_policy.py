"""Cross-organization federation policy engine.

Evaluates, in order, the circuit breaker, the agreement state, exposure of the
target agent, per-agreement rate limits and PII content filtering before a
request from one organization may reach an agent owned by another.

Counters and circuit state live in process memory, one engine per process.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger("agentc2.federation.policy")

PolicyEvaluation = Dict[str, Any]

PII_PATTERNS = [
    ("email", re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[EMAIL_REDACTED]"),
    ("phone", re.compile(r"(\+?1[-.\s]?)?(\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4})", re.ASCII), "[PHONE_REDACTED]"),
    ("ssn", re.compile(r"\b\d{3}[-.\s]?\d{2}[-.\s]?\d{4}\b", re.ASCII), "[SSN_REDACTED]"),
    ("credit_card", re.compile(r"\b(?:\d{4}[-.\s]?){3}\d{4}\b", re.ASCII), "[CC_REDACTED]"),
    ("ip_address", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b", re.ASCII), "[IP_REDACTED]"),
]

CLASSIFICATIONS = ("public", "internal", "confidential", "restricted")

CIRCUIT_WINDOW_SEC = 5 * 60
CIRCUIT_MIN_REQUESTS = 10
CIRCUIT_ERROR_THRESHOLD = 0.5
RATE_LIMIT_EXCEED_THRESHOLD = 3
RATE_LIMIT_EXCEED_WINDOW_SEC = 60 * 60


def _blocked(reason: str, details: dict | None = None) -> PolicyEvaluation:
    result: PolicyEvaluation = {"allowed": False, "result": "blocked", "reason": reason}
    if details is not None:
        result["details"] = details
    return result


def scan_for_pii(content: str) -> dict:
    """Detect PII on the original content, redact sequentially."""
    detected: List[str] = []
    redacted = content
    for name, pattern, replacement in PII_PATTERNS:
        if pattern.search(content):
            detected.append(name)
            redacted = pattern.sub(replacement, redacted)
    return {"hasPii": bool(detected), "detectedTypes": detected, "redactedContent": redacted}


def apply_content_filter(content: str, data_classification: str) -> PolicyEvaluation | None:
    if data_classification in ("public", "internal"):
        return None
    scan = scan_for_pii(content)
    if not scan["hasPii"]:
        return None
    if data_classification == "restricted":
        return _blocked(
            "Message contains PII and data classification is restricted",
            {"detectedTypes": scan["detectedTypes"]},
        )
    if data_classification == "confidential":
        return {
            "allowed": True,
            "result": "filtered",
            "reason": "PII redacted from message",
            "details": {"detectedTypes": scan["detectedTypes"]},
            "filteredContent": scan["redactedContent"],
        }
    return None


def _pct(rate: float) -> str:
    return f"{rate * 100:.0f}"


class FederationPolicyEngine:
    """Policy evaluation over a federation store.

    ``store`` must provide ``get_agreement(id)``, ``list_exposures(agreement_id)``
    and ``update_agreement(id, patch)``. ``audit`` is called with keyword
    arguments matching ``app.audit.write_federation_event``.
    """

    def __init__(self, store, audit: Callable[..., None] | None = None, clock: Callable[[], float] | None = None) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock or time.time
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[str, float]] = {}
        self._circuits: Dict[str, Dict[str, float]] = {}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._circuits.clear()

    # rate limits

    def _bucket_key(self, agreement_id: str, period: str, now: float) -> str:
        dt = datetime.fromtimestamp(now, tz=timezone.utc)
        bucket = dt.strftime("%Y-%m-%d-%H") if period == "hour" else dt.strftime("%Y-%m-%d")
        return f"{agreement_id}:{period}:{bucket}"

    def _check_counter(self, agreement_id: str, period: str, limit: int | None, ttl: int, now: float) -> PolicyEvaluation | None:
        if limit is None:
            return None
        key = self._bucket_key(agreement_id, period, now)
        counter = self._counters.get(key)
        if counter is None or now > counter["resetAt"]:
            counter = {"count": 0, "resetAt": now + ttl}
            self._counters[key] = counter
        if counter["count"] >= limit:
            return _blocked(
                f"Rate limit exceeded: {limit} requests/{period}",
                {"limit": limit, "period": period, "current": int(counter["count"])},
            )
        counter["count"] += 1
        return None

    def check_and_increment_rate_limit(self, agreement_id: str, max_per_hour: int, max_per_day: int) -> PolicyEvaluation | None:
        now = self.clock()
        with self._lock:
            hourly = self._check_counter(agreement_id, "hour", max_per_hour, 3600, now)
            if hourly:
                return hourly
            return self._check_counter(agreement_id, "day", max_per_day, 86400, now)

    # circuit breaker

    def _circuit(self, agreement_id: str, now: float) -> Dict[str, float]:
        state = self._circuits.get(agreement_id)
        if state is None or now - state["windowStart"] > CIRCUIT_WINDOW_SEC:
            state = {
                "successes": 0,
                "errors": 0,
                "windowStart": now,
                "rateLimitExceededCount": state["rateLimitExceededCount"] if state else 0,
                "rateLimitWindowStart": state["rateLimitWindowStart"] if state else now,
            }
            self._circuits[agreement_id] = state
        if now - state["rateLimitWindowStart"] > RATE_LIMIT_EXCEED_WINDOW_SEC:
            state["rateLimitExceededCount"] = 0
            state["rateLimitWindowStart"] = now
        return state

    def record_outcome(self, agreement_id: str, success: bool) -> None:
        with self._lock:
            state = self._circuit(agreement_id, self.clock())
            state["successes" if success else "errors"] += 1

    def record_rate_limit_exceeded(self, agreement_id: str) -> None:
        with self._lock:
            self._circuit(agreement_id, self.clock())["rateLimitExceededCount"] += 1

    def circuit_state(self, agreement_id: str) -> dict:
        with self._lock:
            return dict(self._circuit(agreement_id, self.clock()))

    def check_circuit_breaker(self, agreement_id: str) -> PolicyEvaluation | None:
        with self._lock:
            state = dict(self._circuit(agreement_id, self.clock()))
        total = int(state["successes"] + state["errors"])
        if total >= CIRCUIT_MIN_REQUESTS:
            error_rate = state["errors"] / total
            if error_rate >= CIRCUIT_ERROR_THRESHOLD:
                self._trip(agreement_id, error_rate, total)
                return _blocked(
                    f"Circuit breaker open: {_pct(error_rate)}% error rate, connection auto-suspended",
                    {"errorRate": error_rate, "total": total},
                )
        exceeded = int(state["rateLimitExceededCount"])
        if exceeded >= RATE_LIMIT_EXCEED_THRESHOLD:
            return _blocked(
                f"Throttled: rate limit exceeded {exceeded} times in the last hour",
                {"rateLimitExceededCount": exceeded},
            )
        return None

    def _trip(self, agreement_id: str, error_rate: float, total: int) -> None:
        agreement = self.store.get_agreement(agreement_id)
        if not agreement or agreement.get("status") != "active":
            return
        reason = f"Circuit breaker tripped: {_pct(error_rate)}% error rate over {total} requests"
        self.store.update_agreement(
            agreement_id,
            {
                "status": "suspended",
                "suspendedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                "suspendedReason": reason,
            },
        )
        logger.warning("federation_circuit_tripped agreement_id=%s error_rate=%.2f total=%s", agreement_id, error_rate, total)
        if self.audit:
            for org_id in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
                self.audit(
                    org_id=org_id,
                    actor_type="system",
                    actor_id="circuit-breaker",
                    action="federation.circuit_breaker",
                    resource=f"federation_agreement:{agreement_id}",
                    outcome="success",
                    metadata={"errorRate": error_rate, "total": total, "window": "5min"},
                )

    # evaluation

    def evaluate(
        self,
        agreement_id: str,
        source_org_id: str,
        target_agent_slug: str,
        content: str | None = None,
    ) -> PolicyEvaluation:
        circuit = self.check_circuit_breaker(agreement_id)
        if circuit:
            return circuit

        agreement = self.store.get_agreement(agreement_id)
        if not agreement:
            return _blocked("Agreement not found")
        if agreement.get("status") != "active":
            return _blocked(f"Agreement is {agreement.get('status')}")
        if source_org_id not in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
            return _blocked("Not authorized for this agreement")

        exposures = [
            exp
            for exp in self.store.list_exposures(agreement_id)
            if exp.get("enabled", True)
            and exp.get("agentSlug") == target_agent_slug
            and exp.get("ownerOrgId") != source_org_id
        ]
        if not exposures:
            return _blocked(f"Agent {target_agent_slug} is not exposed in this connection")
        if agreement.get("requireHumanApproval"):
            return _blocked("This connection requires human approval for each request")

        hour_limit = exposures[0].get("maxRequestsPerHour")
        if hour_limit is None:
            hour_limit = agreement.get("maxRequestsPerHour")
        rate = self.check_and_increment_rate_limit(agreement_id, hour_limit, agreement.get("maxRequestsPerDay"))
        if rate:
            self.record_rate_limit_exceeded(agreement_id)
            logger.info("federation_rate_limited agreement_id=%s period=%s", agreement_id, rate["details"]["period"])
            return rate

        classification = agreement.get("dataClassification")
        if content and classification:
            filtered = apply_content_filter(content, classification)
            if filtered:
                return filtered

        return {"allowed": True, "result": "approved"}
