"""Workspace and channel diagnostics."""

from __future__ import annotations

import base64
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List
from urllib.parse import quote

import httpx

import cron_schedule
import network_topology
from comm_policy import parse_allowlist
from workflow_validate import validate_workflow_definition

Issue = Dict[str, Any]
Check = Dict[str, Any]

TWILIO_REQUIRED = ["TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER"]
ELEVENLABS_REQUIRED = ["ELEVENLABS_API_KEY"]
TELEGRAM_REQUIRED = ["TELEGRAM_BOT_TOKEN"]
PROBE_TIMEOUT_S = 10.0


def mask_secret(value: str | None) -> str | None:
    """First 4 and last 3 characters; short values are fully masked."""
    if not value:
        return None
    if len(value) <= 10:
        return "****"
    return f"{value[:4]}****{value[-3:]}"


def overall_status(checks: List[Check]) -> str:
    if any(c["status"] == "fail" for c in checks):
        return "fail"
    if all(c["status"] == "skip" for c in checks):
        return "skip"
    return "pass"


def _check(name: str, status: str, message: str, details: Any = None, duration_ms: int = 0) -> Check:
    out = {"name": name, "status": status, "message": message, "durationMs": duration_ms}
    if details is not None:
        out["details"] = details
    return out


def resolve_channel_credentials(stored: dict | None, keys: List[str]) -> tuple[dict, str]:
    """Stored per-org credentials first, else the process environment."""
    if stored and any(stored.get(k) for k in keys):
        return dict(stored), "database"
    env = {k: os.getenv(k, "") for k in keys}
    if any(env.values()):
        return env, "environment"
    return {}, "none"


def check_credential_keys(creds: dict, required: List[str], source: str) -> Check:
    missing = [k for k in required if not creds.get(k)]
    if not missing:
        return _check(
            "Credentials configured",
            "pass",
            f"All {len(required)} required fields set (source: {source})",
            {"source": source, "checked": required},
        )
    return _check(
        "Credentials configured",
        "fail",
        f"Missing: {', '.join(missing)} (source: {source})",
        {"source": source, "missing": missing, "checked": required},
    )


class ChannelProber:
    """Live API probes; ``transport`` lets tests substitute an ``httpx.MockTransport``."""

    def __init__(self, transport: httpx.BaseTransport | None = None, timeout: float = PROBE_TIMEOUT_S) -> None:
        self.transport = transport
        self.timeout = timeout

    def get(self, url: str, headers: dict | None = None) -> httpx.Response:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            return client.get(url, headers=headers or {})

    def run(self, name: str, fn: Callable[[], tuple]) -> Check:
        started = time.monotonic()
        try:
            status, message, details = fn()
        except httpx.HTTPError as exc:
            status, message, details = "fail", str(exc), None
        return _check(name, status, message, details, int((time.monotonic() - started) * 1000))


def _twilio_checks(creds: dict, prober: ChannelProber | None) -> List[Check]:
    sid = creds.get("TWILIO_ACCOUNT_SID")
    token = creds.get("TWILIO_AUTH_TOKEN")
    phone = creds.get("TWILIO_PHONE_NUMBER")
    if not sid or not token:
        return [_check("Credential validation", "skip", "Missing TWILIO_ACCOUNT_SID or TWILIO_AUTH_TOKEN")]
    if prober is None:
        return []
    auth = {"Authorization": "Basic " + base64.b64encode(f"{sid}:{token}".encode("utf-8")).decode("ascii")}
    base = f"https://api.twilio.com/2010-04-01/Accounts/{sid}"

    def account():
        res = prober.get(f"{base}.json", auth)
        if res.status_code >= 400:
            return "fail", f"Twilio API returned {res.status_code}", res.text
        data = res.json()
        return "pass", f"Account: {data.get('friendly_name')} ({data.get('status')})", {"friendlyName": data.get("friendly_name"), "status": data.get("status")}

    def phone_number():
        res = prober.get(f"{base}/IncomingPhoneNumbers.json?PhoneNumber={quote(phone)}", auth)
        if res.status_code >= 400:
            return "fail", f"Failed to check phone number: HTTP {res.status_code}", None
        numbers = res.json().get("incoming_phone_numbers") or []
        if numbers:
            return "pass", f"Phone {phone} is active ({numbers[0].get('friendly_name')})", {"friendlyName": numbers[0].get("friendly_name")}
        return "fail", f"Phone {phone} not found on this account", None

    checks = [prober.run("Credential validation", account)]
    if phone:
        checks.append(prober.run("Phone number active", phone_number))
    else:
        checks.append(_check("Phone number active", "skip", "Missing Twilio credentials or phone number"))
    return checks


def _elevenlabs_checks(creds: dict, prober: ChannelProber | None) -> List[Check]:
    api_key = creds.get("ELEVENLABS_API_KEY")
    agent_id = creds.get("ELEVENLABS_AGENT_ID")
    checks: List[Check] = []
    if prober is not None:
        headers = {"xi-api-key": api_key}

        def voices():
            res = prober.get("https://api.elevenlabs.io/v1/voices", headers)
            if res.status_code >= 400:
                return "fail", f"ElevenLabs API returned {res.status_code}", None
            count = len(res.json().get("voices") or [])
            return "pass", f"API key valid - {count} voices available", {"voiceCount": count}

        checks.append(prober.run("API key validation", voices))
        if agent_id:

            def agent():
                res = prober.get(f"https://api.elevenlabs.io/v1/convai/agents/{agent_id}", headers)
                if res.status_code >= 400:
                    return "fail", f"Agent {agent_id} not found (HTTP {res.status_code})", None
                data = res.json()
                return "pass", f"Agent: {data.get('name') or agent_id}", {"name": data.get("name"), "agentId": agent_id}

            checks.append(prober.run("Agent exists", agent))
        else:
            checks.append(_check("Agent exists", "skip", "Missing ELEVENLABS_API_KEY or ELEVENLABS_AGENT_ID"))
    secret = creds.get("ELEVENLABS_WEBHOOK_SECRET")
    checks.append(
        _check(
            "Webhook secret",
            "pass" if secret else "skip",
            "ELEVENLABS_WEBHOOK_SECRET is configured" if secret else "ELEVENLABS_WEBHOOK_SECRET not set (optional, needed for MCP tool webhooks)",
        )
    )
    return checks


def _telegram_checks(creds: dict, prober: ChannelProber | None) -> List[Check]:
    token = creds.get("TELEGRAM_BOT_TOKEN")
    if not token:
        return [_check("Bot token validation", "skip", "Missing TELEGRAM_BOT_TOKEN")]
    if prober is None:
        return []

    def bot():
        res = prober.get(f"https://api.telegram.org/bot{token}/getMe")
        if res.status_code >= 400:
            return "fail", f"Telegram API returned {res.status_code}", None
        data = res.json()
        if data.get("ok"):
            result = data.get("result") or {}
            return "pass", f"Bot: @{result.get('username')} (ID: {result.get('id')})", {"id": result.get("id"), "username": result.get("username")}
        return "fail", data.get("description") or "Unknown error", None

    def webhook():
        res = prober.get(f"https://api.telegram.org/bot{token}/getWebhookInfo")
        if res.status_code >= 400:
            return "fail", f"Failed to get webhook info (HTTP {res.status_code})", None
        info = res.json().get("result") or {}
        if info.get("url"):
            error = info.get("last_error_message")
            return (
                "fail" if error else "pass",
                f"Webhook set but has errors: {error}" if error else f"Webhook active: {info['url']}",
                {"url": info["url"], "pendingUpdates": info.get("pending_update_count"), "lastError": error},
            )
        return "pass", "No webhook set (using polling mode)", {"url": None}

    return [prober.run("Bot token validation", bot), prober.run("Webhook status", webhook)]


def _integration(status_checks: List[Check], config: dict, source: str) -> dict:
    return {"status": overall_status(status_checks), "checks": status_checks, "config": config, "credentialSource": source}


def run_channel_diagnostics(credentials: Dict[str, dict] | None = None, prober: ChannelProber | None = None) -> dict:
    """``credentials`` maps channel to stored credential dicts; without a prober no network calls are made."""
    credentials = credentials or {}
    integrations: Dict[str, dict] = {}

    creds, source = resolve_channel_credentials(credentials.get("twilio"), TWILIO_REQUIRED + ["VOICE_DEFAULT_AGENT_SLUG"])
    config = {"enabled": bool(creds.get("TWILIO_ACCOUNT_SID")), "credentialSource": source, "accountSid": mask_secret(creds.get("TWILIO_ACCOUNT_SID")), "phoneNumber": creds.get("TWILIO_PHONE_NUMBER") or None}
    if not config["enabled"]:
        integrations["twilio"] = _integration([_check("Channel enabled", "skip", "No Twilio credentials configured")], config, source)
    else:
        checks = [check_credential_keys(creds, TWILIO_REQUIRED, source)] + _twilio_checks(creds, prober)
        integrations["twilio"] = _integration(checks, config, source)

    creds, source = resolve_channel_credentials(credentials.get("elevenlabs"), ELEVENLABS_REQUIRED + ["ELEVENLABS_AGENT_ID", "ELEVENLABS_WEBHOOK_SECRET"])
    config = {"credentialSource": source, "apiKey": mask_secret(creds.get("ELEVENLABS_API_KEY")), "agentId": creds.get("ELEVENLABS_AGENT_ID") or None, "webhookSecret": mask_secret(creds.get("ELEVENLABS_WEBHOOK_SECRET"))}
    if not creds.get("ELEVENLABS_API_KEY"):
        integrations["elevenlabs"] = _integration([_check("API key configured", "skip", "ELEVENLABS_API_KEY not set")], config, source)
    else:
        checks = [check_credential_keys(creds, ELEVENLABS_REQUIRED, source)] + _elevenlabs_checks(creds, prober)
        integrations["elevenlabs"] = _integration(checks, config, source)

    creds, source = resolve_channel_credentials(credentials.get("telegram"), TELEGRAM_REQUIRED)
    config = {"enabled": bool(creds.get("TELEGRAM_BOT_TOKEN")), "credentialSource": source, "botToken": mask_secret(creds.get("TELEGRAM_BOT_TOKEN"))}
    if not config["enabled"]:
        integrations["telegram"] = _integration([_check("Channel enabled", "skip", "No Telegram credentials configured")], config, source)
    else:
        checks = [check_credential_keys(creds, TELEGRAM_REQUIRED, source)] + _telegram_checks(creds, prober)
        integrations["telegram"] = _integration(checks, config, source)

    creds, source = resolve_channel_credentials(credentials.get("whatsapp"), ["WHATSAPP_ALLOWLIST", "WHATSAPP_DEFAULT_AGENT_SLUG"])
    enabled = os.getenv("WHATSAPP_ENABLED", "").strip().lower() == "true"
    allowlist = parse_allowlist(creds.get("WHATSAPP_ALLOWLIST"))
    config = {"enabled": enabled, "credentialSource": source, "allowlistConfigured": bool(allowlist), "allowlistSize": len(allowlist)}
    if not enabled:
        integrations["whatsapp"] = _integration([_check("Channel enabled", "skip", 'WHATSAPP_ENABLED is not set to "true"')], config, source)
    else:
        integrations["whatsapp"] = _integration([_check("Configuration", "pass", f"WhatsApp enabled (source: {source})")], config, source)

    all_checks = [c for integration in integrations.values() for c in integration["checks"]]
    return {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "summary": {
            "total": len(all_checks),
            "passed": sum(1 for c in all_checks if c["status"] == "pass"),
            "failed": sum(1 for c in all_checks if c["status"] == "fail"),
            "skipped": sum(1 for c in all_checks if c["status"] == "skip"),
        },
        "integrations": integrations,
    }


def build_workspace_diagnostics(workflows: List[dict], networks: List[dict], schedules: List[dict], network_primitives: Dict[str, List[dict]] | None = None) -> dict:
    """Re-validate every stored definition and schedule."""
    network_primitives = network_primitives or {}
    items: List[dict] = []
    for workflow in workflows:
        result = validate_workflow_definition(workflow.get("definitionJson") or {"steps": []})
        items.append(
            {
                "kind": "workflow",
                "id": workflow.get("id"),
                "slug": workflow.get("slug"),
                "ok": result["ok"],
                "errors": result["errors"],
                "warnings": result["warnings"],
            }
        )
    for network in networks:
        result = network_topology.validate_network(network.get("topologyJson"), network_primitives.get(network.get("id")))
        items.append(
            {
                "kind": "network",
                "id": network.get("id"),
                "slug": network.get("slug"),
                "ok": result["ok"],
                "errors": result["errors"],
                "warnings": result["warnings"],
            }
        )
    for schedule in schedules:
        errors: List[Issue] = []
        try:
            cron_schedule.validate_cron(schedule.get("cronExpr") or "")
            cron_schedule.validate_timezone(schedule.get("timezone") or "UTC")
        except cron_schedule.ScheduleError as exc:
            errors.append({"code": "SCHEDULE_INVALID", "message": str(exc), "path": "$.cronExpr", "detail": None})
        items.append({"kind": "schedule", "id": schedule.get("id"), "slug": schedule.get("name"), "ok": not errors, "errors": errors, "warnings": []})

    counts = {
        "workflows": len(workflows),
        "networks": len(networks),
        "schedules": len(schedules),
        "invalid": sum(1 for item in items if not item["ok"]),
        "warnings": sum(len(item["warnings"]) for item in items),
    }
    return {"ok": counts["invalid"] == 0, "counts": counts, "items": items}
