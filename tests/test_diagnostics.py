import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.diagnostics import ChannelProber, build_workspace_diagnostics, mask_secret, run_channel_diagnostics

_CHANNEL_ENV = [
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "VOICE_DEFAULT_AGENT_SLUG",
    "ELEVENLABS_API_KEY",
    "ELEVENLABS_AGENT_ID",
    "ELEVENLABS_WEBHOOK_SECRET",
    "TELEGRAM_BOT_TOKEN",
    "WHATSAPP_ENABLED",
    "WHATSAPP_ALLOWLIST",
    "WHATSAPP_DEFAULT_AGENT_SLUG",
]


def _telegram(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/getMe"):
        return httpx.Response(200, json={"ok": True, "result": {"id": 7, "username": "helper_bot"}})
    if request.url.path.endswith("/getWebhookInfo"):
        return httpx.Response(200, json={"ok": True, "result": {"url": "https://hooks.example.com/tg", "last_error_message": "timeout"}})
    return httpx.Response(404)


class TestChannelDiagnostics(unittest.TestCase):
    def setUp(self) -> None:
        self._env = {key: os.environ.pop(key, None) for key in _CHANNEL_ENV}

    def tearDown(self) -> None:
        for key, value in self._env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_mask_secret(self) -> None:
        self.assertIsNone(mask_secret(""))
        self.assertEqual(mask_secret("short"), "****")
        self.assertEqual(mask_secret("AC1234567890abc"), "AC12****abc")

    def test_nothing_configured_is_all_skip(self) -> None:
        report = run_channel_diagnostics()
        self.assertEqual(report["summary"]["failed"], 0)
        self.assertEqual(report["summary"]["skipped"], report["summary"]["total"])
        for integration in report["integrations"].values():
            self.assertEqual(integration["status"], "skip")

    def test_stored_credentials_win_over_environment(self) -> None:
        os.environ["TWILIO_ACCOUNT_SID"] = "AC_from_env_000"
        report = run_channel_diagnostics({"twilio": {"TWILIO_ACCOUNT_SID": "AC_from_db_1234", "TWILIO_AUTH_TOKEN": "tok"}})
        twilio = report["integrations"]["twilio"]
        self.assertEqual(twilio["credentialSource"], "database")
        self.assertEqual(twilio["config"]["accountSid"], "AC_f****234")
        self.assertEqual(twilio["status"], "fail")
        self.assertEqual(twilio["checks"][0]["details"]["missing"], ["TWILIO_PHONE_NUMBER"])

    def test_environment_fallback_without_probes(self) -> None:
        os.environ["ELEVENLABS_API_KEY"] = "sk_live_abcdefghijk"
        report = run_channel_diagnostics()
        eleven = report["integrations"]["elevenlabs"]
        self.assertEqual(eleven["credentialSource"], "environment")
        self.assertEqual(eleven["status"], "pass")
        self.assertEqual([c["name"] for c in eleven["checks"]], ["Credentials configured", "Webhook secret"])

    def test_telegram_probes(self) -> None:
        prober = ChannelProber(transport=httpx.MockTransport(_telegram))
        report = run_channel_diagnostics({"telegram": {"TELEGRAM_BOT_TOKEN": "123:abc"}}, prober)
        telegram = report["integrations"]["telegram"]
        checks = {c["name"]: c for c in telegram["checks"]}
        self.assertEqual(checks["Bot token validation"]["message"], "Bot: @helper_bot (ID: 7)")
        self.assertEqual(checks["Webhook status"]["status"], "fail")
        self.assertEqual(checks["Webhook status"]["details"]["lastError"], "timeout")
        self.assertEqual(telegram["status"], "fail")

    def test_whatsapp_allowlist(self) -> None:
        os.environ["WHATSAPP_ENABLED"] = "true"
        report = run_channel_diagnostics({"whatsapp": {"WHATSAPP_ALLOWLIST": "+1 555 0100, +44 20 7946 0000"}})
        whatsapp = report["integrations"]["whatsapp"]
        self.assertEqual(whatsapp["status"], "pass")
        self.assertEqual(whatsapp["config"]["allowlistSize"], 2)


class TestWorkspaceDiagnostics(unittest.TestCase):
    def test_reports_invalid_definitions(self) -> None:
        workflows = [
            {"id": "wf-1", "slug": "ok", "definitionJson": {"steps": [{"id": "wait", "type": "delay", "config": {"delayMs": 10}}]}},
            {"id": "wf-2", "slug": "bad", "definitionJson": {"steps": [{"id": "x", "type": "nope"}]}},
        ]
        networks = [{"id": "net-1", "slug": "desk", "topologyJson": None}]
        schedules = [
            {"id": "s-1", "name": "digest", "cronExpr": "0 9 * * *", "timezone": "UTC"},
            {"id": "s-2", "name": "broken", "cronExpr": "0 9 * *", "timezone": "UTC"},
        ]
        report = build_workspace_diagnostics(workflows, networks, schedules)
        self.assertFalse(report["ok"])
        self.assertEqual(report["counts"]["invalid"], 3)
        bad = [(item["kind"], item["slug"]) for item in report["items"] if not item["ok"]]
        self.assertEqual(bad, [("workflow", "bad"), ("network", "desk"), ("schedule", "broken")])

    def test_empty_workspace_is_ok(self) -> None:
        report = build_workspace_diagnostics([], [], [])
        self.assertTrue(report["ok"])
        self.assertEqual(report["counts"]["workflows"], 0)


if __name__ == "__main__":
    unittest.main()
