import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.embed_identity import (
    build_partner_resource_id,
    build_partner_thread_id,
    create_partner,
    sign_embed_identity,
    verify_embed_identity,
)
from app.stores import PLATFORM_TENANT, memory_stores

NOW = 1_760_000_000


class TestEmbedIdentity(unittest.TestCase):
    def setUp(self) -> None:
        self.stores = memory_stores()
        self.stores.orgs.create({"id": "org-1", "slug": "acme", "status": "active"})
        self.partner = create_partner(self.stores.embed, "org-1", "Helpdesk Co", "helpdesk", token_max_age_sec=600)

    def _token(self, **payload) -> str:
        payload.setdefault("externalUserId", "ext-42")
        return sign_embed_identity(payload, self.partner["signingSecret"])

    def test_signing_secret_shape(self) -> None:
        self.assertEqual(len(self.partner["signingSecret"]), 64)
        int(self.partner["signingSecret"], 16)

    def test_verify_provisions_user_once(self) -> None:
        token = self._token(email="sam@helpdesk.example", name="Sam", exp=NOW + 300)
        identity = verify_embed_identity(self.stores, token, "org-1", self.partner["id"], now=NOW)
        self.assertEqual(identity["externalUserId"], "ext-42")
        self.assertEqual(identity["partnerSlug"], "helpdesk")
        self.assertIsNotNone(identity["mappedUserId"])
        membership = self.stores.orgs.get_membership(identity["mappedUserId"], "org-1")
        self.assertEqual(membership["role"], "member")

        again = verify_embed_identity(self.stores, token, "org-1", now=NOW)
        self.assertEqual(again["mappedUserId"], identity["mappedUserId"])
        self.assertEqual(again["partnerUserId"], identity["partnerUserId"])
        self.assertEqual(len(self.stores.records.find("users", PLATFORM_TENANT)), 1)

    def test_identity_without_email_is_not_mapped(self) -> None:
        identity = verify_embed_identity(self.stores, self._token(), "org-1", now=NOW)
        self.assertIsNone(identity["mappedUserId"])

    def test_rejects_tampered_and_malformed_tokens(self) -> None:
        token = self._token()
        payload_b64, signature = token.split(".")
        forged = sign_embed_identity({"externalUserId": "admin"}, "0" * 64).split(".")[0] + "." + signature
        self.assertIsNone(verify_embed_identity(self.stores, forged, "org-1", now=NOW))
        self.assertIsNone(verify_embed_identity(self.stores, payload_b64, "org-1", now=NOW))
        self.assertIsNone(verify_embed_identity(self.stores, token + "x", "org-1", now=NOW))
        self.assertIsNone(verify_embed_identity(self.stores, "!!!." + signature, "org-1", now=NOW))
        self.assertIsNone(verify_embed_identity(self.stores, "", "org-1", now=NOW))

    def test_requires_external_user_id(self) -> None:
        token = sign_embed_identity({"email": "x@y.z"}, self.partner["signingSecret"])
        self.assertIsNone(verify_embed_identity(self.stores, token, "org-1", now=NOW))

    def test_expired_token(self) -> None:
        self.assertIsNone(verify_embed_identity(self.stores, self._token(exp=NOW - 1), "org-1", now=NOW))
        self.assertIsNotNone(verify_embed_identity(self.stores, self._token(exp=NOW), "org-1", now=NOW))

    def test_rejects_mistyped_claims(self) -> None:
        for claims in ({"exp": str(NOW + 300)}, {"exp": True}, {"email": ["sam@helpdesk.example"]}, {"name": {"first": "Sam"}}):
            token = self._token(**claims)
            self.assertIsNone(verify_embed_identity(self.stores, token, "org-1", now=NOW), claims)
        numeric_user = sign_embed_identity({"externalUserId": 42}, self.partner["signingSecret"])
        self.assertIsNone(verify_embed_identity(self.stores, numeric_user, "org-1", now=NOW))
        self.assertEqual(self.stores.records.find("users", PLATFORM_TENANT), [])

    def test_partner_must_belong_to_agent_org(self) -> None:
        self.assertIsNone(verify_embed_identity(self.stores, self._token(), "org-2", self.partner["id"], now=NOW))
        self.assertIsNone(verify_embed_identity(self.stores, self._token(), "org-2", now=NOW))

    def test_inactive_partner_rejected(self) -> None:
        self.stores.embed.update(self.partner["id"], {"isActive": False})
        self.assertIsNone(verify_embed_identity(self.stores, self._token(), "org-1", self.partner["id"], now=NOW))

    def test_resource_and_thread_ids(self) -> None:
        self.assertEqual(build_partner_resource_id("org-1", "helpdesk", "ext-42"), "org-1:partner-helpdesk:ext-42")
        self.assertEqual(build_partner_thread_id("org-1", "helpdesk", "ext-42", "t1"), "org-1:partner-helpdesk:ext-42:t1")
        self.assertEqual(build_partner_thread_id("org-1", "helpdesk", "ext-42"), "org-1:partner-helpdesk:ext-42")


if __name__ == "__main__":
    unittest.main()
