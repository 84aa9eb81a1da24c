import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.auth import AuthMiddleware
from app.stores import memory_stores
from app.workspaces import (
    WorkspaceError,
    add_member,
    create_organization,
    default_workspace_id,
    invalidate_membership_cache,
    list_workspaces,
    resolve_membership,
)


class TestWorkspaces(unittest.TestCase):
    def setUp(self) -> None:
        invalidate_membership_cache()
        self.stores = memory_stores()

    def tearDown(self) -> None:
        invalidate_membership_cache()

    def test_create_organization_with_default_workspace(self) -> None:
        org = create_organization(self.stores, "Acme Corp", "u-1")
        self.assertEqual(org["slug"], "acme-corp")
        workspaces = list_workspaces(self.stores, org["id"])
        self.assertEqual([w["slug"] for w in workspaces], ["default"])
        self.assertEqual(default_workspace_id(self.stores, org["id"]), workspaces[0]["id"])
        self.assertEqual(self.stores.orgs.get_membership("u-1", org["id"])["role"], "owner")

    def test_slug_rules(self) -> None:
        create_organization(self.stores, "Acme", "u-1")
        with self.assertRaises(WorkspaceError) as ctx:
            create_organization(self.stores, "Acme", "u-2")
        self.assertEqual(ctx.exception.code, "ORG_SLUG_TAKEN")
        with self.assertRaises(WorkspaceError) as ctx:
            create_organization(self.stores, "Other", "u-2", slug="Bad Slug")
        self.assertEqual(ctx.exception.code, "ORG_SLUG_INVALID")

    def test_resolve_membership(self) -> None:
        first = create_organization(self.stores, "First", "u-1")
        second = create_organization(self.stores, "Second", "u-1")
        create_organization(self.stores, "Elsewhere", "u-2")
        org, membership = resolve_membership(self.stores.orgs, "u-1")
        self.assertEqual(org["id"], first["id"])
        org, membership = resolve_membership(self.stores.orgs, "u-1", "second")
        self.assertEqual(org["id"], second["id"])
        self.assertEqual(membership["role"], "owner")
        self.assertIsNone(resolve_membership(self.stores.orgs, "u-1", "elsewhere"))
        self.assertIsNone(resolve_membership(self.stores.orgs, "u-1", "missing"))
        self.assertIsNone(resolve_membership(self.stores.orgs, "nobody"))

    def test_add_member(self) -> None:
        org = create_organization(self.stores, "Acme", "u-1")
        resolve_membership(self.stores.orgs, "u-2")
        add_member(self.stores, org["id"], "u-2", "viewer")
        self.assertEqual(resolve_membership(self.stores.orgs, "u-2")[1]["role"], "viewer")
        add_member(self.stores, org["id"], "u-2", "admin")
        self.assertEqual(self.stores.orgs.get_membership("u-2", org["id"])["role"], "admin")
        with self.assertRaises(WorkspaceError):
            add_member(self.stores, org["id"], "u-3", "superuser")


class TestAuthMiddleware(unittest.TestCase):
    def setUp(self) -> None:
        self._env = {key: os.environ.get(key) for key in ("AGENTC2_DISABLE_AUTH", "AGENTC2_API_KEY")}
        os.environ.pop("AGENTC2_DISABLE_AUTH", None)
        os.environ["AGENTC2_API_KEY"] = "test-key"
        app = FastAPI()

        @app.get("/health")
        def health():
            return {"ok": True}

        @app.get("/whoami")
        def whoami(request: Request):
            return request.state.user

        app.add_middleware(AuthMiddleware, supabase_url="http://localhost", audience="authenticated")
        self.client = TestClient(app)

    def tearDown(self) -> None:
        for key, value in self._env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_public_path(self) -> None:
        self.assertEqual(self.client.get("/health").status_code, 200)

    def test_missing_token(self) -> None:
        res = self.client.get("/whoami")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_MISSING_TOKEN")

    def test_malformed_token(self) -> None:
        res = self.client.get("/whoami", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_INVALID_TOKEN")

    def test_api_key(self) -> None:
        res = self.client.get("/whoami", headers={"X-API-Key": "test-key", "X-Organization-Slug": "acme"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["org_slug"], "acme")
        self.assertTrue(res.json()["api_key"])

    def test_api_key_errors(self) -> None:
        wrong = self.client.get("/whoami", headers={"X-API-Key": "nope", "X-Organization-Slug": "acme"})
        self.assertEqual(wrong.json()["errors"][0]["code"], "AUTH_INVALID_API_KEY")
        no_org = self.client.get("/whoami", headers={"X-API-Key": "test-key"})
        self.assertEqual(no_org.json()["errors"][0]["code"], "AUTH_ORG_REQUIRED")


if __name__ == "__main__":
    unittest.main()
