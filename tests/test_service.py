"""End-to-end tests for the administration HTTP API."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from typing import List

from fastapi.testclient import TestClient

from bankadmin.audit import AuditEntry, AuditTrail
from bankadmin.config import AdminConfig, AdminSettings
from bankadmin.models import RelationshipType
from bankadmin.security import TokenAuth
from bankadmin.service import create_app

from shard_fixtures import add_user, build_pool, database_of

TOKEN = "admin-token"


class AdministrationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.pool = build_pool(Path(self._tempdir.name))
        for key in self.pool.registry.keys():
            database = database_of(self.pool, key)
            for index in range(3):
                add_user(database, f"{key}-{index}", minutes=index, kyc_status="pending")
        cayman = database_of(self.pool, "cayman")
        add_user(cayman, "manager", is_admin=True, is_manager=True, minutes=10)
        add_user(cayman, "admin", is_admin=True, minutes=11)
        self.entries: List[AuditEntry] = []
        config = AdminConfig(registry=self.pool.registry, settings=AdminSettings())
        self.app = create_app(
            config=config,
            pool=self.pool,
            auth=TokenAuth([TOKEN]),
            audit=AuditTrail(self.entries.append),
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _headers(self, **extra: str) -> dict:
        return {"Authorization": f"Bearer {TOKEN}", **extra}

    def test_healthcheck_is_public(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_requires_valid_bearer_token(self) -> None:
        with TestClient(self.app) as client:
            missing = client.get("/v1/shards")
            invalid = client.get("/v1/shards", headers={"Authorization": "Bearer nope"})
            valid = client.get("/v1/shards", headers=self._headers())

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(invalid.status_code, 403)
        self.assertEqual(valid.status_code, 200)
        self.assertEqual([shard["key"] for shard in valid.json()], ["cayman", "lithuanian", "digitalchain"])

    def test_list_users_envelope(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/v1/users", params={"page": 1, "perPage": 6}, headers=self._headers())

        self.assertEqual(response.status_code, 200, response.text)
        payload = response.json()
        self.assertEqual(
            payload["pagination"],
            {"page": 1, "perPage": 6, "totalCount": 11, "totalPages": 2},
        )
        self.assertEqual([user["id"] for user in payload["users"]], [
            "admin",
            "manager",
            "lithuanian-2",
            "lithuanian-1",
            "digitalchain-2",
            "digitalchain-1",
        ])
        self.assertEqual(payload["users"][0]["bank_key"], "cayman")
        self.assertEqual(payload["users"][0]["bank_name"], "Cayman Bank")

    def test_list_users_for_manager_actor(self) -> None:
        database_of(self.pool, "cayman").insert_relationship(
            "manager", "cayman-1", RelationshipType.MANAGER_TO_USER
        )
        with TestClient(self.app) as client:
            response = client.get(
                "/v1/users",
                headers=self._headers(**{"X-Actor-Id": "manager", "X-Actor-Bank": "cayman"}),
            )
            partial = client.get("/v1/users", headers=self._headers(**{"X-Actor-Id": "manager"}))

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual([user["id"] for user in response.json()["users"]], ["cayman-1"])
        self.assertEqual(partial.status_code, 400)

    def test_list_users_rejects_bad_filters(self) -> None:
        with TestClient(self.app) as client:
            unknown_bank = client.get("/v1/users", params={"bank": "atlantis"}, headers=self._headers())
            bad_page = client.get("/v1/users", params={"page": 0}, headers=self._headers())
            bad_kyc = client.get("/v1/users", params={"kyc": "maybe"}, headers=self._headers())

        self.assertEqual(unknown_bank.status_code, 404)
        self.assertEqual(bad_page.status_code, 400)
        self.assertEqual(bad_kyc.status_code, 400)

    def test_hierarchy_lifecycle(self) -> None:
        with TestClient(self.app) as client:
            created = client.post(
                "/v1/hierarchy",
                headers=self._headers(**{"X-Actor-Id": "admin"}),
                json={
                    "bankKey": "cayman",
                    "superiorId": "manager",
                    "subordinateId": "cayman-0",
                    "relationshipType": "manager_to_user",
                },
            )
            self.assertEqual(created.status_code, 201, created.text)
            relationship = created.json()
            self.assertEqual(relationship["superior_name"], "Manager")
            self.assertEqual(relationship["bank_key"], "cayman")

            duplicate = client.post(
                "/v1/hierarchy",
                headers=self._headers(),
                json={
                    "bankKey": "cayman",
                    "superiorId": "manager",
                    "subordinateId": "cayman-0",
                    "relationshipType": "manager_to_user",
                },
            )
            self.assertEqual(duplicate.status_code, 400)

            listed = client.get("/v1/hierarchy", headers=self._headers())
            self.assertEqual([item["id"] for item in listed.json()["relationships"]], [relationship["id"]])

            removed = client.delete(
                f"/v1/hierarchy/{relationship['id']}",
                params={"bank": "cayman"},
                headers=self._headers(),
            )
            self.assertEqual(removed.status_code, 200, removed.text)
            self.assertEqual(removed.json(), {"id": relationship["id"], "bankKey": "cayman"})

            missing = client.delete(f"/v1/hierarchy/{relationship['id']}", headers=self._headers())
            self.assertEqual(missing.status_code, 404)

        self.assertEqual([entry.action.value for entry in self.entries], ["CREATE", "DELETE"])
        self.assertEqual(self.entries[0].actor, "admin")

    def test_role_holders_and_promotion(self) -> None:
        with TestClient(self.app) as client:
            promoted = client.post(
                "/v1/users/cayman/admin/roles",
                headers=self._headers(),
                json={"role": "manager"},
            )
            holders = client.get("/v1/hierarchy/users", params={"adminsOnly": "true"}, headers=self._headers())
            unknown = client.post(
                "/v1/users/cayman/ghost/roles",
                headers=self._headers(),
                json={"role": "manager"},
            )

        self.assertEqual(promoted.status_code, 200, promoted.text)
        self.assertTrue(promoted.json()["is_manager"])
        self.assertEqual({user["id"] for user in holders.json()["users"]}, {"admin", "manager"})
        self.assertEqual(unknown.status_code, 404)

    def test_kyc_update(self) -> None:
        with TestClient(self.app) as client:
            updated = client.patch(
                "/v1/users/lithuanian/lithuanian-0/kyc",
                headers=self._headers(),
                json={"status": "approved"},
            )
            invalid = client.patch(
                "/v1/users/lithuanian/lithuanian-0/kyc",
                headers=self._headers(),
                json={"status": "maybe"},
            )

        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["kyc_status"], "approved")
        self.assertEqual(invalid.status_code, 400)

    def test_balance_update_masks_partial_failures(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/v1/balances/update",
                headers=self._headers(),
                json={
                    "bankKey": "digitalchain",
                    "userId": "digitalchain-0",
                    "operation": "deduct",
                    "balances": {"usd": "5"},
                },
            )
            set_response = client.post(
                "/v1/balances/update",
                headers=self._headers(),
                json={
                    "bankKey": "digitalchain",
                    "userId": "digitalchain-0",
                    "operation": "set",
                    "balances": {"usd": "12.5", "btc": 0.25},
                },
            )
            balances = client.get("/v1/balances/digitalchain/digitalchain-0", headers=self._headers())
            invalid = client.post(
                "/v1/balances/update",
                headers=self._headers(),
                json={
                    "bankKey": "digitalchain",
                    "userId": "digitalchain-0",
                    "operation": "set",
                    "balances": {"doge": "1"},
                },
            )
            unknown_bank = client.get("/v1/balances/atlantis/someone", headers=self._headers())

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json(), {"success": True})
        self.assertEqual(set_response.json(), {"success": True})
        self.assertEqual(balances.json()["balances"]["usd"], "12.50")
        self.assertEqual(balances.json()["balances"]["btc"], "0.25000000")
        self.assertEqual(balances.json()["balances"]["eur"], "0.00")
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(unknown_bank.status_code, 404)

    def test_operator_from_environment_token_is_audited(self) -> None:
        entries: List[AuditEntry] = []
        config = AdminConfig(registry=self.pool.registry, settings=AdminSettings())
        app = create_app(
            config=config,
            pool=self.pool,
            audit=AuditTrail(entries.append),
            environ={"BANKADMIN_API_TOKENS": "compliance:kyc-token"},
        )
        with TestClient(app) as client:
            rejected = client.patch(
                "/v1/users/cayman/cayman-0/kyc",
                headers={"Authorization": f"Bearer {TOKEN}"},
                json={"status": "approved"},
            )
            updated = client.patch(
                "/v1/users/cayman/cayman-0/kyc",
                headers={"Authorization": "Bearer kyc-token"},
                json={"status": "approved"},
            )
            attributed = client.patch(
                "/v1/users/cayman/cayman-1/kyc",
                headers={"Authorization": "Bearer kyc-token", "X-Actor-Id": "admin"},
                json={"status": "rejected"},
            )

        self.assertEqual(rejected.status_code, 403)
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(attributed.status_code, 200, attributed.text)
        self.assertEqual([entry.actor for entry in entries], ["compliance", "admin"])


class UnavailableShardServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.pool = build_pool(Path(self._tempdir.name), failing={"lithuanian": {"*"}})
        add_user(database_of(self.pool, "cayman"), "alice")
        config = AdminConfig(registry=self.pool.registry, settings=AdminSettings())
        self.app = create_app(config=config, pool=self.pool, require_auth=False)

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_listing_degrades_but_single_shard_reads_fail(self) -> None:
        with TestClient(self.app) as client:
            listing = client.get("/v1/users")
            balances = client.get("/v1/balances/lithuanian/alice")

        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["pagination"]["totalCount"], 1)
        self.assertNotIn("error", listing.json())
        self.assertEqual(balances.status_code, 503)
        self.assertIn("lithuanian", balances.json()["detail"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
