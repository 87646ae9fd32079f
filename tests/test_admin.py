"""
Admin surface: dashboard counts, the verification queue, user roles and the
health check.
"""
from bson import ObjectId

from database import USERS, get_db
from main import app


class TestDashboard:

    async def test_stats_counts_and_breakdowns(self, client, api, admin, shop, customer):
        resp = await client.get("/admin/stats", headers=admin["headers"])
        assert resp.status_code == 200
        data = resp.json()["data"]

        assert data["counts"] == {"users": 3, "outlets": 1, "products": 1, "pendingOutlets": 1}
        by_role = {row["role"]: row["count"] for row in data["usersByRole"]}
        assert by_role == {"admin": 1, "outlet": 1, "customer": 1}
        assert data["productsByCategory"] == [{"category": shop["product"]["category"], "count": 1}]
        assert len(data["recentUsers"]) == 3
        assert "passwordHash" not in data["recentUsers"][0]
        assert data["recentOutlets"][0]["name"] == "Corner Shop"

    async def test_stats_are_admin_only(self, client, customer):
        resp = await client.get("/admin/stats", headers=customer["headers"])
        assert resp.status_code == 403


class TestPendingOutlets:

    async def test_lists_unverified_with_owner(self, client, admin, shop):
        resp = await client.get("/admin/outlets/pending", headers=admin["headers"])
        body = resp.json()
        assert body["count"] == 1
        owner = body["data"][0]["owner"]
        assert owner["email"] == shop["owner"]["user"]["email"]
        assert "passwordHash" not in owner

    async def test_verified_outlets_leave_the_queue(self, client, admin, shop):
        await client.put(f"/admin/outlets/{shop['outlet']['id']}/verify", headers=admin["headers"])
        resp = await client.get("/admin/outlets/pending", headers=admin["headers"])
        assert resp.json()["count"] == 0


class TestUserRoles:

    async def test_change_role_applies_to_next_request(self, client, admin, customer):
        resp = await client.put(
            f"/admin/users/{customer['user']['id']}/role", headers=admin["headers"], json={"role": "outlet"}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["role"] == "outlet"

        me = await client.get("/auth/me", headers=customer["headers"])
        assert me.json()["user"]["role"] == "outlet"

    async def test_admin_cannot_change_own_role(self, client, db, admin):
        resp = await client.put(
            f"/admin/users/{admin['user']['id']}/role", headers=admin["headers"], json={"role": "customer"}
        )
        assert resp.status_code == 400
        stored = await db[USERS].find_one({"_id": ObjectId(admin["user"]["id"])})
        assert stored["role"] == "admin"

    async def test_customer_cannot_change_roles(self, client, customer):
        resp = await client.put(
            f"/admin/users/{customer['user']['id']}/role", headers=customer["headers"], json={"role": "admin"}
        )
        assert resp.status_code == 403

    async def test_unknown_user(self, client, admin):
        resp = await client.put(f"/admin/users/{ObjectId()}/role", headers=admin["headers"], json={"role": "outlet"})
        assert resp.status_code == 404

    async def test_invalid_role(self, client, admin, customer):
        resp = await client.put(
            f"/admin/users/{customer['user']['id']}/role", headers=admin["headers"], json={"role": "owner"}
        )
        assert resp.status_code == 400

    async def test_list_users_by_role(self, client, api, admin, customer):
        await api.register("customer")
        resp = await client.get("/admin/users", params={"role": "customer"}, headers=admin["headers"])
        body = resp.json()
        assert body["total"] == 2
        assert {u["role"] for u in body["users"]} == {"customer"}
        assert all("passwordHash" not in u for u in body["users"])


class _UnreachableDatabase:
    async def list_collection_names(self):
        raise RuntimeError("connection refused by mongo-internal.local:27017")


class TestHealthCheck:

    async def test_reports_collections(self, client):
        resp = await client.get("/test")
        assert resp.json()["db"] == "ok"

    async def test_hides_connection_errors(self, client):
        app.dependency_overrides[get_db] = lambda: _UnreachableDatabase()
        resp = await client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"backend": "ok", "db": "unavailable"}
        assert "mongo-internal" not in resp.text
