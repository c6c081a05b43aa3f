"""End-to-end tests for the authenticated task API."""

from __future__ import annotations

import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from taskmanager.api import create_app
from taskmanager.config import Settings
from taskmanager.security import TokenService

SECRET = "service-tests-secret-0123456789abcdef"


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TaskServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        settings = Settings(
            database_path=Path(self._tempdir.name) / "tasks.sqlite3",
            jwt_secret=SECRET,
            pool_size=2,
        )
        self.app = create_app(settings=settings)
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self._tempdir.cleanup()

    def _register(self, name: str = "Alice", email: str = "alice@example.com", password: str = "SuperSecret123!"):
        response = self.client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": password},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def test_health(self) -> None:
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})

    def test_register_returns_user_and_token(self) -> None:
        payload = self._register(name="  Alice ", email="  Alice@Example.COM ")

        self.assertEqual(payload["user"]["name"], "Alice")
        self.assertEqual(payload["user"]["email"], "alice@example.com")
        self.assertIn("id", payload["user"])
        self.assertNotIn("password", payload["user"])
        self.assertNotIn("password_hash", payload["user"])

        me = self.client.get("/api/auth/me", headers=self._headers(payload["token"]))
        self.assertEqual(me.status_code, 200, me.text)
        self.assertEqual(me.json(), {"user": payload["user"]})

    def test_register_requires_all_fields(self) -> None:
        for body in (
            {"email": "a@example.com", "password": "pw"},
            {"name": "A", "password": "pw"},
            {"name": "A", "email": "a@example.com"},
            {"name": "   ", "email": "a@example.com", "password": "pw"},
            {"name": "A", "email": "a@example.com", "password": ""},
        ):
            response = self.client.post("/api/auth/register", json=body)
            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.json(), {"message": "Name, email, and password are required"})

    def test_duplicate_registration_conflicts(self) -> None:
        self._register(email="dup@example.com")

        response = self.client.post(
            "/api/auth/register",
            json={"name": "Other", "email": "  DUP@example.com", "password": "another-password"},
        )
        self.assertEqual(response.status_code, 409, response.text)
        self.assertEqual(response.json(), {"message": "Email already registered"})

        self.assertEqual(len(self.app.state.database.list_users()), 1)

    def test_login_success_and_failure_messages(self) -> None:
        registered = self._register(email="bob@example.com", password="correct-horse")

        ok = self.client.post(
            "/api/auth/login",
            json={"email": " BOB@example.com ", "password": "correct-horse"},
        )
        self.assertEqual(ok.status_code, 200, ok.text)
        self.assertEqual(ok.json()["user"], registered["user"])

        wrong_password = self.client.post(
            "/api/auth/login",
            json={"email": "bob@example.com", "password": "battery-staple"},
        )
        unknown_user = self.client.post(
            "/api/auth/login",
            json={"email": "nobody@example.com", "password": "correct-horse"},
        )
        self.assertEqual(wrong_password.status_code, 401)
        self.assertEqual(unknown_user.status_code, 401)
        self.assertEqual(wrong_password.json(), unknown_user.json())
        self.assertEqual(wrong_password.json(), {"message": "Invalid credentials"})

    def test_login_requires_email_and_password(self) -> None:
        response = self.client.post("/api/auth/login", json={"email": "bob@example.com"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"message": "Email and password are required"})

    def test_protected_routes_require_token(self) -> None:
        missing = self.client.get("/api/tasks")
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.json(), {"message": "Missing auth token"})

        invalid = self.client.get("/api/auth/me", headers=self._headers("not-a-token"))
        self.assertEqual(invalid.status_code, 401)
        self.assertEqual(invalid.json(), {"message": "Invalid auth token"})

        basic = self.client.get("/api/tasks", headers={"Authorization": "Basic abc"})
        self.assertEqual(basic.status_code, 401)
        self.assertEqual(basic.json(), {"message": "Missing auth token"})

    def test_expired_token_is_rejected(self) -> None:
        payload = self._register()
        expired = TokenService(SECRET, ttl=-TokenService(SECRET).ttl)
        token = expired.issue(self.app.state.database.get_user(payload["user"]["id"]))

        response = self.client.get("/api/tasks", headers=self._headers(token))
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"message": "Invalid auth token"})

    def test_task_lifecycle(self) -> None:
        token = self._register()["token"]
        headers = self._headers(token)

        created = self.client.post("/api/tasks", json={"title": "  Buy milk "}, headers=headers)
        self.assertEqual(created.status_code, 201, created.text)
        task = created.json()["task"]
        self.assertEqual(task["title"], "Buy milk")
        self.assertEqual(task["description"], "")
        self.assertEqual(task["status"], "open")
        for key in ("id", "created_at", "updated_at"):
            self.assertIn(key, task)

        newer = self.client.post("/api/tasks", json={"title": "Walk dog"}, headers=headers).json()["task"]

        listing = self.client.get("/api/tasks", headers=headers)
        self.assertEqual(listing.status_code, 200)
        self.assertEqual([item["id"] for item in listing.json()["tasks"]], [newer["id"], task["id"]])

        updated = self.client.put(
            f"/api/tasks/{task['id']}",
            json={"title": "Buy oat milk", "status": "done"},
            headers=headers,
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        body = updated.json()["task"]
        self.assertEqual(body["title"], "Buy oat milk")
        self.assertEqual(body["status"], "done")
        self.assertEqual(body["created_at"], task["created_at"])
        self.assertGreaterEqual(_parse_timestamp(body["updated_at"]), _parse_timestamp(task["updated_at"]))

        first_delete = self.client.delete(f"/api/tasks/{task['id']}", headers=headers)
        self.assertEqual(first_delete.status_code, 204)
        self.assertEqual(first_delete.content, b"")

        second_delete = self.client.delete(f"/api/tasks/{task['id']}", headers=headers)
        self.assertEqual(second_delete.status_code, 404)
        self.assertEqual(second_delete.json(), {"message": "Task not found"})

    def test_update_is_full_replace(self) -> None:
        headers = self._headers(self._register()["token"])
        task = self.client.post(
            "/api/tasks",
            json={"title": "Plan", "description": "  outline  ", "status": "in-progress"},
            headers=headers,
        ).json()["task"]
        self.assertEqual(task["description"], "outline")
        self.assertEqual(task["status"], "in-progress")

        updated = self.client.put(f"/api/tasks/{task['id']}", json={"title": "Plan v2"}, headers=headers)
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["task"]["description"], "")
        self.assertEqual(updated.json()["task"]["status"], "open")

    def test_title_validation(self) -> None:
        headers = self._headers(self._register()["token"])
        task = self.client.post("/api/tasks", json={"title": "valid"}, headers=headers).json()["task"]

        for body in ({}, {"title": ""}, {"title": "   "}, {"title": 12}, {"description": "no title"}):
            created = self.client.post("/api/tasks", json=body, headers=headers)
            self.assertEqual(created.status_code, 400, body)
            self.assertEqual(created.json(), {"message": "Title is required"})

            updated = self.client.put(f"/api/tasks/{task['id']}", json=body, headers=headers)
            self.assertEqual(updated.status_code, 400, body)

        unchanged = self.client.get("/api/tasks", headers=headers).json()["tasks"]
        self.assertEqual(unchanged[0]["title"], "valid")

    def test_update_missing_task_returns_not_found(self) -> None:
        headers = self._headers(self._register()["token"])
        for task_id in ("9999", "not-a-number", "-1"):
            response = self.client.put(f"/api/tasks/{task_id}", json={"title": "x"}, headers=headers)
            self.assertEqual(response.status_code, 404, task_id)
            self.assertEqual(response.json(), {"message": "Task not found"})

    def test_noncanonical_task_ids_return_not_found(self) -> None:
        headers = self._headers(self._register()["token"])
        task = self.client.post("/api/tasks", json={"title": "keep"}, headers=headers).json()["task"]
        self.assertEqual(task["id"], 1)

        for task_id in ("+1", "1_0", "%201", "01a", "１"):
            updated = self.client.put(f"/api/tasks/{task_id}", json={"title": "x"}, headers=headers)
            self.assertEqual(updated.status_code, 404, task_id)
            deleted = self.client.delete(f"/api/tasks/{task_id}", headers=headers)
            self.assertEqual(deleted.status_code, 404, task_id)
            self.assertEqual(deleted.json(), {"message": "Task not found"})

        remaining = self.client.get("/api/tasks", headers=headers).json()["tasks"]
        self.assertEqual([(item["id"], item["title"]) for item in remaining], [(1, "keep")])

    def test_trailing_slash_is_not_redirected(self) -> None:
        headers = self._headers(self._register()["token"])
        for method, path in (("POST", "/api/tasks/"), ("GET", "/api/tasks/"), ("GET", "/api/health/")):
            response = self.client.request(method, path, json={"title": "x"}, headers=headers, follow_redirects=False)
            self.assertEqual(response.status_code, 404, (method, path))
            self.assertEqual(response.json(), {"message": "Not found"})
        self.assertEqual(self.client.get("/api/tasks", headers=headers).json(), {"tasks": []})

    def test_password_with_nul_character(self) -> None:
        rejected = self.client.post(
            "/api/auth/register",
            json={"name": "Nul", "email": "nul@example.com", "password": "ab\u0000c"},
        )
        self.assertEqual(rejected.status_code, 400, rejected.text)
        self.assertEqual(rejected.json(), {"message": "Password must not contain NUL characters"})
        self.assertEqual(self.app.state.database.list_users(), [])

        self._register(email="nul@example.com", password="abc")
        login = self.client.post("/api/auth/login", json={"email": "nul@example.com", "password": "ab\u0000c"})
        self.assertEqual(login.status_code, 401, login.text)
        self.assertEqual(login.json(), {"message": "Invalid credentials"})

    def test_auth_storage_failures_are_masked(self) -> None:
        database = self.app.state.context.database

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        with mock.patch.object(database, "create_user", broken):
            register = self.client.post(
                "/api/auth/register",
                json={"name": "A", "email": "a@example.com", "password": "pw"},
            )
        with mock.patch.object(database, "authenticate_user", broken):
            login = self.client.post("/api/auth/login", json={"email": "a@example.com", "password": "pw"})

        self.assertEqual(register.status_code, 500)
        self.assertEqual(register.json(), {"message": "Failed to register"})
        self.assertEqual(login.status_code, 500)
        self.assertEqual(login.json(), {"message": "Failed to login"})
        for response in (register, login):
            self.assertNotIn("locked", response.text)

    def test_token_signing_failure_is_masked(self) -> None:
        tokens = self.app.state.context.tokens
        self._register(email="signed@example.com", password="pw")

        with mock.patch.object(tokens, "issue", side_effect=RuntimeError("signing key unavailable")):
            register = self.client.post(
                "/api/auth/register",
                json={"name": "B", "email": "b@example.com", "password": "pw"},
            )
            login = self.client.post("/api/auth/login", json={"email": "signed@example.com", "password": "pw"})

        self.assertEqual(register.status_code, 500)
        self.assertEqual(register.json(), {"message": "Failed to register"})
        self.assertEqual(login.status_code, 500)
        self.assertEqual(login.json(), {"message": "Failed to login"})
        for response in (register, login):
            self.assertNotIn("signing key", response.text)

    def test_chunked_bodies_are_measured(self) -> None:
        headers = self._headers(self._register()["token"])
        headers["Content-Type"] = "application/json"

        small = self.client.post("/api/tasks", content=iter([b'{"title": ', b'"chunked"}']), headers=headers)
        self.assertEqual(small.status_code, 201, small.text)
        self.assertEqual(small.json()["task"]["title"], "chunked")

        padding = b"x" * (512 * 1024)
        large = self.client.post(
            "/api/tasks",
            content=iter([b'{"title": "big", "description": "', padding, padding, b'"}']),
            headers=headers,
        )
        self.assertEqual(large.status_code, 413)
        self.assertEqual(large.json(), {"message": "Request body too large"})

        titles = [item["title"] for item in self.client.get("/api/tasks", headers=headers).json()["tasks"]]
        self.assertEqual(titles, ["chunked"])

    def test_oversized_delete_body_is_rejected(self) -> None:
        headers = self._headers(self._register()["token"])
        task = self.client.post("/api/tasks", json={"title": "survivor"}, headers=headers).json()["task"]

        response = self.client.request(
            "DELETE",
            f"/api/tasks/{task['id']}",
            content=b"x" * (2 * 1024 * 1024),
            headers=headers,
        )
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.json(), {"message": "Request body too large"})

        remaining = self.client.get("/api/tasks", headers=headers).json()["tasks"]
        self.assertEqual([item["id"] for item in remaining], [task["id"]])

    def test_tasks_are_isolated_between_users(self) -> None:
        alice = self._headers(self._register("Alice", "alice@example.com")["token"])
        bob = self._headers(self._register("Bob", "bob@example.com")["token"])

        task = self.client.post("/api/tasks", json={"title": "Alice only"}, headers=alice).json()["task"]

        self.assertEqual(self.client.get("/api/tasks", headers=bob).json(), {"tasks": []})

        update = self.client.put(f"/api/tasks/{task['id']}", json={"title": "Bob was here"}, headers=bob)
        self.assertEqual(update.status_code, 404)
        delete = self.client.delete(f"/api/tasks/{task['id']}", headers=bob)
        self.assertEqual(delete.status_code, 404)

        still_there = self.client.get("/api/tasks", headers=alice).json()["tasks"]
        self.assertEqual([item["title"] for item in still_there], ["Alice only"])

    def test_unknown_routes_return_uniform_not_found(self) -> None:
        for method, path in (("GET", "/api/unknown"), ("GET", "/"), ("PATCH", "/api/tasks/1")):
            response = self.client.request(method, path)
            self.assertEqual(response.status_code, 404, (method, path))
            self.assertEqual(response.json(), {"message": "Not found"})

    def test_oversized_body_is_rejected(self) -> None:
        headers = self._headers(self._register()["token"])
        response = self.client.post(
            "/api/tasks",
            json={"title": "big", "description": "x" * (1024 * 1024 + 1)},
            headers=headers,
        )
        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.json(), {"message": "Request body too large"})
        self.assertEqual(self.client.get("/api/tasks", headers=headers).json(), {"tasks": []})

    def test_invalid_json_is_a_validation_error(self) -> None:
        headers = self._headers(self._register()["token"])
        headers["Content-Type"] = "application/json"
        response = self.client.post("/api/tasks", content=b"{not json", headers=headers)
        self.assertEqual(response.status_code, 400)
        self.assertIn("message", response.json())

    def test_cors_headers_are_applied(self) -> None:
        response = self.client.get("/api/health", headers={"Origin": "https://app.example.com"})
        self.assertEqual(response.headers.get("access-control-allow-origin"), "*")

        preflight = self.client.options(
            "/api/tasks",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        self.assertEqual(preflight.status_code, 200)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
