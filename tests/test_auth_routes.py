"""
Tests for registration, login, token checks and user settings.
"""
import jwt
from werkzeug.security import generate_password_hash

from config import config
from conftest import make_user_row


class TestRegister:
    def test_missing_fields(self, client, db):
        resp = client.post("/api/auth/register", json={"email": "ada@example.com"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Email and password are required"

    def test_invalid_email(self, client, db):
        resp = client.post("/api/auth/register", json={"email": "not-an-email", "password": "secret1"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid email format"

    def test_short_password(self, client, db):
        resp = client.post("/api/auth/register", json={"email": "ada@example.com", "password": "12345"})
        assert resp.status_code == 400
        assert "at least 6" in resp.get_json()["error"]

    def test_duplicate_email(self, client, db):
        db.on("FROM users WHERE email = %s", [(1,)])
        resp = client.post("/api/auth/register", json={"email": "ada@example.com", "password": "secret1"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Email already registered"
        assert db.queries("INSERT INTO users") == []

    def test_success_hashes_password_and_defaults_name(self, client, db):
        db.on("INSERT INTO users", lambda p: [make_user_row(id=2, email=p[0], name=p[2])])
        resp = client.post("/api/auth/register", json={"email": "grace@example.com", "password": "secret1"})
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["user"]["name"] == "grace"
        assert "customApiKey" not in body["user"]
        payload = jwt.decode(body["token"], config.JWT_SECRET, algorithms=["HS256"])
        assert payload["user_id"] == 2

        _, params = db.queries("INSERT INTO users")[0]
        assert params[1] != "secret1"
        assert params[1].startswith(("pbkdf2:", "scrypt:"))
        assert db.commits == 1


class TestLogin:
    def test_wrong_password(self, client, db):
        db.on("FROM users WHERE email = %s", [make_user_row() + (generate_password_hash("secret1"),)])
        resp = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "wrong-pass"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid email or password"

    def test_unknown_email(self, client, db):
        resp = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "secret1"})
        assert resp.status_code == 401

    def test_success(self, client, db):
        db.on("FROM users WHERE email = %s", [make_user_row() + (generate_password_hash("secret1"),)])
        resp = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "secret1"})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["user"]["email"] == "ada@example.com"
        assert body["token"]


class TestTokenRequired:
    def test_missing_token(self, client, db):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Unauthorized - No token provided"

    def test_garbage_token(self, client, db):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Unauthorized - Invalid token"

    def test_token_signed_with_other_secret(self, client, db):
        token = jwt.encode({"user_id": 1}, "another-secret", algorithm="HS256")
        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_deleted_user(self, client, db, auth_headers):
        db.on("FROM users WHERE id = %s", [])
        resp = client.get("/api/auth/me", headers=auth_headers())
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Unauthorized - User not found"

    def test_me_hides_custom_key(self, client, db, auth_headers):
        db.on("FROM users WHERE id = %s", [make_user_row(custom_api_key="sk-secret")])
        resp = client.get("/api/auth/me", headers=auth_headers())
        user = resp.get_json()["user"]
        assert "customApiKey" not in user
        assert user["hasCustomApiKey"] is True
        assert "sk-secret" not in resp.get_data(as_text=True)


class TestSettings:
    def test_invalid_model(self, client, db, auth_headers):
        resp = client.put("/api/auth/settings", json={"preferredModel": "gpt-99"}, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid model selected"

    def test_non_positive_tokens(self, client, db, auth_headers):
        resp = client.put("/api/auth/settings", json={"maxTokens": 0}, headers=auth_headers())
        assert resp.status_code == 400

    def test_update_and_clear_custom_fields(self, client, db, auth_headers):
        db.on("UPDATE users SET", [make_user_row(max_tokens=2000)])
        resp = client.put(
            "/api/auth/settings",
            json={"maxTokens": "2000", "customApiUrl": "", "name": "  "},
            headers=auth_headers(),
        )
        assert resp.status_code == 200
        assert resp.get_json()["user"]["maxTokens"] == 2000
        sql, params = db.queries("UPDATE users SET")[0]
        assert "max_tokens = %s" in sql
        assert "custom_api_url = NULL" in sql
        assert "name =" not in sql
        assert params == (2000, 1)

    def test_nothing_to_update(self, client, db, auth_headers):
        resp = client.put("/api/auth/settings", json={}, headers=auth_headers())
        assert resp.status_code == 200
        assert db.queries("UPDATE users") == []


def test_models_are_public(client):
    resp = client.get("/api/auth/models")
    assert resp.status_code == 200
    models = resp.get_json()["models"]
    assert any(m["id"] == config.AI_MODEL for m in models)


def test_health(client):
    assert client.get("/health").get_json()["status"] == "ok"
