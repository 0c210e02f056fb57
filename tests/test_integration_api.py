"""Integration tests for the HTTP API.

Covers the auth flow and single-session rule, chat endpoints including the
fan-out failure path, posts, the social graph and the error envelope.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from devconnect import app as app_module
from devconnect.api.error_handling import register_exception_handlers
from devconnect.service.runtime import get_runtime
from devconnect.storage.errors import ConstraintViolation, DuplicateEntry, MissingReference

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def signup(client, username):
    response = client.post(
        "/auth/signup",
        json={
            "username": username,
            "email": f"{username}@example.com",
            "password": PASSWORD,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


class FailingBus:
    async def publish(self, channel, data):
        raise ConnectionError("bus unavailable")

    async def psubscribe(self, pattern):
        raise ConnectionError("bus unavailable")


class TestAuthFlow:
    def test_signup_returns_token_and_user(self, client):
        body = signup(client, "alice")

        assert body["message"] == "User registered successfully"
        assert body["token"]
        assert body["user"]["username"] == "alice"
        assert body["user"]["email"] == "alice@example.com"
        assert "password" not in body["user"]

    def test_signup_requires_all_fields(self, client):
        response = client.post("/auth/signup", json={"username": "alice"})

        assert response.status_code == 400
        assert response.json() == {
            "message": "All fields are required",
            "error": None,
            "code": "validation_error",
        }

    def test_signup_rejects_duplicate(self, client):
        signup(client, "alice")

        response = client.post(
            "/auth/signup",
            json={"username": "alice", "email": "other@example.com", "password": PASSWORD},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "User already exists"

    def test_signup_rejects_bad_email(self, client):
        response = client.post(
            "/auth/signup",
            json={"username": "alice", "email": "not-an-email", "password": PASSWORD},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request"

    def test_login_unknown_user_and_wrong_password(self, client):
        signup(client, "alice")

        missing = client.post(
            "/auth/login", json={"email": "nobody@example.com", "password": PASSWORD}
        )
        wrong = client.post(
            "/auth/login", json={"email": "alice@example.com", "password": "nope"}
        )

        assert missing.status_code == 404
        assert missing.json()["message"] == "User not found"
        assert wrong.status_code == 400
        assert wrong.json()["message"] == "Invalid credentials"

    def test_login_with_malformed_email_is_user_not_found(self, client):
        signup(client, "alice")

        response = client.post(
            "/auth/login", json={"email": "not-an-email", "password": PASSWORD}
        )

        assert response.status_code == 404
        assert response.json()["message"] == "User not found"

    def test_login_email_is_case_insensitive(self, client):
        signup(client, "alice")

        response = client.post(
            "/auth/login", json={"email": "  Alice@Example.COM ", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["user"]["username"] == "alice"

    def test_second_login_invalidates_first_token(self, client):
        signup(client, "alice")
        credentials = {"email": "alice@example.com", "password": PASSWORD}
        first = client.post("/auth/login", json=credentials).json()["token"]
        second = client.post("/auth/login", json=credentials).json()["token"]

        stale = client.get("/chat", headers=auth(first))
        current = client.get("/chat", headers=auth(second))

        assert stale.status_code == 401
        assert stale.json()["message"] == "Invalid or expired token"
        assert current.status_code == 200

    def test_logout_invalidates_token(self, client):
        token = signup(client, "alice")["token"]

        response = client.post("/auth/logout", headers=auth(token))
        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}

        after = client.get("/chat", headers=auth(token))
        assert after.status_code == 401
        assert after.json()["message"] == "Invalid or expired token"

    def test_missing_and_invalid_tokens(self, client):
        missing = client.get("/chat")
        invalid = client.get("/chat", headers=auth("garbage"))

        assert missing.status_code == 401
        assert missing.json()["message"] == "Access Denied. No token provided."
        assert invalid.status_code == 401
        assert invalid.json()["message"] == "Invalid token"
        assert invalid.json()["error"] == "jwt malformed"

    def test_non_ascii_signature_is_rejected_not_crashed(self, client):
        token = signup(client, "alice")["token"]
        header, payload, _sig = token.split(".")

        # raw bytes: the client refuses to encode non-ASCII header text itself
        response = client.get(
            "/chat",
            headers={"Authorization": f"Bearer {header}.{payload}.é".encode("utf-8")},
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"
        assert response.json()["error"] == "invalid signature"

    def test_auth_endpoints_rate_limited(self, client):
        get_runtime().settings.auth_rate_limit = 2

        for name in ("a1", "a2"):
            signup(client, name)
        response = client.post(
            "/auth/signup",
            json={"username": "a3", "email": "a3@example.com", "password": PASSWORD},
        )

        assert response.status_code == 429
        assert response.json()["code"] == "rate_limited"


class TestChatEndpoints:
    @pytest.fixture
    def pair(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        return alice, bob

    def _create_chat(self, client, alice, bob):
        response = client.post(
            "/chat",
            json={"participants": [bob["user"]["id"]]},
            headers=auth(alice["token"]),
        )
        assert response.status_code == 201, response.text
        return response.json()

    def test_create_and_list_chats(self, client, pair):
        alice, bob = pair
        chat = self._create_chat(client, alice, bob)

        assert chat["isGroup"] is False
        assert [p["username"] for p in chat["participants"]] == ["alice", "bob"]

        listed = client.get("/chat", headers=auth(bob["token"])).json()
        assert [c["id"] for c in listed] == [chat["id"]]
        assert listed[0]["lastMessage"] is None

    def test_send_list_and_read(self, client, pair):
        alice, bob = pair
        chat = self._create_chat(client, alice, bob)
        url = f"/chat/{chat['id']}/messages"

        sent = client.post(url, json={"text": "hi bob"}, headers=auth(alice["token"]))
        assert sent.status_code == 201
        message = sent.json()
        assert message["sender"] == alice["user"]["id"]
        assert message["readBy"] == [alice["user"]["id"]]

        history = client.get(url, headers=auth(bob["token"])).json()
        assert [m["text"] for m in history] == ["hi bob"]

        read = client.patch(f"{url}/{message['id']}/read", headers=auth(bob["token"]))
        assert read.status_code == 200
        assert read.json() == {"status": "read"}

        listed = client.get("/chat", headers=auth(alice["token"])).json()
        assert listed[0]["lastMessage"]["readBy"] == [
            alice["user"]["id"],
            bob["user"]["id"],
        ]

    def test_history_paging(self, client, pair):
        alice, bob = pair
        chat = self._create_chat(client, alice, bob)
        url = f"/chat/{chat['id']}/messages"
        for i in range(7):
            client.post(url, json={"text": f"m{i}"}, headers=auth(alice["token"]))

        page = client.get(f"{url}?page=2&limit=3", headers=auth(alice["token"])).json()

        assert [m["text"] for m in page] == ["m1", "m2", "m3"]

    def test_outsider_cannot_read_or_send(self, client, pair):
        alice, bob = pair
        carol = signup(client, "carol")
        chat = self._create_chat(client, alice, bob)
        url = f"/chat/{chat['id']}/messages"

        assert client.get(url, headers=auth(carol["token"])).status_code == 403
        send = client.post(url, json={"text": "hi"}, headers=auth(carol["token"]))
        assert send.status_code == 403

    def test_publish_failure_returns_500_but_message_persists(self, client, pair):
        alice, bob = pair
        chat = self._create_chat(client, alice, bob)
        get_runtime().fanout.bus = FailingBus()
        url = f"/chat/{chat['id']}/messages"

        response = client.post(url, json={"text": "lost"}, headers=auth(alice["token"]))

        assert response.status_code == 500
        assert response.json()["message"] == "Failed to send message"
        history = client.get(url, headers=auth(alice["token"])).json()
        assert [m["text"] for m in history] == ["lost"]


class TestPostEndpoints:
    def test_post_lifecycle(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")

        created = client.post(
            "/posts",
            json={
                "content": "hello world",
                "codeSnippet": {"code": "print('hi')", "language": "python"},
                "images": ["https://img.example.com/1.png"],
            },
            headers=auth(alice["token"]),
        )
        assert created.status_code == 201
        post = created.json()["post"]
        assert post["user"]["username"] == "alice"

        liked = client.post(f"/posts/{post['id']}/like", headers=auth(bob["token"])).json()
        assert liked["message"] == "Post liked"
        assert liked["likesCount"] == 1
        unliked = client.post(f"/posts/{post['id']}/like", headers=auth(bob["token"])).json()
        assert unliked["message"] == "Like removed"
        assert unliked["likesCount"] == 0

        commented = client.post(
            f"/posts/{post['id']}/comments",
            json={"content": "nice"},
            headers=auth(bob["token"]),
        )
        assert commented.status_code == 201
        comment_id = commented.json()["post"]["comments"][0]["id"]

        replied = client.post(
            f"/posts/{post['id']}/comments/{comment_id}/replies",
            json={"content": "thanks"},
            headers=auth(alice["token"]),
        )
        assert replied.json()["post"]["comments"][0]["replies"][0]["text"] == "thanks"

        feed = client.get("/posts").json()
        assert [p["id"] for p in feed] == [post["id"]]
        assert client.get("/posts/mine", headers=auth(bob["token"])).json() == []

        forbidden = client.delete(f"/posts/{post['id']}", headers=auth(bob["token"]))
        assert forbidden.status_code == 403
        deleted = client.delete(f"/posts/{post['id']}", headers=auth(alice["token"]))
        assert deleted.status_code == 200
        assert client.get(f"/posts/{post['id']}").status_code == 404

    def test_rejects_non_http_images(self, client):
        alice = signup(client, "alice")

        response = client.post(
            "/posts",
            json={"content": "x", "images": ["javascript:alert(1)"]},
            headers=auth(alice["token"]),
        )

        assert response.status_code == 400


class TestSocialEndpoints:
    def test_follow_flow(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        bob_id = bob["user"]["id"]

        followed = client.post(f"/social/follow/{bob_id}", headers=auth(alice["token"]))
        assert followed.status_code == 200
        again = client.post(f"/social/follow/{bob_id}", headers=auth(alice["token"]))
        assert again.status_code == 400

        following = client.get("/social/following", headers=auth(alice["token"])).json()
        assert following["count"] == 1
        assert following["following"][0]["id"] == bob_id
        followers = client.get("/social/followers", headers=auth(bob["token"])).json()
        assert followers["followers"][0]["username"] == "alice"

        profile = client.get(f"/users/{bob_id}/profile").json()
        assert profile["followers"] == [alice["user"]["id"]]

        unfollowed = client.post(f"/social/unfollow/{bob_id}", headers=auth(alice["token"]))
        assert unfollowed.status_code == 200
        suggestions = client.get("/social/suggestions", headers=auth(alice["token"])).json()
        assert [u["id"] for u in suggestions["suggestions"]] == [bob_id]

    def test_invalid_user_id(self, client):
        alice = signup(client, "alice")

        response = client.post("/social/follow/undefined", headers=auth(alice["token"]))

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid user ID"


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["redisEnabled"] is False
    assert response.headers["X-Request-ID"]


class TestStorageErrorMapping:
    @pytest.fixture
    def bare_client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/missing")
        async def missing():
            raise MissingReference("chat not found", {"chat_id": "c1"})

        @app.get("/duplicate")
        async def duplicate():
            raise DuplicateEntry("email already exists", {"field": "email"})

        @app.get("/violation")
        async def violation():
            raise ConstraintViolation("cannot follow self", {"user_id": "u1"})

        return TestClient(app)

    def test_missing_reference_is_404(self, bare_client):
        response = bare_client.get("/missing")

        assert response.status_code == 404
        assert response.json() == {
            "message": "chat not found",
            "error": {"chat_id": "c1"},
            "code": "not_found",
        }

    def test_duplicate_and_generic_violation_are_409(self, bare_client):
        duplicate = bare_client.get("/duplicate")
        violation = bare_client.get("/violation")

        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "conflict"
        assert violation.status_code == 409
        assert violation.json()["error"] == {"user_id": "u1"}
