import asyncio
from datetime import datetime

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.endpoints import enqueue_latest
from core.config import Settings
from core.models import Outcome, ParticipationView


class TestHealthEndpoints:
    """Test health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_endpoint(self, async_client):
        """Test the health check endpoint."""
        response = await async_client.get("/healthcheck")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "Challenge Engagement API"
        assert "timestamp" in data
        assert "version" in data

    @pytest.mark.asyncio
    async def test_ping_endpoint(self, async_client):
        """Test the ping endpoint."""
        response = await async_client.get("/monitoring/ping")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["message"] == "pong"

    @pytest.mark.asyncio
    async def test_detailed_health(self, async_client, seeded, monkeypatch):
        """Test the detailed health check against the test database."""
        monkeypatch.setattr("core.database.async_session", seeded)

        response = await async_client.get("/monitoring/detailed")

        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["database"]["status"] == "healthy"
        assert "total_sessions" in data["components"]["realtime"]["stats"]

    @pytest.mark.asyncio
    async def test_correlation_and_timing_headers(self, async_client):
        response = await async_client.get(
            "/healthcheck", headers={"X-Correlation-ID": "corr-123"}
        )

        assert response.headers["X-Correlation-ID"] == "corr-123"
        assert "X-Process-Time" in response.headers


class TestAuthentication:
    """Test API key verification."""

    @pytest.mark.asyncio
    async def test_endpoint_without_api_key(self, async_client):
        """Test accessing protected endpoint without API key."""
        response = await async_client.get("/procedures")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"] == "API key required"

    @pytest.mark.asyncio
    async def test_endpoint_with_invalid_api_key(self, async_client):
        """Test accessing protected endpoint with invalid API key."""
        response = await async_client.get("/procedures", headers={"X-API-Key": "nope"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"] == "Invalid API key"

    @pytest.mark.asyncio
    async def test_development_key_format(self, async_client, monkeypatch):
        """Without API_KEY configured any pk_ key is accepted."""
        monkeypatch.setattr("core.config._settings", Settings())

        accepted = await async_client.get("/procedures", headers={"X-API-Key": "pk_dev"})
        rejected = await async_client.get("/procedures", headers={"X-API-Key": "dev"})

        assert accepted.status_code == status.HTTP_200_OK
        assert rejected.json()["detail"] == "Invalid API key format"


class TestProcedureEndpoint:
    """Test the RPC endpoint."""

    @pytest.mark.asyncio
    async def test_list_procedures(self, async_client, api_headers):
        response = await async_client.get("/procedures", headers=api_headers)

        procedures = {p["name"]: p for p in response.json()["procedures"]}
        assert len(procedures) == 26
        assert procedures["check_in_challenge"]["mutation"] is True
        assert procedures["get_global_leaderboard"]["requires_actor"] is False

    @pytest.mark.asyncio
    async def test_join_and_check_in(self, async_client, api_headers):
        """Join a challenge and check in through the RPC endpoint."""
        joined = await async_client.post(
            "/rpc/join_challenge", json={"challenge_id": "ch-10"}, headers=api_headers
        )
        checked_in = await async_client.post(
            "/rpc/check_in_challenge",
            json={"challenge_id": "ch-10", "note": "5k done"},
            headers=api_headers,
        )

        assert joined.status_code == status.HTTP_200_OK
        assert joined.json()["success"] is True
        data = checked_in.json()["data"]
        assert data["progress"] == 10
        assert data["check_in_streak"] == 1
        assert data["status"] == "active"

    @pytest.mark.asyncio
    async def test_rule_violation_returns_failed_outcome(self, async_client, api_headers):
        """Business-rule failures are outcomes, not HTTP errors."""
        await async_client.post(
            "/rpc/join_challenge", json={"challenge_id": "ch-10"}, headers=api_headers
        )
        await async_client.post(
            "/rpc/check_in_challenge", json={"challenge_id": "ch-10"}, headers=api_headers
        )

        response = await async_client.post(
            "/rpc/check_in_challenge", json={"challenge_id": "ch-10"}, headers=api_headers
        )

        assert response.status_code == status.HTTP_200_OK
        outcome = response.json()
        assert outcome["success"] is False
        assert outcome["error_code"] == "ALREADY_CHECKED_IN_TODAY"
        assert outcome["benign"] is True

    @pytest.mark.asyncio
    async def test_unknown_procedure(self, async_client, api_headers):
        response = await async_client.post("/rpc/launch_rockets", json={}, headers=api_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_missing_actor(self, async_client):
        response = await async_client.post(
            "/rpc/join_challenge",
            json={"challenge_id": "ch-10"},
            headers={"X-API-Key": "test_api_key"},
        )

        assert response.json()["error_code"] == "MISSING_ACTOR"

    @pytest.mark.asyncio
    async def test_friend_request_flow(self, async_client, api_headers):
        sent = await async_client.post(
            "/rpc/send_friend_request", json={"target_id": "u-bob"}, headers=api_headers
        )
        request_id = sent.json()["data"]["id"]

        bob = {**api_headers, "X-User-Id": "u-bob"}
        accepted = await async_client.post(
            "/rpc/accept_friend_request", json={"request_id": request_id}, headers=bob
        )
        friends = await async_client.get("/friends", headers=api_headers)

        assert accepted.json()["data"]["status"] == "accepted"
        assert [f["user_id"] for f in friends.json()["data"]] == ["u-bob"]


class TestReadEndpoints:
    """Test the convenience GET routes."""

    @pytest.mark.asyncio
    async def test_read_error_uses_http_status(self, async_client, api_headers):
        response = await async_client.get(
            "/challenges/ch-missing/comments", headers=api_headers
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_comments_thread(self, async_client, api_headers):
        posted = await async_client.post(
            "/rpc/add_comment",
            json={"challenge_id": "ch-10", "content": "Who is in?"},
            headers=api_headers,
        )
        comment_id = posted.json()["data"]["id"]
        await async_client.post(
            "/rpc/add_comment",
            json={"challenge_id": "ch-10", "content": "Me!", "parent_id": comment_id},
            headers={**api_headers, "X-User-Id": "u-bob"},
        )

        response = await async_client.get("/challenges/ch-10/comments", headers=api_headers)

        thread = response.json()["data"]
        assert len(thread) == 1
        assert thread[0]["replies"][0]["content"] == "Me!"
        assert thread[0]["replies"][0]["user"]["username"] == "bob"

    @pytest.mark.asyncio
    async def test_search_users(self, async_client, api_headers):
        response = await async_client.get(
            "/users/search", params={"q": "car"}, headers=api_headers
        )

        page = response.json()["data"]
        assert [u["user_id"] for u in page["users"]] == ["u-carol"]

    @pytest.mark.asyncio
    async def test_directory_lookups(self, async_client, api_headers):
        user = await async_client.get("/users/u-bob", headers=api_headers)
        challenge = await async_client.get("/challenges/ch-3", headers=api_headers)
        missing = await async_client.get("/users/u-nobody", headers=api_headers)

        assert user.json()["username"] == "bob"
        assert challenge.json()["duration_days"] == 3
        assert missing.status_code == status.HTTP_404_NOT_FOUND
        assert missing.json()["error"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_challenge_leaderboard_and_snapshot(self, async_client, api_headers):
        await async_client.post(
            "/rpc/join_challenge", json={"challenge_id": "ch-10"}, headers=api_headers
        )

        board = await async_client.get("/leaderboards/challenges/ch-10", headers=api_headers)
        snapshot = await async_client.post(
            "/leaderboards/challenge:ch-10/snapshot", headers=api_headers
        )

        data = board.json()["data"]
        assert data["entries"][0]["user_id"] == "u-alice"
        assert data["entries"][0]["badge"] == "gold"
        assert snapshot.json()["data"]["entries"] == 1

    @pytest.mark.asyncio
    async def test_invalid_timeframe(self, async_client, api_headers):
        response = await async_client.get(
            "/leaderboards/global", params={"timeframe": "yearly"}, headers=api_headers
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "VALIDATION_ERROR"


class TestWebSocketEndpoint:
    """Test the change notification WebSocket."""

    @pytest.fixture
    def ws_client(self, test_settings, monkeypatch):
        from main import app

        monkeypatch.setattr("core.config._settings", test_settings)
        return TestClient(app)

    def test_invalid_api_key_rejected(self, ws_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_client.websocket_connect("/ws/changes/s1?api_key=wrong"):
                pass
        assert exc_info.value.code == 4001

    def test_unknown_entity_type_rejected(self, ws_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_client.websocket_connect(
                "/ws/changes/s1?api_key=test_api_key&entity_types=avatars"
            ):
                pass
        assert exc_info.value.code == 4002

    def test_connect_and_ping(self, ws_client):
        url = "/ws/changes/s1?api_key=test_api_key&entity_types=comments&challenge_id=ch-10"
        with ws_client.websocket_connect(url) as websocket:
            connected = websocket.receive_json()
            assert connected["type"] == "connected"
            assert connected["entity_types"] == ["comments"]
            assert connected["filters"] == {"challenge_id": "ch-10"}

            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            websocket.send_json({"type": "status"})
            status_response = websocket.receive_json()
            assert status_response["session"]["filters"] == {"challenge_id": "ch-10"}

    def test_view_requires_challenge(self, ws_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_client.websocket_connect(
                "/ws/changes/s1?api_key=test_api_key&view=participants"
            ):
                pass
        assert exc_info.value.code == 4002


def participation_data(user_id, check_in_count, updated_at):
    return ParticipationView(
        id=f"p-{user_id}",
        challenge_id="ch-10",
        user_id=user_id,
        progress=check_in_count * 10.0,
        display_progress=check_in_count * 10,
        check_in_count=check_in_count,
        status="active",
        started_at=datetime(2024, 3, 1, 9, 0),
        check_in_streak=check_in_count,
        updated_at=updated_at,
    )


class InMemoryParticipation:
    def __init__(self, records):
        self.records = records

    async def list_participants(self, challenge_id):
        return [r for r in self.records if r.challenge_id == challenge_id]


class RecordingBus:
    """Command bus double that answers check-ins from memory"""

    def __init__(self, records):
        self.participation = InMemoryParticipation(records)
        self.comments = None
        self.calls = []

    async def call(self, name, params, actor_id):
        self.calls.append((name, params, actor_id))
        updated = participation_data(actor_id, 2, datetime(2024, 3, 2, 9, 0))
        return Outcome.ok(updated.model_dump(mode="json"))


class TestWebSocketViews:
    """Test view subscriptions on the change WebSocket."""

    @pytest.fixture
    def bus(self):
        return RecordingBus([participation_data("u-bob", 1, datetime(2024, 3, 1, 9, 0))])

    @pytest.fixture
    def ws_client(self, bus, test_settings, monkeypatch):
        from api.dependencies import get_command_bus
        from main import app

        monkeypatch.setattr("core.config._settings", test_settings)
        app.dependency_overrides[get_command_bus] = lambda: bus
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_participants_view_pushed_on_connect_and_after_call(self, ws_client, bus):
        url = (
            "/ws/changes/s1?api_key=test_api_key&entity_types=comments"
            "&challenge_id=ch-10&view=participants"
        )
        with ws_client.websocket_connect(url, headers={"X-User-Id": "u-bob"}) as websocket:
            connected = websocket.receive_json()
            assert connected["view"] == "participants"
            assert connected["entity_types"] == ["comments", "participation"]

            initial = websocket.receive_json()
            assert initial["type"] == "view"
            assert [(r["user_id"], r["check_in_count"]) for r in initial["records"]] == [
                ("u-bob", 1)
            ]

            websocket.send_json(
                {
                    "type": "call",
                    "procedure": "check_in_challenge",
                    "params": {"challenge_id": "ch-10"},
                }
            )
            result = websocket.receive_json()
            assert result["type"] == "result"
            assert result["outcome"]["success"] is True

            pushed = websocket.receive_json()
            assert pushed["type"] == "view"
            assert [r["check_in_count"] for r in pushed["records"]] == [2]

        assert bus.calls == [
            ("check_in_challenge", {"challenge_id": "ch-10"}, "u-bob")
        ]


class TestOutgoingQueue:
    def test_full_queue_drops_oldest_message(self):
        """A slow client loses the oldest pending message, never the newest"""
        queue = asyncio.Queue(maxsize=2)
        for n in range(3):
            enqueue_latest(queue, {"n": n}, "sess-slow")

        assert queue.qsize() == 2
        assert [queue.get_nowait()["n"] for _ in range(2)] == [1, 2]
