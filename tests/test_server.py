"""
Unit tests for the mcpchat server module.

Tests server configuration, database, and API endpoints.
"""

import json
import os
import threading
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from mcpchat.auth.flow import AuthorizationOutcome
from mcpchat.auth.provider import encode_state
from mcpchat.exceptions import NotFoundError, ServerError
from mcpchat.models import AuthResult, TokenSet, now_ms
from mcpchat.provider import OpenAIResponsesProvider
from mcpchat.server.app import create_app
from mcpchat.server.config import ServerConfig
from mcpchat.server.database import Database, DatabaseKeyValueStore

API_KEY = "test-key"
HEADERS = {"X-API-Key": API_KEY}
AUTHORIZE_URL = "https://auth.example.com/authorize?client_id=c"


class FakeAuthClient:
    """Authorization client that answers every request with a fixed outcome."""

    def __init__(self, outcome=AuthResult.REDIRECT, tokens=None, error=None):
        self.outcome = outcome
        self.tokens = tokens
        self.error = error
        self.codes = []

    async def authorize(self, provider, server_url, metadata=None, authorization_code=None, scope=None):
        self.codes.append(authorization_code)
        if self.error is not None:
            raise self.error
        if authorization_code is not None:
            return AuthorizationOutcome(AuthResult.AUTHORIZED, TokenSet(access_token="from-code"))
        if self.outcome == AuthResult.REDIRECT:
            await provider.redirect_to_authorization(AUTHORIZE_URL)
            return AuthorizationOutcome(AuthResult.REDIRECT)
        return AuthorizationOutcome(AuthResult.AUTHORIZED, self.tokens)


class FakeSession:
    supports_resources = True

    def __init__(self, fail=False):
        self.fail = fail

    async def list_tools(self):
        if self.fail:
            raise RuntimeError("stream closed")
        return [{"name": "list_tickets", "description": "", "inputSchema": {}}]

    async def list_resources(self):
        return [{"uri": "file:///a", "name": "a"}]

    async def read_resource(self, uri):
        return {"contents": [{"uri": uri, "text": "body"}]}

    async def close(self):
        pass


class FakeOpenAI:
    def __init__(self):
        self.requests = []
        self.responses = self

    async def create(self, **kwargs):
        self.requests.append(kwargs)

        async def stream():
            yield {"type": "response.created", "response": {"id": "r1"}}
            yield {"type": "response.output_item.added", "item": {"type": "message", "id": "m1"}}
            yield {"type": "response.output_text.delta", "item_id": "m1", "delta": "Hi"}
            yield {"type": "response.completed", "response": {"id": "r1", "output": []}}

        return stream()


# ==================== Config ====================


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = ServerConfig()
        assert config.host == "0.0.0.0"
        assert config.port == 8000
        assert config.database_url == "sqlite:///./mcpchat.db"
        assert config.api_keys == {"dev-user-key"}
        assert config.model == "gpt-5-mini"
        assert config.max_function_turns == 5
        assert config.redirect_url == "http://localhost:5173/oauth/callback"

    def test_app_url_trailing_slash(self):
        config = ServerConfig(app_url="https://chat.example.com/", database_url="sqlite://")
        assert config.redirect_url == "https://chat.example.com/oauth/callback"

    def test_from_env(self):
        with patch.dict(
            os.environ,
            {
                "MCPCHAT_PORT": "9999",
                "MCPCHAT_DEBUG": "true",
                "MCPCHAT_API_KEYS": "a, b",
                "MCPCHAT_MODEL": "gpt-test",
                "MCPCHAT_MAX_FUNCTION_TURNS": "2",
                "DATABASE_URL": "postgresql://localhost/chat",
            },
        ):
            config = ServerConfig.from_env()
        assert config.port == 9999
        assert config.debug is True
        assert config.api_keys == {"a", "b"}
        assert config.model == "gpt-test"
        assert config.max_function_turns == 2
        assert config.database_url == "postgresql://localhost/chat"


# ==================== Database ====================


class TestDatabase:
    """Tests for Database operations."""

    @pytest.fixture
    def db(self, tmp_path):
        db = Database(f"sqlite:///{tmp_path / 'mcpchat.db'}")
        db.create_tables()
        return db

    def test_create_and_get_server(self, db):
        server = db.upsert_server({"name": "Tickets", "url": "https://t.example.com/mcp"})
        assert server.id
        assert server.auth_type == "oauth"
        assert server.transport_type == "streamable-http"
        assert server.is_connected is False
        assert db.get_server(server.id).name == "Tickets"

    def test_update_keeps_unlisted_fields(self, db):
        server = db.upsert_server(
            {"id": "srv-1", "name": "Tickets", "url": "https://t", "allowed_tools": ["a"]}
        )
        updated = db.upsert_server({"id": server.id, "name": "Renamed"})
        assert updated.name == "Renamed"
        assert updated.url == "https://t"
        assert updated.allowed_tools == ["a"]

    def test_list_and_delete(self, db):
        db.upsert_server({"id": "a", "name": "A", "url": "https://a"})
        db.upsert_server({"id": "b", "name": "B", "url": "https://b"})
        assert {s.id for s in db.list_servers()} == {"a", "b"}
        assert db.delete_server("a") is True
        assert db.delete_server("a") is False
        assert [s.id for s in db.list_servers()] == ["b"]

    def test_get_missing_server(self, db):
        with pytest.raises(NotFoundError):
            db.get_server("nope")

    def test_connection_flag_and_client_info(self, db):
        db.upsert_server({"id": "a", "name": "A", "url": "https://a"})
        db.set_is_connected("a", True)
        db.save_client_info("a", {"client_id": "c1"})
        server = db.get_server("a")
        assert server.is_connected is True
        assert server.oauth_client_info == {"client_id": "c1"}
        db.save_client_info("a", None)
        assert db.get_server("a").oauth_client_info is None

    def test_key_value(self, db):
        db.kv_put("k", "v1")
        db.kv_put("k", "v2")
        assert db.kv_get("k") == "v2"
        db.kv_delete("k")
        assert db.kv_get("k") is None

    def test_key_value_expiry(self, db):
        with patch("mcpchat.server.database.time.time", return_value=1000.0):
            db.kv_put("k", "v", ttl_seconds=300)
        with patch("mcpchat.server.database.time.time", return_value=1299.0):
            assert db.kv_get("k") == "v"
        with patch("mcpchat.server.database.time.time", return_value=1300.0):
            assert db.kv_get("k") is None

    @pytest.mark.asyncio
    async def test_store_adapter(self, db):
        store = DatabaseKeyValueStore(db)
        await store.put("srv-1", '{"access_token": "at"}')
        assert await store.get("srv-1") == '{"access_token": "at"}'
        await store.delete("srv-1")
        assert await store.get("srv-1") is None

    @pytest.mark.asyncio
    async def test_store_adapter_queries_off_the_event_loop(self, db):
        threads = []
        kv_get = db.kv_get

        def recording_get(key):
            threads.append(threading.get_ident())
            return kv_get(key)

        store = DatabaseKeyValueStore(db)
        with patch.object(db, "kv_get", side_effect=recording_get):
            assert await store.get("missing") is None

        assert threads and threads[0] != threading.get_ident()


# ==================== API ====================


@pytest.fixture
def config(tmp_path):
    return ServerConfig(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        api_keys={API_KEY},
        app_url="https://chat.example.com",
    )


@pytest.fixture
def openai_client():
    return FakeOpenAI()


def make_client(config, openai_client, auth_client=None, session=None):
    async def opener(metadata, headers):
        opener.headers.append(headers)
        return session or FakeSession()

    opener.headers = []
    app = create_app(
        config,
        provider=OpenAIResponsesProvider(client=openai_client),
        auth_client=auth_client or FakeAuthClient(),
        session_opener=opener,
    )
    return TestClient(app), opener


def add_server(client, **fields):
    body = {"name": "Tickets", "url": "https://tickets.example.com/mcp", **fields}
    response = client.post("/api/mcp/add", json=body, headers=HEADERS)
    assert response.status_code == 200
    return response.json()


def ndjson(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


class TestServersAPI:
    def test_requires_api_key(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            assert client.get("/api/mcp/list").status_code == 401
            assert client.get("/api/mcp/list", headers={"X-API-Key": "wrong"}).status_code == 401

    def test_add_list_delete(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            server = add_server(client, allowedTools=["list_tickets"], transportType="sse")
            assert server["allowedTools"] == ["list_tickets"]
            assert server["transportType"] == "sse"
            assert server["isConnected"] is False

            listed = client.get("/api/mcp/list", headers=HEADERS).json()
            assert [s["id"] for s in listed] == [server["id"]]

            assert client.delete(f"/api/mcp/{server['id']}", headers=HEADERS).json() == {
                "success": True
            }
            response = client.delete(f"/api/mcp/{server['id']}", headers=HEADERS)
            assert response.status_code == 404
            assert response.json()["error"] == "Not Found"

    def test_connect_redirects(self, config, openai_client):
        client, opener = make_client(config, openai_client)
        with client:
            server = add_server(client)
            response = client.post(f"/api/mcp/{server['id']}/connect", headers=HEADERS)
            assert response.json() == {"redirectUrl": AUTHORIZE_URL}
            assert opener.headers == []

    def test_connect_with_tokens(self, config, openai_client):
        auth = FakeAuthClient(AuthResult.AUTHORIZED, TokenSet(access_token="at-1"))
        client, opener = make_client(config, openai_client, auth_client=auth)
        with client:
            server = add_server(client)
            response = client.post(f"/api/mcp/{server['id']}/connect", headers=HEADERS)
            assert response.json() == {"success": True}
            assert opener.headers == [{"Authorization": "Bearer at-1"}]
            listed = client.get("/api/mcp/list", headers=HEADERS).json()
            assert listed[0]["isConnected"] is True

            client.post(f"/api/mcp/{server['id']}/disconnect", headers=HEADERS)
            listed = client.get("/api/mcp/list", headers=HEADERS).json()
            assert listed[0]["isConnected"] is False

    def test_connect_failure_maps_to_403(self, config, openai_client):
        auth = FakeAuthClient(error=ServerError("authorization server down"))
        client, _ = make_client(config, openai_client, auth_client=auth)
        with client:
            server = add_server(client)
            response = client.post(f"/api/mcp/{server['id']}/connect", headers=HEADERS)
            assert response.status_code == 403
            body = response.json()
            assert body["code"] == "MCP_CONNECTION_ERROR"
            assert "authorization server down" in body["message"]

    def test_malformed_authorization_response_maps_to_403(self, config, openai_client):
        auth = FakeAuthClient(error=KeyError("token_endpoint"))
        client, _ = make_client(config, openai_client, auth_client=auth)
        with client:
            server = add_server(client)
            response = client.post(f"/api/mcp/{server['id']}/connect", headers=HEADERS)
            assert response.status_code == 403
            assert response.json()["code"] == "MCP_CONNECTION_ERROR"
            listed = client.get("/api/mcp/list", headers=HEADERS).json()
            assert listed[0]["isConnected"] is False

    def test_connect_unknown_server(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            response = client.post("/api/mcp/missing/connect", headers=HEADERS)
            assert response.status_code == 404

    def test_oauth_callback(self, config, openai_client):
        auth = FakeAuthClient()
        client, opener = make_client(config, openai_client, auth_client=auth)
        with client:
            server = add_server(client)
            response = client.post(
                "/api/mcp/oauth/callback",
                json={"code": "code-1", "state": encode_state(server["id"])},
                headers=HEADERS,
            )
            assert response.json() == {"success": True}
            assert auth.codes == ["code-1"]
            assert opener.headers == [{"Authorization": "Bearer from-code"}]
            listed = client.get("/api/mcp/list", headers=HEADERS).json()
            assert listed[0]["isConnected"] is True

    def test_oauth_callback_bad_state(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            response = client.post(
                "/api/mcp/oauth/callback",
                json={"code": "code-1", "state": "not-a-state"},
                headers=HEADERS,
            )
            assert response.status_code == 400

    def test_tools_and_resources(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            server = add_server(client, authType="none")
            base = f"/api/mcp/{server['id']}"
            tools = client.get(f"{base}/tools/list", headers=HEADERS).json()
            assert tools == {"tools": [{"name": "list_tickets", "description": "", "inputSchema": {}}]}
            resources = client.get(f"{base}/resources/list", headers=HEADERS).json()
            assert resources["resources"][0]["uri"] == "file:///a"
            content = client.get(
                f"{base}/resources/read", params={"resourceURI": "file:///a"}, headers=HEADERS
            ).json()
            assert content["contents"][0]["text"] == "body"

    def test_transport_failure_is_500(self, config, openai_client):
        client, _ = make_client(config, openai_client, session=FakeSession(fail=True))
        with client:
            server = add_server(client, authType="none")
            response = client.get(f"/api/mcp/{server['id']}/tools/list", headers=HEADERS)
            assert response.status_code == 500
            assert "stream closed" in response.json()["message"]


class TestConversationsAPI:
    def test_send_message_streams_ndjson(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            server = add_server(client, authType="none")
            response = client.post(
                "/api/conversations/send",
                json={
                    "message": "hello",
                    "attachments": [{"mimeType": "text/plain", "text": "notes"}],
                    "mcpServers": [{"id": server["id"]}],
                    "enabledDefaultTools": ["python"],
                },
                headers=HEADERS,
            )
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("application/x-ndjson")
            events = ndjson(response)
            assert [e["type"] for e in events] == ["start", "output_text", "output_text_delta", "done"]

        request = openai_client.requests[0]
        assert request["input"][-1]["content"][1] == {"type": "input_text", "text": "notes"}
        assert [t["type"] for t in request["tools"]] == ["mcp", "code_interpreter"]
        assert "headers" not in request["tools"][0]

    def test_send_message_uses_cached_token(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            server = add_server(client)
            client.app.state.db.kv_put(
                server["id"],
                json.dumps({"access_token": "at-9", "expires_at": now_ms() + 60_000}),
            )
            response = client.post(
                "/api/conversations/send",
                json={"message": "hi", "mcpServers": [{"id": server["id"]}], "referenceId": "r0"},
                headers=HEADERS,
            )
            assert response.status_code == 200
            ndjson(response)

        request = openai_client.requests[0]
        assert request["tools"][0]["headers"] == {"Authorization": "Bearer at-9"}
        assert request["previous_response_id"] == "r0"

    def test_send_message_with_unconnected_server(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            server = add_server(client)
            response = client.post(
                "/api/conversations/send",
                json={"message": "hi", "mcpServers": [{"id": server["id"]}]},
                headers=HEADERS,
            )
            assert response.status_code == 403
            assert response.json()["code"] == "MCP_CONNECTION_ERROR"
        assert openai_client.requests == []

    def test_expired_token_needing_redirect(self, config, openai_client):
        client, _ = make_client(config, openai_client, auth_client=FakeAuthClient())
        with client:
            server = add_server(client)
            client.app.state.db.kv_put(
                server["id"], json.dumps({"access_token": "old", "expires_at": now_ms() - 1})
            )
            response = client.post(
                "/api/conversations/send",
                json={"message": "hi", "mcpServers": [{"id": server["id"]}]},
                headers=HEADERS,
            )
            assert response.status_code == 403
            assert "reconnected" in response.json()["message"]

    def test_unexpected_refresh_error_asks_for_reconnect(self, config, openai_client):
        auth = FakeAuthClient(error=ValueError("not a token response"))
        client, _ = make_client(config, openai_client, auth_client=auth)
        with client:
            server = add_server(client)
            client.app.state.db.kv_put(
                server["id"], json.dumps({"access_token": "old", "expires_at": now_ms() - 1})
            )
            response = client.post(
                "/api/conversations/send",
                json={"message": "hi", "mcpServers": [{"id": server["id"]}]},
                headers=HEADERS,
            )
            assert response.status_code == 403
            assert response.json()["code"] == "MCP_CONNECTION_ERROR"
        assert openai_client.requests == []

    def test_tool_summary(self, config, openai_client):
        client, _ = make_client(config, openai_client)
        with client:
            response = client.post(
                "/api/mcp/tools/call/summary",
                json={"serverName": "Tickets", "toolName": "list", "args": {}, "result": []},
                headers=HEADERS,
            )
            assert [e["type"] for e in ndjson(response)][-1] == "done"
        assert "- Tool: list" in openai_client.requests[0]["input"][-1]["content"][0]["text"]
