# Tests for the Ollama and OpenAI proxy routes, end to end against a bridge app.
# Created: 2026-10-18

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from fakes import OTHER_MODEL, ScriptedProvider, make_settings, telemetry
from lmbridge.bridge.server import create_bridge_app
from lmbridge.errors import LanguageModelError
from lmbridge.proxy.client import BridgeClient
from lmbridge.proxy.serve import create_proxy_app


def _proxy(provider, bridge_token=None, client_token=None) -> TestClient:
    bridge = create_bridge_app(make_settings(auth_token=bridge_token), provider)
    client = BridgeClient(
        "http://bridge", client_token, transport=httpx.ASGITransport(app=bridge)
    )
    return TestClient(create_proxy_app(make_settings(model_cache_ttl=0), client))


def _frames(text: str) -> list:
    frames = []
    for record in text.split("\n\n"):
        if not record.strip():
            continue
        assert record.startswith("data: ")
        payload = record[len("data: ") :]
        frames.append(payload if payload == "[DONE]" else json.loads(payload))
    return frames


@pytest.fixture
def provider():
    return ScriptedProvider(["Hel", "lo"])


@pytest.fixture
def client(provider):
    return _proxy(provider)


class TestServiceRoutes:
    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "lmbridge-proxy", "upstream": "http://bridge"}

    def test_ollama_tags(self, client):
        resp = client.get("/api/tags")
        assert resp.status_code == 200
        models = resp.json()["models"]
        assert [m["name"] for m in models] == ["mock:gpt", "mock:llama"]
        assert models[1]["details"]["family"] == "llama"

    def test_openai_models(self, client):
        resp = client.get("/v1/models")
        assert resp.json()["object"] == "list"
        assert [(m["id"], m["owned_by"]) for m in resp.json()["data"]] == [
            ("mock:gpt", "mock"),
            ("mock:llama", "meta"),
        ]

    def test_bridge_auth_failure(self):
        client = _proxy(ScriptedProvider(), bridge_token="secret")
        resp = client.get("/api/tags")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Bridge authentication failed: Unauthorized"}

    def test_bridge_token_forwarded(self):
        client = _proxy(ScriptedProvider(), bridge_token="secret", client_token="secret")
        assert client.get("/api/tags").status_code == 200


class TestOllamaGenerate:
    def test_non_streaming(self):
        provider = ScriptedProvider(["ok"])
        client = _proxy(provider)

        resp = client.post("/api/generate", json={"model": "gpt", "prompt": "hi", "stream": False})

        assert resp.status_code == 200
        body = resp.json()
        assert body["model"] == "mock:gpt"
        assert body["response"] == "ok"
        assert body["done"] is True
        assert [m.text for m in provider.requests[0][1]] == ["hi"]

    def test_streaming_ndjson(self, client, debug_logs):
        resp = client.post("/api/generate", json={"model": "mock:gpt", "prompt": "hi"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")
        lines = [json.loads(line) for line in resp.text.splitlines()]
        assert [line["response"] for line in lines] == ["Hel", "lo", ""]
        assert lines[-1]["done"] is True

        [finished] = telemetry(debug_logs, "proxy.stream.finished")
        assert finished["route"] == "/api/generate"
        assert finished["status"] == "completed"
        assert finished["chunks"] == 2

    def test_system_and_options_mapped(self, provider, client):
        client.post(
            "/api/generate",
            json={
                "model": "x",
                "prompt": "q",
                "system": "be brief",
                "options": {"num_predict": 0},
                "stream": False,
            },
        )
        _, messages, options = provider.requests[0]
        assert messages[0].text == "System: be brief\n\nq"
        assert options == {"modelOptions": {"maxOutputTokens": 1}}

    def test_bridge_error_before_stream(self):
        client = _proxy(ScriptedProvider(models=[]))
        resp = client.post("/api/generate", json={"model": "x", "prompt": "hi"})
        assert resp.status_code == 404
        assert resp.json() == {
            "error": "Requested resource not available: Requested model not available"
        }


class TestOllamaChat:
    def test_exact_model_selected(self, provider, client):
        resp = client.post(
            "/api/chat",
            json={
                "model": "mock:llama",
                "messages": [{"role": "system", "content": "s"}, {"role": "user", "content": "q"}],
                "stream": False,
            },
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == {"role": "assistant", "content": "Hello"}
        assert resp.json()["model"] == "mock:llama"
        model, messages, _ = provider.requests[0]
        assert model == OTHER_MODEL
        assert [m.text for m in messages] == ["System: s\n\nq"]

    def test_streaming(self, client):
        resp = client.post("/api/chat", json={"model": "x", "messages": [{"role": "user", "content": "q"}]})
        lines = [json.loads(line) for line in resp.text.splitlines()]
        assert [line["message"]["content"] for line in lines[:-1]] == ["Hel", "lo"]
        assert lines[-1]["done"] is True

    def test_invalid_body(self, client):
        resp = client.post("/api/chat", json={"model": "x", "messages": "nope"})
        assert resp.status_code == 400
        assert "error" in resp.json()


class TestOpenAIChatCompletions:
    def test_non_streaming(self, client):
        resp = client.post(
            "/v1/chat/completions",
            json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["object"] == "chat.completion"
        assert body["id"].startswith("chatcmpl-")
        assert body["model"] == "mock:gpt"
        assert body["choices"][0]["message"] == {"role": "assistant", "content": "Hello"}
        assert body["usage"] == {"prompt_tokens": 0, "completion_tokens": 2, "total_tokens": 2}

    def test_streaming(self, client):
        resp = client.post(
            "/v1/chat/completions",
            json={"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}], "stream": True},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = _frames(resp.text)
        assert frames[-1] == "[DONE]"
        assert frames[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
        content = "".join(f["choices"][0]["delta"].get("content", "") for f in frames[1:-1])
        assert content == "Hello"
        assert frames[-2]["choices"][0]["finish_reason"] == "stop"
        assert len({f["id"] for f in frames[:-1]}) == 1

    def test_upstream_error_mid_stream(self, debug_logs):
        provider = ScriptedProvider(["a"], error=LanguageModelError("slow down", "quota_exceeded"))
        client = _proxy(provider)

        resp = client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "hi"}], "stream": True},
        )

        frames = _frames(resp.text)
        errors = [f for f in frames if isinstance(f, dict) and "error" in f]
        assert len(errors) == 1
        assert errors[0]["error"]["code"] == "bridge_429"
        assert frames.count("[DONE]") == 1
        [finished] = telemetry(debug_logs, "proxy.stream.finished")
        assert finished["status"] == "failed"
        assert finished["errorStatus"] == 429

    def test_unsupported_n(self, client, provider):
        resp = client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "hi"}], "n": 2},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == {
            "message": "Only n=1 is supported",
            "type": "invalid_request_error",
            "param": None,
            "code": "unsupported_n",
        }
        assert provider.requests == []

    def test_missing_messages(self, client):
        resp = client.post("/v1/chat/completions", json={"model": "x"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["type"] == "invalid_request_error"
        assert error["param"] == "messages"

    def test_bridge_error_shape(self):
        client = _proxy(ScriptedProvider(models=[]))
        resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "bridge_404"
        assert error["type"] == "invalid_request_error"
