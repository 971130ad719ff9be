"""Tests for the OpenAI Evals API client."""

from __future__ import annotations

import json

import httpx
import pytest

from server.clients.evals_client import EvalsClient, EvalsClientConfig
from server.clients.exceptions import APIError, AuthenticationError, NotFoundError, RateLimitError
from server.services.credentials import explicit


def _client(handler, **kwargs) -> EvalsClient:
    return EvalsClient(
        api_key="sk-test-123",
        config=EvalsClientConfig(base_url="https://evals.test/v1"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _status_client(status: int, body=None, headers=None) -> EvalsClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body, headers=headers)
        return httpx.Response(status, text=body or "", headers=headers)
    return _client(handler)


class TestRequests:
    def test_create_eval_posts_json(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "eval_123"})

        result = _client(handler).create_eval(
            name="Greeting - smoke",
            data_source_config={"type": "custom"},
            testing_criteria=[{"type": "string_check"}],
        )
        assert result == {"id": "eval_123"}
        assert seen["method"] == "POST"
        assert seen["url"] == "https://evals.test/v1/evals"
        assert seen["auth"] == "Bearer sk-test-123"
        assert seen["content_type"] == "application/json"
        assert seen["body"]["name"] == "Greeting - smoke"
        assert seen["body"]["testing_criteria"] == [{"type": "string_check"}]

    def test_create_run_path(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})

        result = _client(handler).create_run("eval_1", "Run 1", {"type": "completions"})
        assert result["id"] == "run_1"
        assert seen["path"] == "/v1/evals/eval_1/runs"
        assert seen["body"] == {"name": "Run 1", "data_source": {"type": "completions"}}

    def test_get_run(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/v1/evals/eval_1/runs/run_1"
            return httpx.Response(200, json={"id": "run_1", "status": "completed"})

        assert _client(handler).get_run("eval_1", "run_1")["status"] == "completed"

    def test_upload_file_multipart(self, tmp_path):
        path = tmp_path / "cases.jsonl"
        path.write_text('{"item": {"name": "Ada"}}\n')
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = request.content
            return httpx.Response(200, json={"id": "file_1"})

        assert _client(handler).upload_file(path)["id"] == "file_1"
        assert seen["path"] == "/v1/files"
        assert seen["content_type"].startswith("multipart/form-data")
        assert b'name="purpose"' in seen["body"]
        assert b"evals" in seen["body"]
        assert b'filename="cases.jsonl"' in seen["body"]

    def test_upload_missing_file(self, tmp_path):
        client = _client(lambda r: httpx.Response(200, json={}))
        with pytest.raises(APIError, match="File not found"):
            client.upload_file(tmp_path / "missing.jsonl")

    def test_upload_timeout(self, tmp_path):
        path = tmp_path / "cases.jsonl"
        path.write_text("{}\n")

        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(APIError) as exc:
            _client(handler).upload_file(path)
        assert exc.value.message == "File upload failed: request timed out"

    def test_upload_transport_error(self, tmp_path):
        path = tmp_path / "cases.jsonl"
        path.write_text("{}\n")

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(APIError) as exc:
            _client(handler).upload_file(path)
        assert exc.value.message == "File upload failed: connection refused"

    def test_list_output_items_follows_cursor(self):
        pages = {
            None: {"data": [{"id": "item_1"}, {"id": "item_2"}], "has_more": True, "last_id": "item_2"},
            "item_2": {"data": [{"id": "item_3"}], "has_more": False},
        }
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            after = request.url.params.get("after")
            seen.append((request.url.path, after))
            return httpx.Response(200, json=pages[after])

        items = _client(handler).list_output_items("eval_1", "run_1")
        assert [i["id"] for i in items] == ["item_1", "item_2", "item_3"]
        assert seen == [
            ("/v1/evals/eval_1/runs/run_1/output_items", None),
            ("/v1/evals/eval_1/runs/run_1/output_items", "item_2"),
        ]


class TestStatusMapping:
    def test_2xx_returns_json(self):
        assert _status_client(201, {"id": "x"}).get_run("e", "r") == {"id": "x"}

    def test_401_authentication_error(self):
        with pytest.raises(AuthenticationError) as exc:
            _status_client(401, {"error": {"message": "bad key"}}).get_run("e", "r")
        assert exc.value.message == "Invalid API key"
        assert exc.value.status_code == 401

    def test_404_uses_body_message(self):
        with pytest.raises(NotFoundError) as exc:
            _status_client(404, {"error": {"message": "No such eval"}}).get_run("e", "r")
        assert exc.value.message == "No such eval"

    def test_404_string_error(self):
        with pytest.raises(NotFoundError, match="gone"):
            _status_client(404, {"error": "gone"}).get_run("e", "r")

    def test_429_rate_limit(self):
        with pytest.raises(RateLimitError) as exc:
            _status_client(429, {"error": {"message": "slow down"}}, headers={"retry-after": "20"}).get_run("e", "r")
        assert exc.value.retry_after == 20
        assert "Retry after 20s" in exc.value.message

    def test_other_4xx(self):
        with pytest.raises(APIError) as exc:
            _status_client(400, {"error": {"message": "bad schema"}}).get_run("e", "r")
        assert exc.value.message == "Client error: bad schema"
        assert exc.value.status_code == 400
        assert not isinstance(exc.value, (AuthenticationError, NotFoundError, RateLimitError))

    def test_5xx_raw_body(self):
        with pytest.raises(APIError) as exc:
            _status_client(503, "upstream down").get_run("e", "r")
        assert exc.value.message == "Server error: upstream down"

    def test_unexpected_status(self):
        with pytest.raises(APIError, match="Unexpected response: 302"):
            _status_client(302, "moved").get_run("e", "r")

    def test_invalid_json_on_success(self):
        with pytest.raises(APIError, match="Invalid JSON response"):
            _status_client(200, "not json").get_run("e", "r")

    def test_empty_success_body(self):
        assert _status_client(204).get_run("e", "r") == {}


class TestTransportErrors:
    def test_connect_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("connect timed out", request=request)

        with pytest.raises(APIError, match="Connection timed out"):
            _client(handler).get_run("e", "r")

    def test_read_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(APIError, match="Request timed out"):
            _client(handler).get_run("e", "r")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(APIError, match="Request failed"):
            _client(handler).get_run("e", "r")


class TestCredentials:
    def test_blank_credentials_fail_before_network(self, no_env_keys):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        with pytest.raises(AuthenticationError, match="OpenAI API key not configured"):
            EvalsClient(api_key="   ", transport=httpx.MockTransport(handler))
        assert calls == []

    def test_resolver_chain_first_non_blank(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={})

        client = EvalsClient(
            key_resolvers=[explicit(None), explicit(""), explicit("  sk-second "), explicit("sk-third")],
            transport=httpx.MockTransport(handler),
        )
        client.get_run("e", "r")
        assert seen["auth"] == "Bearer sk-second"

    def test_env_fallback(self, monkeypatch):
        from server.config import settings
        monkeypatch.setattr(settings, "openai_api_key", "sk-from-env")
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={})

        with EvalsClient(transport=httpx.MockTransport(handler)) as client:
            client.get_run("e", "r")
        assert seen["auth"] == "Bearer sk-from-env"


def test_config_timeout():
    config = EvalsClientConfig(connect_timeout=2.0, read_timeout=7.0)
    assert config.timeout.connect == 2.0
    assert config.timeout.read == 7.0
