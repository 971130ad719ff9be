"""Synchronous client for the OpenAI Evals API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import httpx

from server.clients.exceptions import (
    APIError,
    AuthenticationError,
    NotFoundError,
    RateLimitError,
)
from server.services.credentials import KeyResolver, explicit, resolve_api_key, secret_store

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class EvalsClientConfig:
    base_url: str = DEFAULT_BASE_URL
    connect_timeout: float = 10.0
    read_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> EvalsClientConfig:
        return cls(
            base_url=settings.evals_base_url,
            connect_timeout=settings.evals_connect_timeout,
            read_timeout=settings.evals_read_timeout,
        )

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.read_timeout, connect=self.connect_timeout)


class EvalsClient:
    """Typed wrapper over ``/evals``, ``/evals/{id}/runs`` and ``/files``.

    Usage:
        client = EvalsClient(api_key="sk-...")
        eval_record = client.create_eval(
            name="greeting - smoke",
            data_source_config={...},
            testing_criteria=[...],
        )

    The key is resolved once, at construction. When ``key_resolvers`` is not
    given the chain is the explicit argument followed by the environment.
    Every failure surfaces as :class:`APIError` or one of its subclasses.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        key_resolvers: Iterable[KeyResolver] | None = None,
        config: EvalsClientConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        resolvers = list(key_resolvers) if key_resolvers is not None else [
            explicit(api_key),
            secret_store("openai"),
        ]
        self._api_key = resolve_api_key(resolvers)
        if not self._api_key:
            raise AuthenticationError("OpenAI API key not configured")

        self._config = config or EvalsClientConfig()
        self._http = httpx.Client(
            base_url=self._config.base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=self._config.timeout,
            transport=transport,
        )

    # ── Evals ──

    def create_eval(self, name: str, data_source_config: dict, testing_criteria: list) -> dict:
        return self._post("/evals", {
            "name": name,
            "data_source_config": data_source_config,
            "testing_criteria": testing_criteria,
        })

    def create_run(self, eval_id: str, name: str, data_source: dict) -> dict:
        return self._post(f"/evals/{eval_id}/runs", {
            "name": name,
            "data_source": data_source,
        })

    def get_run(self, eval_id: str, run_id: str) -> dict:
        return self._request("GET", f"/evals/{eval_id}/runs/{run_id}")

    def list_output_items(self, eval_id: str, run_id: str, limit: int = 100) -> list[dict]:
        """Every graded item of a run, following ``after`` cursors until ``has_more`` is false."""
        items: list[dict] = []
        params: dict = {"limit": limit}
        while True:
            page = self._request("GET", f"/evals/{eval_id}/runs/{run_id}/output_items", params=params)
            data = page.get("data") or []
            items.extend(data)
            if not page.get("has_more") or not data:
                return items
            params = {"limit": limit, "after": page.get("last_id") or data[-1].get("id")}

    # ── Files ──

    def upload_file(self, path: str | Path, purpose: str = "evals") -> dict:
        """Upload ``path`` as multipart form data and return the file record."""
        path = Path(path)
        try:
            with path.open("rb") as fh:
                resp = self._http.post(
                    "/files",
                    data={"purpose": purpose},
                    files={"file": (path.name, fh)},
                )
        except FileNotFoundError:
            raise APIError(f"File not found: {path}")
        except httpx.TimeoutException:
            raise APIError("File upload failed: request timed out")
        except (OSError, httpx.HTTPError) as e:
            raise APIError(f"File upload failed: {e}")
        return self._handle_response(resp)

    # ── Internals ──

    def _post(self, path: str, body: dict) -> dict:
        return self._request(
            "POST", path,
            content=json.dumps(body),
            headers={"Content-Type": "application/json"},
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        logger.debug("%s %s", method, path)
        try:
            resp = self._http.request(method, path, **kwargs)
        except httpx.ConnectTimeout:
            raise APIError("Connection timed out")
        except httpx.TimeoutException:
            raise APIError("Request timed out")
        except httpx.HTTPError as e:
            raise APIError(f"Request failed: {e}")
        return self._handle_response(resp)

    def _handle_response(self, resp: httpx.Response) -> dict:
        status = resp.status_code
        if 200 <= status < 300:
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError:
                raise APIError(f"Invalid JSON response: {resp.text[:200]}", status_code=status)
        if status == 401:
            raise AuthenticationError("Invalid API key")
        if status == 404:
            raise NotFoundError(_error_message(resp))
        if status == 429:
            raise RateLimitError(_retry_after(resp))
        if 400 <= status < 500:
            raise APIError(f"Client error: {_error_message(resp)}", status_code=status)
        if 500 <= status < 600:
            raise APIError(f"Server error: {_error_message(resp)}", status_code=status)
        raise APIError(f"Unexpected response: {status} - {resp.text}", status_code=status)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _error_message(resp: httpx.Response) -> str:
    """Prefer ``error.message``, then a string ``error``, then the raw body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return resp.text


def _retry_after(resp: httpx.Response) -> int | None:
    value = resp.headers.get("retry-after")
    try:
        return int(value) if value else None
    except ValueError:
        return None
