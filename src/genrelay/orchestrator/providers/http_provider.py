"""Generic JSON-over-HTTP provider adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from genrelay.orchestrator.errors import ProviderError
from genrelay.orchestrator.providers.base import (
    ProviderPoll,
    ProviderRequest,
    ProviderStart,
    coerce_progress,
    normalize_provider_status,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpProviderAdapter:
    """Speaks a minimal task API.

    ``POST {base_url}/tasks`` answers ``{"result": {...}}`` or ``{"task_id": "..."}``;
    ``GET {base_url}/tasks/{id}`` answers ``{"status", "progress", "result", "error"}``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        base_url: str,
        supports_callbacks: bool = False,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.supports_callbacks = supports_callbacks
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def start(self, request: ProviderRequest) -> ProviderStart:
        payload: dict[str, Any] = {
            "kind": request.kind,
            "model": request.model,
            "prompt": request.prompt,
            "reference": request.auxiliary_ref,
            "client_reference": f"{request.task_id}:{request.attempt_no}",
        }
        body = self._request("POST", "/tasks", json=payload)
        result = body.get("result")
        if isinstance(result, dict):
            return ProviderStart(result=result)
        external_task_id = body.get("task_id") or body.get("id")
        if external_task_id:
            return ProviderStart(external_task_id=str(external_task_id))
        raise ProviderError(
            f"{self.name}: start response has neither result nor task_id",
            transient=False,
        )

    def poll(self, external_task_id: str) -> ProviderPoll:
        body = self._request("GET", f"/tasks/{external_task_id}")
        result = body.get("result") or body.get("output")
        progress = body.get("progress")
        return ProviderPoll(
            status=normalize_provider_status(body.get("status")),
            progress=coerce_progress(progress),
            result=result if isinstance(result, dict) else None,
            error=str(body["error"]) if body.get("error") else None,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpProviderAdapter:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as error:
            status_code = error.response.status_code
            detail = _error_detail(error.response)
            raise ProviderError(
                f"{self.name}: HTTP {status_code} {detail}".strip(),
                status_code=status_code,
            ) from error
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s%s", method, self.base_url, path)
            raise ProviderError(f"{self.name}: request timed out", transient=True) from error
        except httpx.TransportError as error:
            logger.warning("Transport error calling %s %s%s: %s", method, self.base_url, path, error)
            raise ProviderError(f"{self.name}: network error: {error}", transient=True) from error

        try:
            body = response.json()
        except ValueError as error:
            raise ProviderError(
                f"{self.name}: response is not JSON",
                transient=False,
            ) from error
        if not isinstance(body, dict):
            raise ProviderError(f"{self.name}: response is not a JSON object", transient=False)
        return body


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])[:200]
    return ""
