"""FastAPI application receiving provider completion callbacks.

Providers expect a fast 200 regardless of whether the report changed anything,
so the callback route always acknowledges and logs what it could not apply.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool

from genrelay import __version__
from genrelay.orchestrator.models import CompletionNotice
from genrelay.orchestrator.providers import coerce_progress, normalize_provider_status
from genrelay.orchestrator.reconciler import Reconciler

logger = logging.getLogger(__name__)

_EXTERNAL_ID_KEYS = ("externalTaskId", "external_task_id", "task_id", "id")
_RESULT_KEYS = ("result", "output")


def create_app(reconciler: Reconciler) -> FastAPI:
    """Build the callback app around an already wired reconciler."""

    app = FastAPI(title="genrelay-callbacks", version=__version__)
    app.state.reconciler = reconciler

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/callbacks/{provider}")
    async def provider_callback(provider: str, request: Request) -> dict[str, str]:
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("Ignoring callback from %s with non-JSON body", provider)
            return {"status": "ok"}

        try:
            notice = parse_callback_payload(provider=provider, payload=payload)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed callback from %s: %r", provider, payload)
            return {"status": "ok"}
        if notice is None:
            logger.warning("Ignoring callback from %s without task id: %r", provider, payload)
            return {"status": "ok"}
        try:
            # Settlement does blocking store and notifier I/O.
            ack = await run_in_threadpool(app.state.reconciler.handle_notice, notice)
        except Exception:
            logger.exception(
                "Failed to apply callback provider=%s external_task_id=%s",
                provider,
                notice.external_task_id,
            )
            return {"status": "ok"}
        logger.info(
            "Callback provider=%s external_task_id=%s applied=%s reason=%s",
            provider,
            notice.external_task_id,
            ack.applied,
            ack.reason or "-",
        )
        return {"status": "ok"}

    return app


def parse_callback_payload(*, provider: str, payload: Any) -> CompletionNotice | None:
    """Map a provider's callback body onto a completion notice.

    Returns ``None`` when the body does not name the provider's task.
    """

    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict):
        payload = {**data, **payload}

    external_task_id = None
    for key in _EXTERNAL_ID_KEYS:
        value = payload.get(key)
        if isinstance(value, str | int) and str(value).strip():
            external_task_id = str(value).strip()
            break
    if external_task_id is None:
        return None

    result = None
    for key in _RESULT_KEYS:
        value = payload.get(key)
        if isinstance(value, dict):
            result = value
            break
        if isinstance(value, str) and value.strip():
            result = {"text": value}
            break

    progress = payload.get("progress")
    error = payload.get("error")
    return CompletionNotice(
        external_task_id=external_task_id,
        status=normalize_provider_status(str(payload.get("status", ""))).to_task_status(),
        provider=provider.strip().lower(),
        progress=coerce_progress(progress),
        result=result,
        error=str(error) if error else None,
    )
