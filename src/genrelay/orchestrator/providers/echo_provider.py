"""Deterministic local provider for demos and tests."""

from __future__ import annotations

import hashlib
import threading

from genrelay.orchestrator.errors import ProviderError
from genrelay.orchestrator.providers.base import (
    ProviderPoll,
    ProviderRequest,
    ProviderStart,
    ProviderStatus,
)


class EchoProviderAdapter:
    """Echoes the prompt back as the generation result.

    With ``deferred=True`` the result is only available through ``poll`` after
    ``polls_until_done`` calls, which exercises the external-id path.
    """

    supports_callbacks = False

    def __init__(
        self,
        *,
        name: str = "echo",
        deferred: bool = False,
        polls_until_done: int = 1,
    ) -> None:
        self.name = name
        self.deferred = deferred
        self.polls_until_done = max(1, polls_until_done)
        self._jobs: dict[str, tuple[ProviderRequest, int]] = {}
        self._lock = threading.Lock()

    def start(self, request: ProviderRequest) -> ProviderStart:
        if not request.prompt.strip():
            raise ProviderError("Echo provider received an empty prompt", transient=False)
        if not self.deferred:
            return ProviderStart(result=_echo_result(self.name, request))
        digest = hashlib.sha256(
            f"{request.task_id}:{request.attempt_no}".encode(),
        ).hexdigest()[:16]
        external_task_id = f"{self.name}-{digest}"
        with self._lock:
            self._jobs[external_task_id] = (request, 0)
        return ProviderStart(external_task_id=external_task_id)

    def poll(self, external_task_id: str) -> ProviderPoll:
        with self._lock:
            job = self._jobs.get(external_task_id)
            if job is None:
                raise ProviderError(f"Unknown echo job: {external_task_id}", transient=False)
            request, polls = job
            polls += 1
            self._jobs[external_task_id] = (request, polls)
        if polls < self.polls_until_done:
            return ProviderPoll(
                status=ProviderStatus.RUNNING,
                progress=int(100 * polls / self.polls_until_done),
            )
        return ProviderPoll(
            status=ProviderStatus.COMPLETED,
            progress=100,
            result=_echo_result(self.name, request),
        )


def _echo_result(provider: str, request: ProviderRequest) -> dict[str, object]:
    result: dict[str, object] = {
        "provider": provider,
        "kind": request.kind,
        "model": request.model,
        "text": request.prompt.strip(),
    }
    if request.kind in {"image", "video"}:
        digest = hashlib.sha256(request.prompt.strip().encode("utf-8")).hexdigest()[:12]
        extension = "png" if request.kind == "image" else "mp4"
        result["url"] = f"echo://{request.kind}/{digest}.{extension}"
    if request.auxiliary_ref:
        result["auxiliary_ref"] = request.auxiliary_ref
    return result
