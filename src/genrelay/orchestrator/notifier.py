"""Owner-facing notification delivery."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget delivery channel to the owner."""

    def notify(self, owner_id: str, message: str, attachments: Sequence[str] = ()) -> None:
        """Deliver one message; may raise, callers only log failures."""


class LoggingNotifier:
    """Writes notifications to the application log."""

    def notify(self, owner_id: str, message: str, attachments: Sequence[str] = ()) -> None:
        logger.info(
            "notify owner=%s message=%s attachments=%s",
            owner_id,
            message,
            list(attachments),
        )


class WebhookNotifier:
    """POSTs notifications as JSON to a configured URL."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)

    def notify(self, owner_id: str, message: str, attachments: Sequence[str] = ()) -> None:
        response = self._client.post(
            self.url,
            json={"owner_id": owner_id, "message": message, "attachments": list(attachments)},
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def safe_notify(
    notifier: Notifier,
    owner_id: str,
    message: str,
    attachments: Sequence[str] = (),
) -> bool:
    """Deliver a notification, logging instead of raising on failure."""

    try:
        notifier.notify(owner_id, message, attachments)
    except Exception:  # noqa: BLE001
        logger.warning("Notification to owner=%s failed", owner_id, exc_info=True)
        return False
    return True


def result_attachments(result: dict[str, object] | None) -> tuple[str, ...]:
    """Pick deliverable references (URLs) out of a provider result."""

    if not result:
        return ()
    attachments: list[str] = []
    for key in ("url", "image_url", "video_url"):
        value = result.get(key)
        if isinstance(value, str) and value:
            attachments.append(value)
    urls = result.get("urls")
    if isinstance(urls, list):
        attachments.extend(str(item) for item in urls if item)
    return tuple(attachments)
