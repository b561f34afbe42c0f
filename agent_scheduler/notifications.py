from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 600
TRIGGER_PATH = "triggerScheduledJob"
REQUEST_TIMEOUT_SECONDS = 2.5


def normalize_preview(text: str, max_len: int = PREVIEW_LIMIT) -> str | None:
    """Collapse whitespace and cap ``text`` at ``max_len`` characters."""
    words = text.split()
    if not words:
        return None
    collapsed = " ".join(words)
    if len(collapsed) > max_len:
        collapsed = collapsed[: max(0, max_len - 1)].rstrip() + "…"
    return collapsed


def _post_json(url: str, *, secret: str, payload: dict[str, Any]) -> int:
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {secret}"},
    )
    with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
        response.read()
        return response.status


class PushNotifier:
    """Delivers job messages to the owner through the push gateway.

    Delivery is best-effort: ``send`` reports whether the gateway accepted the
    message and never raises.
    """

    def __init__(self, *, base_url: str | None, secret: str | None) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/{TRIGGER_PATH}" if base_url else None
        self._secret = secret

    @property
    def enabled(self) -> bool:
        return bool(self._endpoint and self._secret)

    async def send(self, *, owner_id: str, job_id: str, text: str, event: str = "message") -> bool:
        if not self._endpoint or not self._secret:
            return False

        payload: dict[str, Any] = {"owner_id": owner_id, "job_id": job_id, "event": event}
        preview = normalize_preview(text)
        if preview:
            payload["message_preview"] = preview

        try:
            await asyncio.to_thread(_post_json, self._endpoint, secret=self._secret, payload=payload)
        except urllib.error.HTTPError as exc:
            logger.warning("Gateway rejected %s notification for job %s: HTTP %s", event, job_id, exc.code)
            return False
        except Exception:
            logger.exception("Could not deliver %s notification for job %s", event, job_id)
            return False
        logger.debug("Delivered %s notification for job %s", event, job_id)
        return True
