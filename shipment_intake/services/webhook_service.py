import logging
from concurrent.futures import ThreadPoolExecutor

import httpx

from shipment_intake.config import settings
from shipment_intake.services.cache_service import InvalidationEvent

logger = logging.getLogger(__name__)


def configured_urls(raw: str | None = None) -> list[str]:
    raw = settings.INVALIDATION_WEBHOOK_URLS if raw is None else raw
    return [u.strip() for u in raw.split(",") if u.strip()]


def _build_payload(event: InvalidationEvent) -> dict:
    return {"event": "cache_invalidated", **event.to_dict()}


def send_invalidation_sync(event: InvalidationEvent, urls: list[str], transport: httpx.BaseTransport | None = None) -> list[dict]:
    """Post one invalidation event to every reporting callback URL."""
    if not urls:
        return []

    payload = _build_payload(event)
    results = []

    with httpx.Client(timeout=10.0, transport=transport) as client:
        for url in urls:
            try:
                resp = client.post(url, json=payload)
                results.append({"url": url, "status": resp.status_code, "success": resp.is_success})
            except httpx.HTTPError as e:
                logger.error("Invalidation webhook failed for %s: %s", url, e)
                results.append({"url": url, "status": 0, "success": False, "error": str(e)})

    return results


class InvalidationWebhookNotifier:
    """Coordinator listener that pushes events to reporting off the request thread."""

    def __init__(self, urls: list[str], executor: ThreadPoolExecutor | None = None, transport: httpx.BaseTransport | None = None):
        self.urls = urls
        self.transport = transport
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="invalidation-webhook")

    def __call__(self, event: InvalidationEvent) -> None:
        self._executor.submit(self._deliver, event)

    def _deliver(self, event: InvalidationEvent) -> list[dict]:
        results = send_invalidation_sync(event, self.urls, self.transport)
        failed = [r["url"] for r in results if not r["success"]]
        if failed:
            logger.warning("Invalidation event %d not delivered to %s", event.seq, ", ".join(failed))
        return results

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
