"""
Trigger delivery: POST {BACKEND_URL}/alerts/{ruleId}/trigger.

Authenticated with the shared worker secret (x-alert-worker-key) and the
worker's own address (x-wallet-address). Any transport error or non-2xx
answer raises DeliveryError; there is no retry loop here.
"""

from __future__ import annotations

import httpx

from backend_kpivault.alerts.models import AlertRule, TriggerPayload
from backend_kpivault.core.exceptions import DeliveryError

DEFAULT_TIMEOUT_SEC = 15.0
WORKER_KEY_HEADER = "x-alert-worker-key"
WALLET_ADDRESS_HEADER = "x-wallet-address"
MAX_ERROR_BODY = 500


class DeliveryClient:
    def __init__(
        self,
        base_url: str,
        worker_key: str,
        worker_address: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must be non-empty")
        self._base_url = base_url.rstrip("/")
        self._worker_key = worker_key
        self._worker_address = worker_address
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))

    async def post_trigger(
        self,
        rule: AlertRule,
        metric_id_hex: str,
        entry_index: int,
        payload: TriggerPayload,
    ) -> None:
        url = f"{self._base_url}/alerts/{rule.id}/trigger"
        headers = {
            WORKER_KEY_HEADER: self._worker_key,
            WALLET_ADDRESS_HEADER: self._worker_address,
        }
        body = {
            "ownerAddress": rule.owner,
            "metricId": rule.metric_id,
            "entryIndex": entry_index,
            "payload": payload.to_dict(),
        }
        try:
            resp = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(
                f"Backend trigger request failed for rule {rule.id} ({metric_id_hex}): {e}"
            ) from e
        if not resp.is_success:
            raise DeliveryError(
                f"Backend trigger request failed ({resp.status_code}): {resp.text[:MAX_ERROR_BODY]}",
                status_code=resp.status_code,
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
