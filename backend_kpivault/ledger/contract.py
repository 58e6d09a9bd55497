"""Read-side access to the KpiManager contract: getMetrics via eth_call."""

from __future__ import annotations

import httpx
from eth_abi.exceptions import DecodingError

from backend_kpivault.core.exceptions import FetchError, RpcError
from backend_kpivault.ledger.abi import decode_get_metrics, encode_get_metrics
from backend_kpivault.ledger.models import RawMetricEntry
from backend_kpivault.ledger.rpc import JsonRpcClient


class KpiManagerContract:
    def __init__(self, rpc: JsonRpcClient, address: str) -> None:
        self._rpc = rpc
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    async def get_entries(self, owner: str, metric_id: int) -> list[RawMetricEntry]:
        """All recorded entries for owner+metricId, oldest first. Raises FetchError."""
        call = {"to": self._address, "data": encode_get_metrics(owner, metric_id)}
        try:
            result = await self._rpc.call("eth_call", [call, "latest"])
            return decode_get_metrics(result)
        except (RpcError, httpx.HTTPError, DecodingError, ValueError) as e:
            raise FetchError(f"getMetrics failed for owner {owner}: {e}") from e
