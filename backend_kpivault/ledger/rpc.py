"""
Minimal async JSON-RPC client for the ledger node (httpx).

Raises RpcError for JSON-RPC error objects and lets httpx transport errors
propagate so callers decide whether a failure is fatal, retried or ignored.
"""

from __future__ import annotations

import itertools
from typing import Any

import httpx

from backend_kpivault.core.exceptions import RpcError

DEFAULT_RPC_TIMEOUT_SEC = 15.0


class JsonRpcClient:
    """Thin JSON-RPC 2.0 wrapper over one shared httpx.AsyncClient."""

    def __init__(
        self,
        rpc_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = DEFAULT_RPC_TIMEOUT_SEC,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self._rpc_url = rpc_url.strip()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))
        self._ids = itertools.count(1)

    @property
    def url(self) -> str:
        return self._rpc_url

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """POST one request; return `result` or raise RpcError / httpx.HTTPError."""
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        resp = await self._client.post(self._rpc_url, json=body)
        resp.raise_for_status()
        data = resp.json()
        err = data.get("error")
        if err:
            if isinstance(err, dict):
                raise RpcError(
                    f"{method}: {err.get('message', err)}",
                    code=err.get("code"),
                    data=err.get("data"),
                )
            raise RpcError(f"{method}: {err}")
        if "result" not in data:
            raise RpcError(f"{method}: response has no result")
        return data["result"]

    async def block_number(self) -> int:
        return int(await self.call("eth_blockNumber"), 16)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
