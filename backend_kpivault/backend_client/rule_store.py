"""Rule store client: GET {BACKEND_URL}/alerts/{owner} -> {"alerts": [AlertRule, ...]}."""

from __future__ import annotations

import httpx
from pydantic import ValidationError

from backend_kpivault.alerts.models import AlertRule
from backend_kpivault.core.exceptions import FetchError
from backend_kpivault.kpivault_logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 15.0


class RuleStoreClient:
    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must be non-empty")
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec))

    async def fetch_rules(self, owner: str) -> list[AlertRule]:
        """
        Return the owner's non-deleted rules. Raises FetchError on transport
        errors, non-2xx status or a non-JSON body. Rules that fail validation
        are skipped with a warning; a missing "alerts" list means no rules.
        """
        url = f"{self._base_url}/alerts/{owner}"
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to load alert rules: {e}") from e
        if not resp.is_success:
            raise FetchError(f"Failed to load alert rules ({resp.status_code})")
        try:
            body = resp.json()
        except ValueError as e:
            raise FetchError(f"Alert rules response is not JSON: {e}") from e

        raw_rules = body.get("alerts") if isinstance(body, dict) else None
        if not isinstance(raw_rules, list):
            return []
        rules: list[AlertRule] = []
        for item in raw_rules:
            try:
                rules.append(AlertRule.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "rule_store_invalid_rule",
                    owner=owner,
                    rule_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )
        return rules

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
