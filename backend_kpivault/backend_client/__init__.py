"""
HTTP clients for the KPI vault backend: alert rule reads and trigger delivery.
"""

from backend_kpivault.backend_client.delivery import DeliveryClient
from backend_kpivault.backend_client.rule_store import RuleStoreClient

__all__ = ["DeliveryClient", "RuleStoreClient"]
