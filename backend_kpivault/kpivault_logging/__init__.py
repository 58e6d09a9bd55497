"""
Structured logging for the KPI vault alert worker.

JSON logs with timestamp, owner, event_type and rule/metric context.
Use get_logger() in all worker modules for aggregation-friendly output.
"""

from backend_kpivault.kpivault_logging.logger import bind_owner, get_logger

__all__ = ["bind_owner", "get_logger"]
