"""Utility modules."""

from .config import (
    get_settings,
    Settings,
    SUBMISSION_RULES,
    REMOTE_STATUS_MAP,
    SUBMISSION_INVOICE_STATUS,
    REVIEW_SORT_FIELDS,
)
from .log_config import configure_logging

__all__ = [
    "get_settings",
    "Settings",
    "SUBMISSION_RULES",
    "REMOTE_STATUS_MAP",
    "SUBMISSION_INVOICE_STATUS",
    "REVIEW_SORT_FIELDS",
    "configure_logging",
]
