"""Data models for customs classification and submission."""

from .customs import (
    ClassificationMethod,
    InvoiceStatus,
    SubmissionMethod,
    SubmissionStatus,
    NotificationType,
    ClassificationResult,
    User,
    Invoice,
    InvoiceLine,
    ClassificationHistory,
    Submission,
    Notification,
    ReviewOutcome,
    DeliveryResult,
    SubmissionOutcome,
    SubmissionStatusReport,
)
from .errors import (
    CustomsPipelineError,
    NotFoundError,
    InvalidStateError,
    RemoteServiceError,
    ChannelError,
    SubmissionFailedError,
    SubmissionRecordError,
)

__all__ = [
    "ClassificationMethod",
    "InvoiceStatus",
    "SubmissionMethod",
    "SubmissionStatus",
    "NotificationType",
    "ClassificationResult",
    "User",
    "Invoice",
    "InvoiceLine",
    "ClassificationHistory",
    "Submission",
    "Notification",
    "ReviewOutcome",
    "DeliveryResult",
    "SubmissionOutcome",
    "SubmissionStatusReport",
    "CustomsPipelineError",
    "NotFoundError",
    "InvalidStateError",
    "RemoteServiceError",
    "ChannelError",
    "SubmissionFailedError",
    "SubmissionRecordError",
]
