"""
Data models for customs classification and declaration submission.
These models represent the records the pipeline reads and writes.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from enum import Enum
from decimal import Decimal


class ClassificationMethod(str, Enum):
    """How an invoice line received its HS code."""
    AUTO = "auto"
    MANUAL = "manual"
    FAILED = "failed"


class InvoiceStatus(str, Enum):
    """Invoice status as seen by the customs workflow."""
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    ACCEPTED = "Accepted"


class SubmissionMethod(str, Enum):
    """Channel that delivered (or failed to deliver) a declaration."""
    API = "api"
    SFTP = "sftp"
    FAILED = "failed"


class SubmissionStatus(str, Enum):
    """Lifecycle of a single submission attempt."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


class NotificationType(str, Enum):
    """Notification tags created by the review workflow."""
    CLASSIFICATION_APPROVED = "ClassificationApproved"
    CLASSIFICATION_ADJUSTED = "ClassificationAdjusted"


# ============== Classification Models ==============

class ClassificationResult(BaseModel):
    """Outcome of classifying one item description."""
    description: str = Field(..., description="Description that was classified")
    hs_code: Optional[str] = Field(default=None, description="Suggested HS code")
    confidence: float = Field(default=0.0, ge=0, le=1, description="Model confidence score")
    flagged: bool = Field(default=True, description="Needs human review")
    method: ClassificationMethod = Field(default=ClassificationMethod.AUTO)
    error: Optional[str] = Field(default=None, description="Diagnostic message for failed results")

    @classmethod
    def failed(cls, description: str, error: str) -> "ClassificationResult":
        """Terminal fallback used whenever the remote classifier cannot answer."""
        return cls(
            description=description,
            hs_code=None,
            confidence=0.0,
            flagged=True,
            method=ClassificationMethod.FAILED,
            error=error
        )


# ============== Persisted Records ==============

class User(BaseModel):
    """User referenced by reviews, history and notifications."""
    id: int
    email: str
    full_name: Optional[str] = None


class Invoice(BaseModel):
    """Invoice header owning the classified lines."""
    id: int
    user_id: Optional[int] = None
    supplier: Optional[str] = None
    invoice_date: Optional[date] = None
    total_amount: Optional[Decimal] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InvoiceLine(BaseModel):
    """One purchased item on an invoice."""
    id: int
    invoice_id: int
    description: Optional[str] = None
    quantity: Optional[int] = Field(default=None, gt=0)
    unit_price: Optional[Decimal] = None
    hs_code: Optional[str] = Field(default=None, max_length=10)
    classification_method: Optional[ClassificationMethod] = None
    flagged: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    classification_history: List["ClassificationHistory"] = Field(default=[])


class ClassificationHistory(BaseModel):
    """Append-only audit record of an HS code change."""
    id: int
    invoice_line_id: int
    previous_hs_code: Optional[str] = None
    new_hs_code: Optional[str] = None
    changed_by: Optional[int] = Field(default=None, description="None means automated")
    changed_at: datetime
    comment: Optional[str] = None
    user: Optional[User] = None


class Submission(BaseModel):
    """One attempt to deliver an invoice's declaration to customs."""
    id: int
    invoice_id: int
    method: SubmissionMethod
    status: SubmissionStatus
    response_message: Optional[str] = None
    submitted_at: datetime


class Notification(BaseModel):
    """Notice for the invoice owner about a review action."""
    id: int
    user_id: int
    type: NotificationType
    message: str
    read: bool = False
    created_at: datetime


# ============== Workflow Results ==============

class ReviewOutcome(BaseModel):
    """Result of an approve or adjust action."""
    invoice_line: InvoiceLine
    history: ClassificationHistory
    notification: Optional[Notification] = None


class DeliveryResult(BaseModel):
    """Successful transmission over one channel."""
    method: SubmissionMethod
    response: Dict[str, Any] = Field(default={})
    message: str


class SubmissionOutcome(BaseModel):
    """Result of submitting an invoice's declaration."""
    method: SubmissionMethod
    submission: Submission
    message: str
    invoice_status_synced: bool = True


class SubmissionStatusReport(BaseModel):
    """Current disposition of a submission."""
    submission_id: int
    status: SubmissionStatus
    method: SubmissionMethod
    submitted_at: datetime
    details: Optional[Dict[str, Any]] = None
    refreshed: bool = Field(default=False, description="True when the remote system answered")


InvoiceLine.model_rebuild()
