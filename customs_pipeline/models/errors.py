"""Error types raised by the customs pipeline."""
from typing import Optional


class CustomsPipelineError(Exception):
    """Base class for pipeline errors."""


class NotFoundError(CustomsPipelineError):
    """A referenced line, invoice or submission does not exist (or is not eligible)."""


class InvalidStateError(CustomsPipelineError):
    """The record exists but is not in a state that allows the operation."""


class RemoteServiceError(CustomsPipelineError):
    """A remote service is unconfigured or answered with something unusable."""


class ChannelError(RemoteServiceError):
    """A single delivery channel failed to transmit a declaration."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"Failed to submit via {channel}: {message}")
        self.channel = channel


class SubmissionFailedError(CustomsPipelineError):
    """Neither delivery channel succeeded. A failed submission was recorded."""

    def __init__(self, message: str, api_error: Optional[str] = None,
                 submission_id: Optional[int] = None):
        super().__init__(message)
        self.api_error = api_error
        self.submission_id = submission_id


class SubmissionRecordError(CustomsPipelineError):
    """The declaration was delivered but the submission record could not be written."""

    def __init__(self, message: str, delivery=None):
        super().__init__(message)
        self.delivery = delivery
