"""
Declaration submission and status reconciliation.

Delivery order:
1. ASYCUDA API, up to SUBMISSION_MAX_RETRIES attempts with a fixed delay
2. SFTP upload, exactly once, only after the API budget is exhausted

Every outcome is recorded as a new Submission row. The invoice status is
updated after a successful delivery; if that update fails the StatusReconciler
repairs it later instead of the declaration being sent again.
"""
import asyncio
import json
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..clients.customs_api import CustomsApiClient
from ..clients.sftp_client import SftpUploader
from ..database.customs_db import CustomsDatabase
from ..models.customs import (
    DeliveryResult,
    InvoiceStatus,
    Submission,
    SubmissionMethod,
    SubmissionOutcome,
    SubmissionStatus,
    SubmissionStatusReport,
)
from ..models.errors import (
    InvalidStateError,
    NotFoundError,
    SubmissionFailedError,
    SubmissionRecordError,
)
from ..utils.config import REMOTE_STATUS_MAP, SUBMISSION_INVOICE_STATUS, SUBMISSION_RULES

logger = logging.getLogger(__name__)


class SubmissionOrchestrator:
    """Delivers declarations through the primary and fallback channels."""

    def __init__(self, db: CustomsDatabase, api_channel: CustomsApiClient,
                 sftp_channel: SftpUploader, max_retries: int = 3,
                 retry_delay: float = 5.0, attempt_timeout: float = 30.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.db = db
        self.api_channel = api_channel
        self.sftp_channel = sftp_channel
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    async def submit(self, invoice_id: int, declaration_path: str) -> SubmissionOutcome:
        """
        Deliver a rendered declaration for an invoice.

        The invoice's own status is not checked here: callers must not submit
        invoices that are already Submitted or Accepted.

        Raises:
            ValueError: no declaration path
            SubmissionFailedError: both channels failed (a failed record exists)
            SubmissionRecordError: delivered, but the record could not be written
        """
        if not declaration_path or not str(declaration_path).strip():
            raise ValueError("Declaration path is required")

        try:
            delivery = await self._deliver(invoice_id, str(declaration_path))
        except SubmissionFailedError as e:
            record = await self._record_failure(invoice_id, e)
            e.submission_id = record["id"] if record else None
            raise

        return await self._record_success(invoice_id, delivery)

    async def _deliver(self, invoice_id: int, declaration_path: str) -> DeliveryResult:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            logger.info("Attempting ASYCUDA API submission invoice_id=%s attempt=%s", invoice_id, attempt)
            try:
                return await asyncio.wait_for(
                    self.api_channel.submit_declaration(declaration_path, invoice_id),
                    timeout=self.attempt_timeout
                )
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"ASYCUDA API timed out after {self.attempt_timeout}s")
            except Exception as e:
                last_error = e

            logger.warning(
                "API submission attempt failed invoice_id=%s attempt=%s error=%s",
                invoice_id, attempt, last_error
            )
            if attempt < self.max_retries:
                await self._sleep(self.retry_delay)

        logger.info("Falling back to SFTP submission invoice_id=%s", invoice_id)
        try:
            return await self.sftp_channel.upload(declaration_path, invoice_id)
        except Exception as e:
            logger.error(
                "Both API and SFTP submission methods failed invoice_id=%s api_error=%s sftp_error=%s",
                invoice_id, last_error, e
            )
            raise SubmissionFailedError(
                f"All submission methods failed. Last error: {e}",
                api_error=str(last_error)
            ) from e

    async def _record_failure(self, invoice_id: int,
                              error: SubmissionFailedError) -> Optional[Dict[str, Any]]:
        response = json.dumps({"error": str(error), "api_error": error.api_error})
        try:
            record = await asyncio.to_thread(
                self.db.insert_submission, invoice_id,
                SubmissionMethod.FAILED.value, SubmissionStatus.FAILED.value, response
            )
        except sqlite3.Error as e:
            logger.error("Error creating failed submission record invoice_id=%s: %s", invoice_id, e)
            return None
        logger.info("Failed submission recorded invoice_id=%s submission_id=%s", invoice_id, record["id"])
        return record

    async def _record_success(self, invoice_id: int, delivery: DeliveryResult) -> SubmissionOutcome:
        try:
            record = await asyncio.to_thread(
                self.db.insert_submission, invoice_id, delivery.method.value,
                SubmissionStatus.SUBMITTED.value, json.dumps(delivery.response, default=str)
            )
        except sqlite3.Error as e:
            logger.critical(
                "Declaration delivered but submission record NOT written invoice_id=%s method=%s "
                "response=%s error=%s. Do not resend; record it manually.",
                invoice_id, delivery.method.value, delivery.response, e
            )
            raise SubmissionRecordError(
                f"Declaration for invoice {invoice_id} was delivered via "
                f"{delivery.method.value} but could not be recorded: {e}",
                delivery=delivery
            ) from e

        synced = True
        try:
            await asyncio.to_thread(self.db.update_invoice_status, invoice_id, InvoiceStatus.SUBMITTED.value)
        except (sqlite3.Error, NotFoundError) as e:
            synced = False
            logger.error(
                "Invoice status not updated after delivery invoice_id=%s submission_id=%s error=%s. "
                "Status reconciliation will repair it.",
                invoice_id, record["id"], e
            )

        logger.info(
            "Document submission completed invoice_id=%s submission_id=%s method=%s",
            invoice_id, record["id"], delivery.method.value
        )
        return SubmissionOutcome(
            method=delivery.method,
            submission=Submission(**record),
            message=delivery.message,
            invoice_status_synced=synced
        )

    async def list_submissions(self, invoice_id: int) -> List[Submission]:
        rows = await asyncio.to_thread(self.db.list_submissions, invoice_id)
        return [Submission(**row) for row in rows]

    async def retry(self, invoice_id: int, submission_id: int,
                    declaration_path: str) -> SubmissionOutcome:
        """Resubmit after a failed submission. Creates new submission rows."""
        original = await asyncio.to_thread(self.db.get_submission, submission_id)
        if original is None or original["invoice_id"] != invoice_id:
            raise NotFoundError(f"Submission with ID {submission_id} not found for invoice {invoice_id}")
        if original["status"] not in SUBMISSION_RULES["retryable_submission_statuses"]:
            raise InvalidStateError(
                f"Only failed submissions can be retried. Current status: '{original['status']}'"
            )
        logger.info("Retrying submission invoice_id=%s original_submission_id=%s", invoice_id, submission_id)
        return await self.submit(invoice_id, declaration_path)


class StatusReconciler:
    """
    Refreshes a submission's status from the customs system.

    Never raises for remote or storage problems: the last known status is
    returned instead.
    """

    def __init__(self, db: CustomsDatabase, api: CustomsApiClient, timeout: float = 30.0):
        self.db = db
        self.api = api
        self.timeout = timeout

    async def check_status(self, submission_id: int) -> SubmissionStatusReport:
        submission = await asyncio.to_thread(self.db.get_submission, submission_id)
        if submission is None:
            raise NotFoundError(f"Submission with ID {submission_id} not found")

        declaration_id = self._declaration_id(submission)
        if submission["method"] == SubmissionMethod.API.value and declaration_id:
            try:
                return await self._refresh(submission, declaration_id)
            except Exception as e:
                logger.error(
                    "Error checking submission status with ASYCUDA submission_id=%s: %s",
                    submission_id, e
                )
                # the refresh may have stored a new status before failing
                submission = await self._reload(submission)

        await self._repair_invoice_status(submission, submission["status"])
        return SubmissionStatusReport(
            submission_id=submission["id"],
            status=submission["status"],
            method=submission["method"],
            submitted_at=submission["submitted_at"],
            details=self._stored_details(submission),
            refreshed=False
        )

    async def _refresh(self, submission: Dict[str, Any], declaration_id: str) -> SubmissionStatusReport:
        details = await asyncio.wait_for(
            self.api.get_declaration_status(declaration_id), timeout=self.timeout
        )
        remote_status = str(details["status"])
        status = REMOTE_STATUS_MAP.get(remote_status.lower(), submission["status"])

        # The declaration id must survive so later polls can query again
        stored = {
            **(self._stored_details(submission) or {}),
            "declarationId": declaration_id,
            "lastStatus": details,
        }
        await asyncio.to_thread(
            self.db.update_submission, submission["id"], status, json.dumps(stored, default=str)
        )
        invoice_status = SUBMISSION_INVOICE_STATUS.get(status)
        if invoice_status:
            await asyncio.to_thread(self.db.update_invoice_status, submission["invoice_id"], invoice_status)
        else:
            await self._repair_invoice_status(submission, status)

        logger.info(
            "Submission status updated submission_id=%s remote_status=%s status=%s",
            submission["id"], remote_status, status
        )
        return SubmissionStatusReport(
            submission_id=submission["id"],
            status=status,
            method=submission["method"],
            submitted_at=submission["submitted_at"],
            details=details,
            refreshed=True
        )

    async def _reload(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        try:
            current = await asyncio.to_thread(self.db.get_submission, submission["id"])
        except sqlite3.Error as e:
            logger.error("Could not re-read submission submission_id=%s: %s", submission["id"], e)
            return submission
        return current or submission

    async def _repair_invoice_status(self, submission: Dict[str, Any], status: str) -> None:
        """Move an invoice left behind in Draft after a successful delivery to Submitted."""
        if status == SubmissionStatus.FAILED.value:
            return
        try:
            invoice = await asyncio.to_thread(self.db.get_invoice, submission["invoice_id"])
            if invoice and invoice["status"] in SUBMISSION_RULES["pre_submission_invoice_statuses"]:
                await asyncio.to_thread(
                    self.db.update_invoice_status, submission["invoice_id"], InvoiceStatus.SUBMITTED.value
                )
                logger.warning(
                    "Repaired invoice status invoice_id=%s submission_id=%s %s -> %s",
                    submission["invoice_id"], submission["id"], invoice["status"],
                    InvoiceStatus.SUBMITTED.value
                )
        except (sqlite3.Error, NotFoundError) as e:
            logger.error("Could not repair invoice status invoice_id=%s: %s", submission["invoice_id"], e)

    @staticmethod
    def _stored_details(submission: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            details = json.loads(submission["response_message"] or "null")
        except ValueError:
            return None
        return details if isinstance(details, dict) else None

    @classmethod
    def _declaration_id(cls, submission: Dict[str, Any]) -> Optional[str]:
        details = cls._stored_details(submission) or {}
        declaration_id = details.get("declarationId")
        return str(declaration_id) if declaration_id else None
