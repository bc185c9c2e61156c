"""
Review workflow for flagged classifications.

A flagged line is reviewed by a person who either approves the suggested
HS code or adjusts it. Each action clears the flag, appends an audit record
and notifies the invoice owner in a single transaction.
"""
import asyncio
import logging
import math
from datetime import datetime, date, time
from typing import Dict, Any, List, Optional

from ..database.customs_db import CustomsDatabase
from ..models.customs import (
    ClassificationHistory,
    ClassificationMethod,
    InvoiceLine,
    Notification,
    NotificationType,
    ReviewOutcome,
)
from ..models.errors import CustomsPipelineError, InvalidStateError, NotFoundError
from ..utils.config import REVIEW_SORT_FIELDS

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_COMMENT = "Approved without changes"


def _pagination(total: int, limit: int, offset: int) -> Dict[str, int]:
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "pages": math.ceil(total / limit) if limit else 0,
        "current_page": offset // limit + 1,
    }


def _check_page(limit: int, offset: int) -> None:
    if limit < 1:
        raise ValueError("limit must be at least 1")
    if offset < 0:
        raise ValueError("offset must not be negative")


class ReviewWorkflow:
    """
    State machine for flagged invoice lines.

    States: Unflagged -> Flagged -> Unflagged (after review).
    - approve: Flagged only; keeps the code
    - adjust: any state; replaces the code and marks it manual
    """

    def __init__(self, db: CustomsDatabase):
        self.db = db

    # ============== Actions ==============

    async def approve(self, line_id: int, user_id: int,
                      comment: Optional[str] = None) -> ReviewOutcome:
        """Approve the current HS code of a flagged line."""
        try:
            outcome = await asyncio.to_thread(self._approve, line_id, user_id, comment)
        except CustomsPipelineError as e:
            logger.warning("Approve rejected line_id=%s user_id=%s: %s", line_id, user_id, e)
            raise
        except Exception:
            logger.exception("Error approving HS code line_id=%s user_id=%s", line_id, user_id)
            raise

        logger.info(
            "Approved HS code for flagged item line_id=%s user_id=%s hs_code=%s",
            line_id, user_id, outcome.invoice_line.hs_code
        )
        return outcome

    def _approve(self, line_id: int, user_id: int, comment: Optional[str]) -> ReviewOutcome:
        with self.db.transaction() as conn:
            line = self.db.fetch_line(conn, line_id)
            if line is None:
                raise NotFoundError(f"Invoice line with ID {line_id} not found")
            if not line["flagged"]:
                raise InvalidStateError(f"Invoice line with ID {line_id} is not flagged for review")

            self.db.set_line_flag(conn, line_id, False)
            history = self.db.insert_history(
                conn, line_id, line["hs_code"], line["hs_code"], user_id,
                comment or DEFAULT_APPROVAL_COMMENT
            )
            notification = self._notify_owner(
                conn, line, NotificationType.CLASSIFICATION_APPROVED,
                f'HS code {line["hs_code"]} for item "{line["description"]}" has been approved.'
            )

        return self._outcome(line_id, history, notification)

    async def adjust(self, line_id: int, new_hs_code: str, user_id: int,
                     comment: Optional[str] = None) -> ReviewOutcome:
        """Replace a line's HS code. Allowed whether or not the line is flagged."""
        if not isinstance(new_hs_code, str) or not new_hs_code.strip():
            raise ValueError("New HS code is required")
        new_hs_code = new_hs_code.strip()

        try:
            outcome = await asyncio.to_thread(self._adjust, line_id, new_hs_code, user_id, comment)
        except CustomsPipelineError as e:
            logger.warning("Adjust rejected line_id=%s user_id=%s: %s", line_id, user_id, e)
            raise
        except Exception:
            logger.exception(
                "Error adjusting HS code line_id=%s new_hs_code=%s user_id=%s",
                line_id, new_hs_code, user_id
            )
            raise

        logger.info(
            "Adjusted HS code line_id=%s user_id=%s previous=%s new=%s",
            line_id, user_id, outcome.history.previous_hs_code, new_hs_code
        )
        return outcome

    def _adjust(self, line_id: int, new_hs_code: str, user_id: int,
                comment: Optional[str]) -> ReviewOutcome:
        with self.db.transaction() as conn:
            line = self.db.fetch_line(conn, line_id)
            if line is None:
                raise NotFoundError(f"Invoice line with ID {line_id} not found")

            previous = line["hs_code"]
            self.db.update_line_classification(
                conn, line_id, new_hs_code, ClassificationMethod.MANUAL.value, False
            )
            history = self.db.insert_history(
                conn, line_id, previous, new_hs_code, user_id,
                comment or f"Adjusted HS code from {previous} to {new_hs_code}"
            )
            notification = self._notify_owner(
                conn, line, NotificationType.CLASSIFICATION_ADJUSTED,
                f'HS code for item "{line["description"]}" has been adjusted '
                f'from {previous} to {new_hs_code}.'
            )

        return self._outcome(line_id, history, notification)

    def _notify_owner(self, conn, line: Dict[str, Any], notification_type: NotificationType,
                      message: str) -> Optional[Dict[str, Any]]:
        invoice = self.db.fetch_invoice(conn, line["invoice_id"])
        if not invoice or not invoice.get("user_id"):
            return None
        return self.db.insert_notification(conn, invoice["user_id"], notification_type.value, message)

    def _outcome(self, line_id: int, history: Dict[str, Any],
                 notification: Optional[Dict[str, Any]]) -> ReviewOutcome:
        line = self.db.get_line(line_id)
        line["classification_history"] = self.db.get_line_history(line_id)
        return ReviewOutcome(
            invoice_line=InvoiceLine(**line),
            history=ClassificationHistory(**history),
            notification=Notification(**notification) if notification else None
        )

    # ============== Queries ==============

    async def get_flagged_items(self, limit: int = 10, offset: int = 0,
                                sort_by: str = "created_at",
                                sort_order: str = "desc") -> Dict[str, Any]:
        """Page through lines that need review."""
        _check_page(limit, offset)
        if sort_by not in REVIEW_SORT_FIELDS:
            raise ValueError(f"Cannot sort by '{sort_by}'. Allowed: {REVIEW_SORT_FIELDS}")
        sort_order = sort_order.lower()
        if sort_order not in ("asc", "desc"):
            raise ValueError("sort_order must be 'asc' or 'desc'")

        total, rows = await asyncio.to_thread(
            self.db.get_flagged_lines, limit, offset, sort_by, sort_order
        )
        logger.info("Retrieved flagged items count=%s limit=%s offset=%s", total, limit, offset)
        return {"items": rows, "pagination": _pagination(total, limit, offset)}

    async def get_flagged_item_by_id(self, line_id: int) -> Dict[str, Any]:
        """
        Get one flagged line with its invoice and history.

        Raises NotFoundError when the line does not exist or is not flagged.
        """
        line = await asyncio.to_thread(self.db.get_flagged_line, line_id)
        if line is None:
            raise NotFoundError(f"Flagged item with ID {line_id} not found")
        line["classification_history"] = await asyncio.to_thread(self.db.get_line_history, line_id)
        return line

    async def get_review_stats(self) -> Dict[str, Any]:
        midnight = datetime.combine(date.today(), time.min)
        total_flagged = await asyncio.to_thread(self.db.count_flagged)
        reviewed_today = await asyncio.to_thread(self.db.count_history_since, midnight)
        pending_by_supplier = await asyncio.to_thread(self.db.count_flagged_by_supplier)
        return {
            "total_flagged": total_flagged,
            "reviewed_today": reviewed_today,
            "pending_by_supplier": pending_by_supplier,
        }

    async def get_review_history(self, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        _check_page(limit, offset)
        total, rows = await asyncio.to_thread(self.db.get_history_page, limit, offset)
        return {"history": rows, "pagination": _pagination(total, limit, offset)}

    async def get_notifications(self, user_id: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.db.get_notifications, user_id)
