"""
HS code classification.

This module is responsible for:
1. Classifying one item description (cache first, then the remote model)
2. Flagging results whose confidence is below the configured threshold
3. Classifying many descriptions in bounded concurrent batches
4. Writing classifications back onto invoice lines with an audit trail
"""
import asyncio
import logging
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, ValidationError

from ..cache.result_cache import ResultCache, cache_key, normalize_description
from ..clients.classification_api import ClassificationApiClient
from ..database.customs_db import CustomsDatabase
from ..models.customs import (
    ClassificationHistory,
    ClassificationMethod,
    ClassificationResult,
    InvoiceLine,
)
from ..models.errors import NotFoundError

logger = logging.getLogger(__name__)


class ClassificationClient:
    """
    Classifies a single description.

    Remote failures never escape: a timeout, HTTP error or missing API key
    produces a "failed" result that is flagged for review. Only an empty
    description is rejected with ValueError.
    """

    def __init__(self, api: ClassificationApiClient, cache: ResultCache,
                 threshold: float = 0.7, timeout: float = 10.0,
                 cache_ttl: Optional[int] = None):
        self.api = api
        self.cache = cache
        self.threshold = threshold
        self.timeout = timeout
        self.cache_ttl = cache_ttl

    def is_flagged(self, confidence: float) -> bool:
        return confidence < self.threshold

    async def classify(self, description: str) -> ClassificationResult:
        if not isinstance(description, str) or not description.strip():
            raise ValueError("Product description is required")

        key = cache_key(description)
        cached = await self.cache.get(key)
        if cached is not None:
            result = self._from_cache(description, cached)
            if result is not None:
                logger.info("Classification result found in cache key=%s", key)
                return result

        try:
            payload = await asyncio.wait_for(
                self.api.classify(normalize_description(description)),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Classification API timed out after %ss key=%s", self.timeout, key)
            return ClassificationResult.failed(description, f"Classification timed out after {self.timeout}s")
        except Exception as e:
            logger.error("Classification API error key=%s: %s", key, e)
            return ClassificationResult.failed(description, str(e) or type(e).__name__)

        confidence = payload["confidence"]
        result = ClassificationResult(
            description=description,
            hs_code=payload["hs_code"],
            confidence=confidence,
            flagged=self.is_flagged(confidence),
            method=ClassificationMethod.AUTO
        )
        await self.cache.put(key, result, self.cache_ttl)
        return result

    def _from_cache(self, description: str, payload: Dict[str, Any]) -> Optional[ClassificationResult]:
        """Rebuild a cached result, filling fields that older entries did not store."""
        data = dict(payload)
        data["description"] = description
        if "method" not in data:
            data["method"] = data.pop("classification_method", ClassificationMethod.AUTO.value)
        if "flagged" not in data:
            data["flagged"] = self.is_flagged(float(data.get("confidence") or 0))
        try:
            return ClassificationResult.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed cache entry: %s", e)
            return None

    async def clear_cache(self, description: str) -> bool:
        """Drop the cached classification for a description."""
        if not isinstance(description, str) or not description.strip():
            raise ValueError("Product description is required")
        cleared = await self.cache.delete(cache_key(description))
        logger.info("Classification cache clear key=%s cleared=%s", cache_key(description), cleared)
        return cleared


class BulkClassifier:
    """Runs many classifications in fixed-size concurrent batches."""

    def __init__(self, client: ClassificationClient, batch_size: int = 10):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.batch_size = batch_size

    @staticmethod
    def _as_dict(item: Any) -> Dict[str, Any]:
        if isinstance(item, BaseModel):
            return item.model_dump()
        if isinstance(item, dict):
            return dict(item)
        return {"description": item}

    async def bulk_classify(self, items: List[Any]) -> List[Dict[str, Any]]:
        """
        Classify items in input order.

        Args:
            items: list of {"id"?: int, "description": str, ...}

        Returns:
            One dict per item: the item's own fields plus hs_code,
            confidence, flagged and classification_method.
        """
        if not isinstance(items, list):
            raise ValueError("Items must be a list")

        results: List[Dict[str, Any]] = []
        for start in range(0, len(items), self.batch_size):
            batch = [self._as_dict(item) for item in items[start:start + self.batch_size]]
            outcomes = await asyncio.gather(
                *(self.client.classify(item.get("description")) for item in batch),
                return_exceptions=True
            )

            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error("Error classifying item in batch id=%s: %s", item.get("id"), outcome)
                    outcome = ClassificationResult.failed(str(item.get("description") or ""), str(outcome))
                elif isinstance(outcome, BaseException):
                    raise outcome

                results.append({
                    **item,
                    "hs_code": outcome.hs_code,
                    "confidence": outcome.confidence,
                    "flagged": outcome.flagged,
                    "classification_method": outcome.method.value,
                })

        logger.info("Bulk classification finished items=%s batch_size=%s", len(items), self.batch_size)
        return results


class ClassificationService:
    """Persists classifications onto invoice lines and exposes their history."""

    def __init__(self, db: CustomsDatabase):
        self.db = db

    async def persist_results(self, results: List[Dict[str, Any]]) -> int:
        """
        Write bulk results back onto their invoice lines.

        Only rows that carry a line id and an HS code are written; rows that
        failed to classify leave the line untouched.
        """
        rows = [row for row in results if row.get("id") is not None and row.get("hs_code")]
        if not rows:
            return 0
        written = await asyncio.to_thread(self._persist, rows)
        logger.info("Persisted classifications lines=%s skipped=%s", written, len(results) - written)
        return written

    def _persist(self, rows: List[Dict[str, Any]]) -> int:
        written = 0
        with self.db.transaction() as conn:
            for row in rows:
                line = self.db.fetch_line(conn, row["id"])
                if line is None:
                    logger.warning("Skipping classification for unknown invoice line id=%s", row["id"])
                    continue

                self.db.update_line_classification(
                    conn, row["id"], row["hs_code"], row["classification_method"], bool(row["flagged"])
                )
                if line["hs_code"] != row["hs_code"]:
                    self.db.insert_history(
                        conn, row["id"], line["hs_code"], row["hs_code"], None,
                        f"Automatic classification (confidence {row['confidence']:.2f})"
                    )
                written += 1
        return written

    async def manual_classify(self, line_id: int, hs_code: str, user_id: int) -> Dict[str, Any]:
        """Override a line's HS code by hand. Clears the review flag."""
        if not isinstance(hs_code, str) or not hs_code.strip():
            raise ValueError("HS code is required")
        hs_code = hs_code.strip()

        line, history = await asyncio.to_thread(self._manual_classify, line_id, hs_code, user_id)
        logger.info(
            "Manual classification completed line_id=%s previous=%s new=%s user_id=%s",
            line_id, history.previous_hs_code, hs_code, user_id
        )
        return {"invoice_line": line, "history": history}

    def _manual_classify(self, line_id: int, hs_code: str, user_id: int):
        with self.db.transaction() as conn:
            line = self.db.fetch_line(conn, line_id)
            if line is None:
                raise NotFoundError(f"Invoice line with ID {line_id} not found")

            self.db.update_line_classification(
                conn, line_id, hs_code, ClassificationMethod.MANUAL.value, False
            )
            history = self.db.insert_history(conn, line_id, line["hs_code"], hs_code, user_id)
        return InvoiceLine(**self.db.get_line(line_id)), ClassificationHistory(**history)

    async def get_line_history(self, line_id: int) -> List[Dict[str, Any]]:
        """Classification history for one line, newest first."""
        line = await asyncio.to_thread(self.db.get_line, line_id)
        if line is None:
            raise NotFoundError(f"Invoice line with ID {line_id} not found")
        return await asyncio.to_thread(self.db.get_line_history, line_id)
