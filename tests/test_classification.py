"""Tests for HS code classification, bulk runs and persistence."""
import asyncio

import httpx
import pytest

from customs_pipeline.cache.result_cache import InMemoryResultCache, UnavailableResultCache, cache_key
from customs_pipeline.clients.classification_api import ClassificationApiClient
from customs_pipeline.models.customs import ClassificationMethod
from customs_pipeline.models.errors import NotFoundError, RemoteServiceError
from customs_pipeline.services.classification_service import (
    BulkClassifier,
    ClassificationClient,
    ClassificationService,
)

from conftest import FakeClassificationApi

DESCRIPTION = "Red Cotton T-Shirt, Size L"


class SlowApi(FakeClassificationApi):
    async def classify(self, description):
        await asyncio.sleep(1)
        return await super().classify(description)


class ConcurrencyProbe(FakeClassificationApi):
    """Records how many classifications run at the same time."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def classify(self, description):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0)
        self.active -= 1
        return {"hs_code": f"HS-{description}", "confidence": 0.9}


class TestClassificationClient:
    """Tests for single-item classification."""

    @pytest.mark.asyncio
    async def test_confident_result_is_not_flagged(self):
        client = ClassificationClient(FakeClassificationApi(confidence=0.85), InMemoryResultCache())
        result = await client.classify(DESCRIPTION)
        assert result.hs_code == "610910"
        assert result.confidence == 0.85
        assert result.flagged is False
        assert result.method == ClassificationMethod.AUTO

    @pytest.mark.asyncio
    async def test_low_confidence_is_flagged(self):
        client = ClassificationClient(FakeClassificationApi(confidence=0.5), InMemoryResultCache())
        result = await client.classify(DESCRIPTION)
        assert result.hs_code == "610910"
        assert result.flagged is True

    @pytest.mark.asyncio
    async def test_threshold_boundary_is_not_flagged(self):
        client = ClassificationClient(FakeClassificationApi(confidence=0.7), InMemoryResultCache())
        assert (await client.classify(DESCRIPTION)).flagged is False

    @pytest.mark.asyncio
    async def test_remote_error_returns_failed_result(self):
        api = FakeClassificationApi(error=RemoteServiceError("Classification API key is not configured"))
        client = ClassificationClient(api, InMemoryResultCache())
        result = await client.classify(DESCRIPTION)
        assert result.hs_code is None
        assert result.confidence == 0.0
        assert result.flagged is True
        assert result.method == ClassificationMethod.FAILED
        assert "not configured" in result.error

    @pytest.mark.asyncio
    async def test_timeout_returns_failed_result(self):
        client = ClassificationClient(SlowApi(), InMemoryResultCache(), timeout=0.01)
        result = await client.classify(DESCRIPTION)
        assert result.method == ClassificationMethod.FAILED
        assert result.flagged is True

    @pytest.mark.asyncio
    async def test_failed_results_are_not_cached(self):
        cache = InMemoryResultCache()
        client = ClassificationClient(FakeClassificationApi(error=RuntimeError("boom")), cache)
        await client.classify(DESCRIPTION)
        assert await cache.get(cache_key(DESCRIPTION)) is None

    @pytest.mark.asyncio
    async def test_blank_description_rejected(self):
        client = ClassificationClient(FakeClassificationApi(), InMemoryResultCache())
        with pytest.raises(ValueError):
            await client.classify("   ")

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self):
        api = FakeClassificationApi()
        client = ClassificationClient(api, InMemoryResultCache())
        first = await client.classify(DESCRIPTION)
        second = await client.classify(f"  {DESCRIPTION} ")
        assert len(api.calls) == 1
        assert second.hs_code == first.hs_code
        assert second.flagged == first.flagged

    @pytest.mark.asyncio
    async def test_legacy_cache_entry_is_backfilled(self):
        cache = InMemoryResultCache()
        await cache.put(cache_key(DESCRIPTION), {
            "hs_code": "610910",
            "confidence": 0.5,
            "classification_method": "auto",
        })
        client = ClassificationClient(FakeClassificationApi(), cache)
        result = await client.classify(DESCRIPTION)
        assert result.flagged is True
        assert result.method == ClassificationMethod.AUTO

    @pytest.mark.asyncio
    async def test_works_without_cache(self):
        api = FakeClassificationApi()
        client = ClassificationClient(api, UnavailableResultCache())
        await client.classify(DESCRIPTION)
        await client.classify(DESCRIPTION)
        assert len(api.calls) == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        client = ClassificationClient(FakeClassificationApi(), InMemoryResultCache())
        await client.classify(DESCRIPTION)
        assert await client.clear_cache(DESCRIPTION) is True
        assert await client.clear_cache(DESCRIPTION) is False


class TestClassificationApiClient:
    """Tests for the HTTP transport."""

    @pytest.mark.asyncio
    async def test_parses_camel_case_response(self, settings):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"hsCode": "610910", "confidence": 0.85})

        api = ClassificationApiClient(settings, transport=httpx.MockTransport(handler))
        payload = await api.classify(DESCRIPTION)
        await api.close()

        assert payload == {"hs_code": "610910", "confidence": 0.85}
        assert seen["auth"] == "Bearer test-classification-key"
        assert seen["url"] == "https://classifier.test/v1/classify"

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, settings):
        settings.CLASSIFICATION_API_KEY = None
        api = ClassificationApiClient(settings, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        with pytest.raises(RemoteServiceError):
            await api.classify(DESCRIPTION)
        await api.close()

    @pytest.mark.asyncio
    async def test_out_of_range_confidence_raises(self, settings):
        transport = httpx.MockTransport(
            lambda r: httpx.Response(200, json={"hsCode": "610910", "confidence": 1.5})
        )
        api = ClassificationApiClient(settings, transport=transport)
        with pytest.raises(RemoteServiceError):
            await api.classify(DESCRIPTION)
        await api.close()

    @pytest.mark.asyncio
    async def test_server_error_becomes_failed_result(self, settings):
        api = ClassificationApiClient(
            settings, transport=httpx.MockTransport(lambda r: httpx.Response(500))
        )
        client = ClassificationClient(api, InMemoryResultCache())
        result = await client.classify(DESCRIPTION)
        await api.close()
        assert result.method == ClassificationMethod.FAILED


class TestBulkClassifier:
    """Tests for batched classification."""

    @pytest.mark.asyncio
    async def test_preserves_order_and_fields(self):
        probe = ConcurrencyProbe()
        bulk = BulkClassifier(ClassificationClient(probe, InMemoryResultCache()), batch_size=3)
        items = [{"id": i, "description": f"item-{i}", "sku": f"S{i}"} for i in range(7)]

        results = await bulk.bulk_classify(items)

        assert [r["id"] for r in results] == list(range(7))
        assert [r["hs_code"] for r in results] == [f"HS-item-{i}" for i in range(7)]
        assert results[4]["sku"] == "S4"
        assert all(r["classification_method"] == "auto" for r in results)

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_batch_size(self):
        probe = ConcurrencyProbe()
        bulk = BulkClassifier(ClassificationClient(probe, InMemoryResultCache()), batch_size=4)
        await bulk.bulk_classify([{"description": f"item-{i}"} for i in range(10)])
        assert probe.peak <= 4

    @pytest.mark.asyncio
    async def test_blank_item_becomes_failed_entry(self):
        bulk = BulkClassifier(ClassificationClient(FakeClassificationApi(), InMemoryResultCache()))
        results = await bulk.bulk_classify([{"id": 1, "description": ""}, {"id": 2, "description": DESCRIPTION}])
        assert results[0]["hs_code"] is None
        assert results[0]["flagged"] is True
        assert results[0]["classification_method"] == "failed"
        assert results[1]["hs_code"] == "610910"

    @pytest.mark.asyncio
    async def test_non_list_rejected(self):
        bulk = BulkClassifier(ClassificationClient(FakeClassificationApi(), InMemoryResultCache()))
        with pytest.raises(ValueError):
            await bulk.bulk_classify({"description": DESCRIPTION})


class TestClassificationService:
    """Tests for writing classifications onto invoice lines."""

    @pytest.mark.asyncio
    async def test_persist_only_rows_with_id_and_code(self, db, seeded):
        service = ClassificationService(db)
        written = await service.persist_results([
            {"id": seeded["clear_line"], "hs_code": "620343", "confidence": 0.55,
             "flagged": True, "classification_method": "auto"},
            {"id": seeded["flagged_line"], "hs_code": None, "confidence": 0.0,
             "flagged": True, "classification_method": "failed"},
            {"hs_code": "999999", "confidence": 0.9, "flagged": False, "classification_method": "auto"},
        ])

        assert written == 1
        line = db.get_line(seeded["clear_line"])
        assert line["hs_code"] == "620343"
        assert line["flagged"] is True
        assert db.get_line(seeded["flagged_line"])["hs_code"] == "610910"

        history = db.get_line_history(seeded["clear_line"])
        assert len(history) == 1
        assert history[0]["changed_by"] is None
        assert history[0]["previous_hs_code"] == "620342"

    @pytest.mark.asyncio
    async def test_persist_skips_unknown_lines(self, db, seeded):
        written = await ClassificationService(db).persist_results([
            {"id": 9999, "hs_code": "610910", "confidence": 0.9,
             "flagged": False, "classification_method": "auto"},
        ])
        assert written == 0

    @pytest.mark.asyncio
    async def test_manual_classify(self, db, seeded):
        service = ClassificationService(db)
        result = await service.manual_classify(seeded["flagged_line"], "610990", seeded["user_id"])

        line = result["invoice_line"]
        assert line.hs_code == "610990"
        assert line.flagged is False
        assert line.classification_method == ClassificationMethod.MANUAL
        assert result["history"].previous_hs_code == "610910"

        history = await service.get_line_history(seeded["flagged_line"])
        assert history[0]["user"]["email"] == "broker@example.com"

    @pytest.mark.asyncio
    async def test_manual_classify_unknown_line(self, db, seeded):
        with pytest.raises(NotFoundError):
            await ClassificationService(db).manual_classify(9999, "610990", seeded["user_id"])

    @pytest.mark.asyncio
    async def test_history_for_unknown_line(self, db):
        with pytest.raises(NotFoundError):
            await ClassificationService(db).get_line_history(9999)
