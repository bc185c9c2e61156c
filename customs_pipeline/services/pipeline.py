"""
Customs Pipeline - wiring of storage, cache, remote clients and workflows.

Architecture:
    ClassificationApiClient ─► ClassificationClient ─► BulkClassifier
                                      │
                                 ResultCache
    CustomsDatabase ─► ClassificationService / ReviewWorkflow
    CustomsApiClient + SftpUploader ─► SubmissionOrchestrator
    CustomsApiClient ─► StatusReconciler
"""
import logging
from typing import Optional

from ..cache.result_cache import ResultCache, connect_result_cache
from ..clients.classification_api import ClassificationApiClient
from ..clients.customs_api import CustomsApiClient
from ..clients.sftp_client import SftpUploader
from ..database.customs_db import CustomsDatabase
from ..utils.config import Settings, get_settings
from .classification_service import BulkClassifier, ClassificationClient, ClassificationService
from .review_service import ReviewWorkflow
from .submission_service import StatusReconciler, SubmissionOrchestrator

logger = logging.getLogger(__name__)


class CustomsPipeline:
    """Holds one instance of every component, built from a single Settings object."""

    def __init__(self, settings: Settings, db: CustomsDatabase, cache: ResultCache,
                 classification_api: ClassificationApiClient,
                 customs_api: CustomsApiClient, sftp: SftpUploader):
        self.settings = settings
        self.db = db
        self.cache = cache
        self.classification_api = classification_api
        self.customs_api = customs_api
        self.sftp = sftp

        self.classifier = ClassificationClient(
            classification_api, cache,
            threshold=settings.CONFIDENCE_THRESHOLD,
            timeout=settings.CLASSIFICATION_API_TIMEOUT,
            cache_ttl=settings.CLASSIFICATION_CACHE_TTL
        )
        self.bulk = BulkClassifier(self.classifier, batch_size=settings.CLASSIFICATION_BATCH_SIZE)
        self.classification = ClassificationService(db)
        self.review = ReviewWorkflow(db)
        self.submissions = SubmissionOrchestrator(
            db, customs_api, sftp,
            max_retries=settings.SUBMISSION_MAX_RETRIES,
            retry_delay=settings.SUBMISSION_RETRY_DELAY,
            attempt_timeout=settings.ASYCUDA_API_TIMEOUT
        )
        self.reconciler = StatusReconciler(db, customs_api, timeout=settings.ASYCUDA_API_TIMEOUT)

    async def close(self) -> None:
        await self.classification_api.close()
        await self.customs_api.close()
        await self.cache.close()
        logger.info("Customs pipeline closed")


async def create_pipeline(settings: Optional[Settings] = None) -> CustomsPipeline:
    """Create and return a fully wired pipeline."""
    settings = settings or get_settings()
    pipeline = CustomsPipeline(
        settings=settings,
        db=CustomsDatabase(settings.DATABASE_PATH),
        cache=await connect_result_cache(settings),
        classification_api=ClassificationApiClient(settings),
        customs_api=CustomsApiClient(settings),
        sftp=SftpUploader(settings)
    )
    logger.info(
        "Customs pipeline initialized database=%s cache_available=%s threshold=%s",
        settings.DATABASE_PATH, pipeline.cache.available, settings.CONFIDENCE_THRESHOLD
    )
    return pipeline
