"""Classification, review and submission workflows."""

from .classification_service import ClassificationClient, BulkClassifier, ClassificationService
from .review_service import ReviewWorkflow
from .submission_service import SubmissionOrchestrator, StatusReconciler
from .pipeline import CustomsPipeline, create_pipeline

__all__ = [
    "ClassificationClient",
    "BulkClassifier",
    "ClassificationService",
    "ReviewWorkflow",
    "SubmissionOrchestrator",
    "StatusReconciler",
    "CustomsPipeline",
    "create_pipeline",
]
