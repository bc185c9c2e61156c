"""
Shared fixtures: a throwaway database, test settings and fake remote services.

Run with: pytest tests/ -v
"""
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from customs_pipeline.database.customs_db import CustomsDatabase
from customs_pipeline.models.customs import DeliveryResult, SubmissionMethod
from customs_pipeline.models.errors import ChannelError
from customs_pipeline.utils.config import Settings


class FakeClassificationApi:
    """Stands in for ClassificationApiClient."""

    def __init__(self, hs_code="610910", confidence=0.85, error=None):
        self.hs_code = hs_code
        self.confidence = confidence
        self.error = error
        self.calls = []

    async def classify(self, description):
        self.calls.append(description)
        if self.error is not None:
            raise self.error
        return {"hs_code": self.hs_code, "confidence": self.confidence}

    async def close(self):
        return None


class FakeApiChannel:
    """Stands in for CustomsApiClient. Fails the first `failures` submissions."""

    def __init__(self, failures=0, declaration_id="DEC-001", status_payload=None, status_error=None):
        self.failures = failures
        self.declaration_id = declaration_id
        self.status_payload = status_payload or {"status": "Pending"}
        self.status_error = status_error
        self.submit_calls = 0
        self.status_calls = []

    async def submit_declaration(self, declaration_path, invoice_id):
        self.submit_calls += 1
        if self.submit_calls <= self.failures:
            raise ChannelError("ASYCUDA API", "503 Service Unavailable")
        return DeliveryResult(
            method=SubmissionMethod.API,
            response={"declarationId": self.declaration_id, "status": "received"},
            message="Document submitted successfully"
        )

    async def get_declaration_status(self, declaration_id):
        self.status_calls.append(declaration_id)
        if self.status_error is not None:
            raise self.status_error
        return dict(self.status_payload)

    async def close(self):
        return None


class FakeSftpChannel:
    """Stands in for SftpUploader."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def upload(self, declaration_path, invoice_id):
        self.calls += 1
        if self.fail:
            raise ChannelError("SFTP", "Connection refused")
        return DeliveryResult(
            method=SubmissionMethod.SFTP,
            response={"remotePath": f"/incoming/invoice_{invoice_id}_1.xml", "timestamp": 1},
            message="Document submitted via SFTP successfully"
        )


async def no_sleep(seconds):
    return None


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_PATH=str(tmp_path / "customs.db"),
        CACHE_BACKEND="memory",
        CLASSIFICATION_API_KEY="test-classification-key",
        ASYCUDA_API_KEY="test-asycuda-key",
        ASYCUDA_API_URL="https://asycuda.test/v1",
        CLASSIFICATION_API_URL="https://classifier.test/v1",
        SUBMISSION_RETRY_DELAY=0,
        SFTP_USERNAME="customs",
        SFTP_PASSWORD="secret",
    )


@pytest.fixture
def db(tmp_path):
    return CustomsDatabase(str(tmp_path / "customs.db"))


@pytest.fixture
def seeded(db):
    """One user, one invoice and two lines: one flagged, one already reviewed."""
    user_id = db.create_user("broker@example.com", "Dana Broker")
    invoice_id = db.create_invoice(
        user_id=user_id,
        supplier="Acme Textiles",
        invoice_date=date(2024, 3, 1),
        total_amount=Decimal("1250.00")
    )
    flagged_line = db.create_line(
        invoice_id, "Red Cotton T-Shirt, Size L", quantity=50,
        unit_price=Decimal("12.50"), hs_code="610910",
        classification_method="auto", flagged=True
    )
    clear_line = db.create_line(
        invoice_id, "Men's denim trousers", quantity=20,
        unit_price=Decimal("30.00"), hs_code="620342",
        classification_method="auto", flagged=False
    )
    return {
        "user_id": user_id,
        "invoice_id": invoice_id,
        "flagged_line": flagged_line,
        "clear_line": clear_line,
    }


@pytest.fixture
def declaration(tmp_path):
    path = tmp_path / "declaration.xml"
    path.write_text("<declaration><invoice>1</invoice></declaration>", encoding="utf-8")
    return str(path)
