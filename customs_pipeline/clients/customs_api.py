"""
ASYCUDA declaration API client (primary submission channel).

Provides:
- Declaration upload (`POST /declarations`)
- Declaration status lookup (`GET /declarations/{id}/status`)
"""
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

import httpx

from ..models.customs import DeliveryResult, SubmissionMethod
from ..models.errors import ChannelError, RemoteServiceError
from ..utils.config import Settings

CHANNEL = "ASYCUDA API"


class CustomsApiClient:
    """Thin async wrapper over the customs authority's HTTP API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.ASYCUDA_API_URL.rstrip("/")
        self.api_key = settings.ASYCUDA_API_KEY
        self.client_id = settings.ASYCUDA_CLIENT_ID
        self.timeout = settings.ASYCUDA_API_TIMEOUT
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        if self.api_key is None or not self.api_key.get_secret_value():
            raise RemoteServiceError("ASYCUDA API key is not configured")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key.get_secret_value()}",
            "X-Client-Id": self.client_id,
        }

    async def submit_declaration(self, declaration_path: str, invoice_id: int) -> DeliveryResult:
        """Upload one rendered declaration. Any failure is raised as ChannelError."""
        try:
            headers = self._headers()
            declaration = await asyncio.to_thread(
                Path(declaration_path).read_text, encoding="utf-8"
            )
            response = await self._client.post(
                f"{self.base_url}/declarations",
                json={
                    "declaration": declaration,
                    "metadata": {
                        "invoiceId": invoice_id,
                        "submittedAt": datetime.now(timezone.utc).isoformat(),
                    },
                },
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, OSError, ValueError, RemoteServiceError) as e:
            raise ChannelError(CHANNEL, str(e)) from e

        return DeliveryResult(
            method=SubmissionMethod.API,
            response=data if isinstance(data, dict) else {"body": data},
            message="Document submitted successfully",
        )

    async def get_declaration_status(self, declaration_id: str) -> Dict[str, Any]:
        """Fetch the current disposition of a declaration."""
        response = await self._client.get(
            f"{self.base_url}/declarations/{declaration_id}/status",
            headers=self._headers(),
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or "status" not in data:
            raise RemoteServiceError("Declaration status response has no status field")
        return data

    async def close(self) -> None:
        await self._client.aclose()
