"""HTTP client for the external HS classification model."""
from typing import Dict, Any, Optional

import httpx

from ..models.errors import RemoteServiceError
from ..utils.config import Settings


class ClassificationApiClient:
    """Calls `POST {base}/classify` and returns the suggested code and confidence."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = settings.CLASSIFICATION_API_URL.rstrip("/")
        self.api_key = settings.CLASSIFICATION_API_KEY
        self.timeout = settings.CLASSIFICATION_API_TIMEOUT
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def classify(self, description: str) -> Dict[str, Any]:
        """
        Ask the remote model for a classification.

        Returns:
            {"hs_code": str, "confidence": float}

        Raises:
            RemoteServiceError: key missing or unusable payload
            httpx.HTTPError: transport failure or non-2xx response
        """
        if self.api_key is None or not self.api_key.get_secret_value():
            raise RemoteServiceError("Classification API key is not configured")

        response = await self._client.post(
            f"{self.base_url}/classify",
            json={"description": description},
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key.get_secret_value()}",
            },
        )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteServiceError(f"Classification API returned invalid JSON: {e}") from e

        hs_code = data.get("hsCode", data.get("hs_code"))
        try:
            confidence = float(data.get("confidence"))
        except (TypeError, ValueError):
            raise RemoteServiceError("Classification API response has no numeric confidence")

        if not 0.0 <= confidence <= 1.0:
            raise RemoteServiceError(f"Classification confidence out of range: {confidence}")
        if not hs_code:
            raise RemoteServiceError("Classification API response has no HS code")

        return {"hs_code": str(hs_code), "confidence": confidence}

    async def close(self) -> None:
        await self._client.aclose()
