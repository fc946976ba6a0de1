"""
Reasoning service API client.

Handles HTTP communication with a remote failure-diagnosis service that
explains why a learner missed a question.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from varc_analytics.core.errors import DiagnosticServiceError


class ReasoningServiceClient:
    """HTTP client for the remote diagnosis service."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 2,
    ):
        """
        Initialize the client.

        Args:
            api_url: Base URL of the diagnosis service
            api_key: Optional bearer token
            timeout_seconds: Per-request timeout
            retry_attempts: Attempts per call (timeouts, 5xx and transport errors retry)
        """
        self.api_url = api_url.rstrip("/")
        self.retry_attempts = max(1, retry_attempts)
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def diagnose(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST attempts to ``/diagnose`` and return the decoded JSON body.

        Raises:
            DiagnosticServiceError: On 4xx, on a non-JSON body, or once retries are exhausted
        """
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(f"{self.api_url}/diagnose", json=payload)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(f"Reasoning service timeout on attempt {attempt + 1}/{self.retry_attempts}")

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    # Don't retry on 4xx client errors
                    raise DiagnosticServiceError(
                        f"Reasoning service rejected request: {e.response.status_code}"
                    ) from e
                logger.warning(
                    f"Reasoning service error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}"
                )

            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    f"Reasoning service request error on attempt {attempt + 1}/{self.retry_attempts}: {e}"
                )

            except ValueError as e:
                raise DiagnosticServiceError(f"Reasoning service returned non-JSON body: {e}") from e

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(2 ** attempt)  # Exponential backoff: 1s, 2s, 4s

        raise DiagnosticServiceError(
            f"Reasoning service failed after {self.retry_attempts} attempts: {last_error}"
        )
