"""
Infrastructure layer: supervisor assignment service client with retry logic.
"""
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.domain.exceptions import ExternalServiceError
from app.domain.models import Supervisor
from app.infrastructure.api_constants import APIConstants, SupervisorServiceEndpoints


class AssignmentRequest(BaseModel):
    """Body sent to the assignment service."""
    group_id: str
    cluster_id: str
    candidate_supervisor_ids: List[str]


class AssignmentResponse(BaseModel):
    """Response from the assignment service."""
    supervisor_id: Optional[str] = None


class HttpSupervisorAssigner:
    """
    Client for the external supervisor assignment service.
    Implements retry logic with exponential backoff.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        """Initialize the client with configuration."""
        self.base_url = base_url or settings.supervisor_service_url or ""
        self.api_key = api_key if api_key is not None else settings.supervisor_service_api_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "accept": APIConstants.CONTENT_TYPE_JSON,
            },
            timeout=APIConstants.DEFAULT_TIMEOUT,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "HttpSupervisorAssigner":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @retry(
        stop=stop_after_attempt(settings.max_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_multiplier,
            min=settings.retry_min_wait,
            max=settings.retry_max_wait,
        ),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.RequestError)),
        reraise=True,
    )
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Make an HTTP request with retry logic.

        Server errors (5xx) and transport errors are retried; client
        errors (4xx) fail immediately.

        Raises:
            ExternalServiceError: On a client error
            httpx.HTTPStatusError: On a server error after all retries
            httpx.RequestError: On a transport error after all retries
        """
        try:
            response = await self.client.request(method, endpoint, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                raise
            raise ExternalServiceError(
                f"Supervisor service request failed: {e.response.status_code} - {e.response.text}",
                status_code=e.response.status_code,
            )

    async def assign(
        self, group_id: str, cluster_id: str, candidates: Sequence[Supervisor]
    ) -> Optional[str]:
        """
        Ask the service which supervisor should take a group.

        Args:
            group_id: Group to assign
            cluster_id: Cluster the group belongs to
            candidates: Supervisors the service may choose from

        Returns:
            Supervisor id, or None when the service picks nobody

        Raises:
            ExternalServiceError: If the service cannot be reached or rejects the request
        """
        body = AssignmentRequest(
            group_id=group_id,
            cluster_id=cluster_id,
            candidate_supervisor_ids=[s.id for s in candidates],
        )
        try:
            data = await self._make_request(
                "POST",
                SupervisorServiceEndpoints.ASSIGN,
                json=body.model_dump(),
            )
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"Supervisor service unavailable: {e.response.status_code}",
                status_code=502,
            ) from e
        except httpx.RequestError as e:
            raise ExternalServiceError(f"Supervisor service request error: {str(e)}") from e

        response = AssignmentResponse(**data)
        if response.supervisor_id is not None and response.supervisor_id not in {s.id for s in candidates}:
            raise ExternalServiceError(
                f"Supervisor service returned unknown supervisor {response.supervisor_id}"
            )
        return response.supervisor_id


# Singleton instance
_supervisor_client: Optional[HttpSupervisorAssigner] = None


def get_supervisor_client() -> HttpSupervisorAssigner:
    """
    Get or create the singleton supervisor service client.

    Returns:
        HttpSupervisorAssigner instance
    """
    global _supervisor_client
    if _supervisor_client is None:
        _supervisor_client = HttpSupervisorAssigner()
    return _supervisor_client


async def close_supervisor_client() -> None:
    """Close the singleton client if one was created."""
    global _supervisor_client
    if _supervisor_client is not None:
        await _supervisor_client.close()
        _supervisor_client = None
