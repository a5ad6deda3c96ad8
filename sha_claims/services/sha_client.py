"""
HTTP client for the Social Health Authority (SHA) claims API.

Every call returns a `SubmissionResult` instead of raising on HTTP error
statuses, so callers can log the outcome next to the request they made.
Transport failures (timeouts, refused connections) are retried with
exponential back-off before being reported as a failed result.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from sha_claims.config import settings
from sha_claims.models.schemas import SubmissionResult

logger = logging.getLogger(__name__)

TRANSPORT_FAILURE_STATUS = 503


class SHAClient:
    """Thin synchronous wrapper around the SHA REST endpoints.

    Args:
        base_url:       SHA API root, defaults to ``SHA_API_URL``.
        api_key:        Bearer token, defaults to ``SHA_API_KEY``.
        provider_code:  Facility code sent as ``X-Provider-Code``.
        timeout:        Request timeout in seconds.
        transport:      Optional ``httpx`` transport (tests pass a ``MockTransport``).
        retry_attempts: Attempts per request on transport errors.
        retry_wait:     Multiplier for the exponential back-off, in seconds.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        provider_code: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        retry_attempts: int = 3,
        retry_wait: float = 1.0,
    ) -> None:
        self.base_url = (base_url or settings.sha_api_url).rstrip("/")
        self.provider_code = provider_code or settings.sha_provider_code
        self._http = httpx.Client(
            base_url=self.base_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key if api_key is not None else settings.sha_api_key}",
                "X-Provider-Code": self.provider_code,
            },
            timeout=timeout or settings.sha_timeout,
            transport=transport,
        )
        self._retrying = Retrying(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=retry_wait, min=0, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SHAClient":
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    # ── Transport ────────────────────────────────────────────────────────────

    def _request(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> SubmissionResult:
        kwargs: Dict[str, Any] = {}
        if payload is not None:
            if method == "GET":
                kwargs["params"] = payload
            else:
                kwargs["json"] = payload
        try:
            response = self._retrying(self._http.request, method, endpoint, **kwargs)
        except httpx.TransportError as exc:
            logger.error("SHA API unreachable (%s %s): %s", method, endpoint, exc)
            return SubmissionResult(success=False, status=TRANSPORT_FAILURE_STATUS, error=str(exc))

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text or None

        if response.is_success:
            reference = None
            if isinstance(data, dict):
                reference = data.get("reference") or data.get("claim_reference") or data.get("batch_reference")
            return SubmissionResult(success=True, status=response.status_code, data=data, reference=reference)

        logger.error("SHA API error %s on %s %s: %s", response.status_code, method, endpoint, data)
        return SubmissionResult(success=False, status=response.status_code, error=data)

    # ── Endpoints ────────────────────────────────────────────────────────────

    def submit_claim(self, payload: Dict[str, Any]) -> SubmissionResult:
        return self._request("POST", "/claims/submit", payload)

    def submit_batch(self, payload: Dict[str, Any]) -> SubmissionResult:
        return self._request("POST", "/claims/batch-submit", payload)

    def claim_status(self, sha_reference: str) -> SubmissionResult:
        return self._request("GET", f"/claims/status/{sha_reference}")

    def batch_status(self, sha_batch_reference: str) -> SubmissionResult:
        return self._request("GET", f"/claims/batch-status/{sha_batch_reference}")


def get_sha_client() -> Iterator[SHAClient]:
    """FastAPI dependency yielding a client for the configured SHA endpoint."""
    client = SHAClient()
    try:
        yield client
    finally:
        client.close()
