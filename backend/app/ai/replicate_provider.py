"""
Replicate provider for LoRA trainings and image/video predictions.
Talks to the Replicate HTTP API with httpx and normalizes every response
before it leaves this module.
"""
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from app.ai.base import ComputeProvider, JobSpec, ModelVersion, ProviderJob
from app.ai.normalize import normalize_job, normalize_versions
from app.config import settings
from app.services.errors import ProviderRequestError, ProviderUnavailableError
from app.utils.logging import log_provider_failure, log_provider_request
from app.utils.metrics import (
    provider_failures_total,
    provider_latency_seconds,
    provider_requests_total,
)

logger = logging.getLogger(__name__)


class ReplicateProvider(ComputeProvider):
    """
    Replicate compute provider.

    Trainings are addressed by /trainings/{id}, predictions by
    /predictions/{id}; callers pass the kind when fetching.
    """

    name = "replicate"

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = api_token if api_token is not None else settings.replicate_api_token
        self.base_url = (base_url or settings.replicate_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        allow_status: tuple = (),
    ) -> httpx.Response:
        """
        Send one request and map failures to provider errors.

        Statuses listed in allow_status are returned to the caller unchanged.
        """
        start_time = time.time()
        provider_requests_total.labels(provider=self.name, operation=operation).inc()

        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            self._record_failure(operation, start_time, f"timeout: {e}")
            raise ProviderUnavailableError(f"Replicate {operation} timed out") from e
        except httpx.HTTPError as e:
            self._record_failure(operation, start_time, str(e))
            raise ProviderUnavailableError(f"Replicate {operation} failed: {e}") from e

        duration = time.time() - start_time
        provider_latency_seconds.labels(provider=self.name, operation=operation).observe(duration)

        status = response.status_code
        if status in allow_status or status < 400:
            log_provider_request(
                logger,
                provider=self.name,
                operation=operation,
                duration_ms=duration * 1000,
                status_code=status,
            )
            return response

        detail = _error_detail(response)
        self._record_failure(operation, start_time, f"HTTP {status}: {detail}")
        if status == 429 or status >= 500:
            raise ProviderUnavailableError(
                f"Replicate {operation} returned {status}: {detail}", status_code=status
            )
        raise ProviderRequestError(
            f"Replicate {operation} rejected with {status}: {detail}", status_code=status
        )

    def _record_failure(self, operation: str, start_time: float, error: str) -> None:
        duration = time.time() - start_time
        provider_failures_total.labels(provider=self.name, operation=operation).inc()
        log_provider_failure(
            logger,
            provider=self.name,
            operation=operation,
            error=error,
            duration_ms=duration * 1000,
        )

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"Replicate {operation} returned invalid JSON") from e

    async def submit(self, spec: JobSpec) -> str:
        if spec.kind == "training":
            if not (spec.model and spec.version and spec.destination):
                raise ValueError("Training requires model, version and destination")
            path = f"/models/{spec.model}/versions/{spec.version}/trainings"
            body: Dict[str, Any] = {"destination": spec.destination, "input": spec.input}
        elif spec.version:
            path = "/predictions"
            body = {"version": spec.version, "input": spec.input}
        elif spec.model:
            path = f"/models/{spec.model}/predictions"
            body = {"input": spec.input}
        else:
            raise ValueError("Prediction requires a model or a version")

        response = await self._request("POST", path, "submit", json=body)
        payload = self._json(response, "submit")
        remote_id = payload.get("id") if isinstance(payload, dict) else None
        if not remote_id:
            raise ProviderUnavailableError("Replicate submit returned no job id")
        return str(remote_id)

    async def fetch(self, remote_id: str, kind: str = "prediction") -> ProviderJob:
        collection = "trainings" if kind == "training" else "predictions"
        response = await self._request("GET", f"/{collection}/{remote_id}", "fetch")
        payload = self._json(response, "fetch")
        if not isinstance(payload, dict):
            raise ProviderUnavailableError("Replicate fetch returned an unexpected body")
        job = normalize_job(payload)
        if not job.remote_id:
            job.remote_id = remote_id
        return job

    async def list_versions(self, model_ref: str) -> List[ModelVersion]:
        response = await self._request("GET", f"/models/{model_ref}/versions", "list_versions")
        return normalize_versions(self._json(response, "list_versions"))

    async def ensure_model(self, model_ref: str, description: str = "") -> None:
        response = await self._request(
            "GET", f"/models/{model_ref}", "ensure_model", allow_status=(404,)
        )
        if response.status_code != 404:
            return

        owner, _, name = model_ref.partition("/")
        response = await self._request(
            "POST",
            "/models",
            "create_model",
            json={
                "owner": owner,
                "name": name,
                "description": description,
                "visibility": "private",
                "hardware": "cpu",
            },
            allow_status=(409,),
        )
        if response.status_code == 409:
            logger.info(f"Destination model already exists: {model_ref}")
        else:
            logger.info(f"Created destination model: {model_ref}")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("title") or body)
    return str(body)[:200]
