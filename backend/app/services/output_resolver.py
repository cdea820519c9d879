"""
Output resolution for successful provider jobs.

A successful training response can reference either the trainer template
that ran the job or the user's destination model, under overlapping field
names. The resolver cross-checks every candidate against the known trainer
identifiers and prefers the destination captured at submission time.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.ai.base import ComputeProvider, ProviderOutput
from app.ai.normalize import split_version_ref
from app.config import settings
from app.services.errors import ProviderRequestError, ProviderUnavailableError
from app.utils.logging import log_output_anomaly
from app.utils.metrics import output_anomalies_total

logger = logging.getLogger(__name__)

TRAINER_MODEL_IN_OUTPUT = "trainer_model_in_output"
TRAINER_MODEL_HINT = "trainer_model_hint"
TRAINER_VERSION_LISTED = "trainer_version_listed"
TRAINER_VERSION_IN_OUTPUT = "trainer_version_in_output"
OUTPUT_MODEL_MISMATCH = "output_model_mismatch"
VERSIONS_UNAVAILABLE = "destination_versions_unavailable"


@dataclass
class ResolvedOutput:
    """Artifacts resolved from a provider output, or an unresolved marker."""
    model_id: Optional[str] = None
    version_id: Optional[str] = None
    weights_url: Optional[str] = None
    media_url: Optional[str] = None
    anomalies: List[str] = field(default_factory=list)
    unresolved_reason: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.unresolved_reason is None

    def to_artifacts(self) -> Dict[str, Any]:
        artifacts = {
            "model_id": self.model_id,
            "version_id": self.version_id,
            "weights_url": self.weights_url,
            "media_url": self.media_url,
        }
        return {key: value for key, value in artifacts.items() if value is not None}


class OutputResolver:
    """Resolve destination artifacts without ever persisting trainer references."""

    def __init__(
        self,
        provider: ComputeProvider,
        trainer_model: Optional[str] = None,
        trainer_versions: Optional[List[str]] = None,
        weights_url_template: Optional[str] = None,
    ):
        self.provider = provider
        self.trainer_model = (trainer_model or settings.trainer_model).lower()
        self.trainer_versions = [
            v.lower() for v in (trainer_versions or settings.trainer_versions) if v
        ]
        self.weights_url_template = weights_url_template or settings.weights_url_template

    def is_trainer_model(self, model_ref: Optional[str]) -> bool:
        if not model_ref:
            return False
        model = model_ref.split(":", 1)[0].strip().lower()
        if model == self.trainer_model:
            return True
        name = model.rsplit("/", 1)[-1]
        return name == self.trainer_model.rsplit("/", 1)[-1] or name.endswith("-trainer")

    def is_trainer_version(self, version_id: Optional[str]) -> bool:
        if not version_id:
            return False
        candidate = version_id.strip().lower()
        for known in self.trainer_versions:
            if candidate == known:
                return True
            # Short hashes are prefixes of the full version id
            if len(candidate) >= 8 and len(known) >= 8 and (
                known.startswith(candidate) or candidate.startswith(known)
            ):
                return True
        return False

    def _anomaly(self, result: ResolvedOutput, anomaly: str, job_id: Optional[str], **kwargs) -> None:
        result.anomalies.append(anomaly)
        output_anomalies_total.labels(anomaly=anomaly).inc()
        log_output_anomaly(logger, anomaly, job_id=job_id, **kwargs)

    async def resolve(
        self,
        output: ProviderOutput,
        destination_hint: Optional[str] = None,
        expects_weights: bool = False,
        job_id: Optional[str] = None,
    ) -> ResolvedOutput:
        """
        Resolve model, version and artifact URLs.

        Args:
            output: Normalized provider output
            destination_hint: Destination model captured at submission
            expects_weights: True for trainings (a bare output URL is the weights file)
            job_id: For logging

        Returns:
            ResolvedOutput; unresolved_reason is set when nothing durable was found

        Raises:
            ProviderUnavailableError: Version listing failed transiently and no
                direct weights or media URL was present
        """
        result = ResolvedOutput()

        # Direct artifact references
        result.weights_url = output.weights_url
        if expects_weights:
            if result.weights_url is None and output.media_urls:
                result.weights_url = output.media_urls[0]
        elif output.media_urls:
            result.media_url = output.media_urls[0]

        # Model reference: submission-time hint beats the echoed output value
        output_model, output_version = split_version_ref(output.version)
        echoed_model = output.model or output_model
        if echoed_model and self.is_trainer_model(echoed_model):
            self._anomaly(result, TRAINER_MODEL_IN_OUTPUT, job_id, model=echoed_model)
            echoed_model = None

        hint = destination_hint
        if hint and self.is_trainer_model(hint):
            self._anomaly(result, TRAINER_MODEL_HINT, job_id, model=hint)
            hint = None

        if hint:
            result.model_id = hint
            if echoed_model and echoed_model.lower() != hint.lower():
                self._anomaly(
                    result, OUTPUT_MODEL_MISMATCH, job_id, model=echoed_model, destination=hint
                )
        else:
            result.model_id = echoed_model

        # Version: latest listed version of the destination, then the echoed version
        if result.model_id:
            result.version_id = await self._latest_destination_version(result, job_id)

        if result.version_id is None and output_version:
            model_matches = (
                output_model is None
                or result.model_id is None
                or output_model.lower() == result.model_id.lower()
            )
            if self.is_trainer_version(output_version):
                self._anomaly(result, TRAINER_VERSION_IN_OUTPUT, job_id, version=output_version)
            elif model_matches and not (output_model and self.is_trainer_model(output_model)):
                result.version_id = output_version

        if result.weights_url is None and result.version_id and expects_weights:
            result.weights_url = self.weights_url_template.format(version_id=result.version_id)

        if not (result.weights_url or result.media_url or result.version_id):
            if result.anomalies:
                result.unresolved_reason = (
                    "Only trainer references were found in the provider output: "
                    + ", ".join(result.anomalies)
                )
            else:
                result.unresolved_reason = "No destination model, version or artifact URL could be established"
        return result

    async def _latest_destination_version(
        self, result: ResolvedOutput, job_id: Optional[str]
    ) -> Optional[str]:
        try:
            versions = await self.provider.list_versions(result.model_id)
        except ProviderRequestError as e:
            self._anomaly(result, VERSIONS_UNAVAILABLE, job_id, model=result.model_id, error=str(e))
            return None
        except ProviderUnavailableError as e:
            # A direct artifact URL is enough to complete without the listing
            if not (result.weights_url or result.media_url):
                raise
            self._anomaly(result, VERSIONS_UNAVAILABLE, job_id, model=result.model_id, error=str(e))
            return None

        if not versions:
            return None
        latest = versions[0].id
        if self.is_trainer_version(latest):
            self._anomaly(result, TRAINER_VERSION_LISTED, job_id, version=latest, model=result.model_id)
            return None
        return latest
