"""
Base class for asynchronous compute providers.
All providers must implement this interface so the job service can submit
and reconcile jobs without knowing which provider runs them.

Provider responses are loosely typed; providers normalize them into the
dataclasses below so the rest of the core only sees one shape.
"""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ProviderStatus(str, enum.Enum):
    """Normalized provider job status."""
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "unknown"  # Missing or unrecognized; treated as transient


@dataclass
class JobSpec:
    """What to run on the provider."""
    kind: str  # "training" or "prediction"
    input: Dict[str, Any]
    model: Optional[str] = None  # "owner/name"
    version: Optional[str] = None  # version hash
    destination: Optional[str] = None  # "owner/name" of the model a training writes to


@dataclass
class ProviderOutput:
    """Artifact references found in a provider response."""
    weights_url: Optional[str] = None
    model: Optional[str] = None
    version: Optional[str] = None
    media_urls: List[str] = field(default_factory=list)
    raw: Any = None


@dataclass
class ProviderJob:
    """Normalized snapshot of a remote job."""
    remote_id: str
    status: ProviderStatus
    raw_status: Optional[str] = None
    logs: Optional[str] = None
    progress_fraction: Optional[float] = None  # Explicit structured progress in [0, 1]
    output: ProviderOutput = field(default_factory=ProviderOutput)
    error: Optional[str] = None


@dataclass
class ModelVersion:
    """One version of a provider-hosted model."""
    id: str
    created_at: Optional[datetime] = None


class ComputeProvider(ABC):
    """
    Abstract base class for asynchronous compute providers.

    All providers must implement:
    - submit(): Start a training or prediction and return its remote id
    - fetch(): Read the current state of a remote job
    - list_versions(): List versions of a hosted model, newest first
    - ensure_model(): Make sure a destination model exists
    """

    name: str = "provider"

    @abstractmethod
    async def submit(self, spec: JobSpec) -> str:
        """
        Submit a job.

        Returns:
            Provider-assigned remote job id

        Raises:
            ProviderUnavailableError: Network error, timeout, 429 or 5xx
            ProviderRequestError: Provider rejected the request
        """
        pass

    @abstractmethod
    async def fetch(self, remote_id: str, kind: str = "prediction") -> ProviderJob:
        """
        Fetch the current state of a remote job.

        Raises:
            ProviderUnavailableError: Network error, timeout, 429 or 5xx
            ProviderRequestError: Unknown job or rejected request
        """
        pass

    @abstractmethod
    async def list_versions(self, model_ref: str) -> List[ModelVersion]:
        """List versions of a model ("owner/name"), newest first."""
        pass

    @abstractmethod
    async def ensure_model(self, model_ref: str, description: str = "") -> None:
        """Create the model if it does not exist yet."""
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """
        Check if provider is properly configured (API token present, etc.).

        Returns:
            True if provider can be used, False otherwise
        """
        pass
