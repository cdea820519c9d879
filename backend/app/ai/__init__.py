"""
Compute provider abstraction module.
Provides a unified interface for asynchronous training and generation providers.
"""
from app.ai.factory import get_compute_provider, get_provider_name
from app.ai.base import ComputeProvider, JobSpec, ModelVersion, ProviderJob, ProviderOutput, ProviderStatus

__all__ = [
    "get_compute_provider",
    "get_provider_name",
    "ComputeProvider",
    "JobSpec",
    "ModelVersion",
    "ProviderJob",
    "ProviderOutput",
    "ProviderStatus",
]
