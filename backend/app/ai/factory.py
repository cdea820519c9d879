"""
Compute provider factory.
Returns the configured provider for job submission and reconciliation.
"""
import logging

from app.ai.base import ComputeProvider
from app.ai.replicate_provider import ReplicateProvider

logger = logging.getLogger(__name__)


def get_compute_provider() -> ComputeProvider:
    """
    Factory function to get the configured compute provider.

    Returns:
        ComputeProvider instance

    Raises:
        ValueError: If the provider API token is not configured
    """
    provider = ReplicateProvider()
    if not provider.is_configured():
        logger.warning("Replicate provider selected but API token not configured")
        raise ValueError("Replicate API token not configured. Set REPLICATE_API_TOKEN environment variable.")
    return provider


def get_provider_name() -> str:
    """Provider name stored alongside jobs and metrics."""
    return ReplicateProvider.name
