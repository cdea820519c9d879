"""
Normalization of raw Replicate payloads.
Fields may be strings, objects, lists or absent depending on job type and
model version; every shape check lives here.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from app.ai.base import ModelVersion, ProviderJob, ProviderOutput, ProviderStatus

_STATUS_MAP = {
    "starting": ProviderStatus.STARTING,
    "processing": ProviderStatus.PROCESSING,
    "succeeded": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "canceled": ProviderStatus.CANCELED,
    "cancelled": ProviderStatus.CANCELED,
}

_PROGRESS_KEYS = ("progress", "percentage", "fraction_complete")


def normalize_status(raw: Any) -> ProviderStatus:
    if not isinstance(raw, str):
        return ProviderStatus.UNKNOWN
    return _STATUS_MAP.get(raw.strip().lower(), ProviderStatus.UNKNOWN)


def is_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("https://", "http://"))


def split_version_ref(ref: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a version reference into (model, version hash).

    "owner/model:hash" -> ("owner/model", "hash")
    "hash"             -> (None, "hash")
    """
    if not ref or not isinstance(ref, str):
        return None, None
    if ":" in ref:
        model, _, version = ref.rpartition(":")
        return (model or None), (version or None)
    if "/" in ref:
        return ref, None
    return None, ref


def extract_progress_fraction(metrics: Any) -> Optional[float]:
    """Explicit fractional progress from a metrics object, if present and sane."""
    if not isinstance(metrics, dict):
        return None
    for key in _PROGRESS_KEYS:
        value = metrics.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if 0.0 <= value <= 1.0:
            return float(value)
    return None


def normalize_output(raw: Any) -> ProviderOutput:
    output = ProviderOutput(raw=raw)
    if raw is None:
        return output

    if isinstance(raw, str):
        if is_url(raw):
            output.media_urls.append(raw)
        return output

    if isinstance(raw, list):
        output.media_urls.extend(item for item in raw if is_url(item))
        return output

    if isinstance(raw, dict):
        weights = raw.get("weights")
        if is_url(weights):
            output.weights_url = weights

        version = raw.get("version")
        if isinstance(version, str) and version:
            output.version = version

        model = raw.get("model")
        if isinstance(model, dict):
            # Some payloads nest {"owner": ..., "name": ...}
            owner, name = model.get("owner"), model.get("name")
            model = f"{owner}/{name}" if owner and name else None
        if isinstance(model, str) and model:
            output.model = model

        for key in ("output", "image", "video", "images", "videos"):
            value = raw.get(key)
            if is_url(value):
                output.media_urls.append(value)
            elif isinstance(value, list):
                output.media_urls.extend(item for item in value if is_url(item))

    return output


def normalize_error(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return str(raw.get("detail") or raw.get("message") or raw)
    return str(raw)


def normalize_job(payload: Dict[str, Any]) -> ProviderJob:
    """Turn a Replicate prediction/training payload into a ProviderJob."""
    raw_status = payload.get("status")
    logs = payload.get("logs")
    return ProviderJob(
        remote_id=str(payload.get("id") or ""),
        status=normalize_status(raw_status),
        raw_status=raw_status if isinstance(raw_status, str) else None,
        logs=logs if isinstance(logs, str) else None,
        progress_fraction=extract_progress_fraction(payload.get("metrics")),
        output=normalize_output(payload.get("output")),
        error=normalize_error(payload.get("error")),
    )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_versions(payload: Any) -> List[ModelVersion]:
    """Versions from a list response, newest first."""
    results = payload.get("results") if isinstance(payload, dict) else payload
    if not isinstance(results, list):
        return []

    versions = [
        ModelVersion(id=str(item["id"]), created_at=_parse_datetime(item.get("created_at")))
        for item in results
        if isinstance(item, dict) and item.get("id")
    ]
    if all(v.created_at is not None for v in versions):
        versions.sort(key=lambda v: v.created_at, reverse=True)
    return versions
