"""
Pydantic schemas for job endpoints.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from app.models.job import JobStatus, JobType


class JobCreate(BaseModel):
    """Schema for submitting a new job."""
    job_type: JobType = Field(..., description="training, image_generation or video_generation")
    input: Dict[str, Any] = Field(default_factory=dict, description="Provider input (prompt, images zip URL, etc.)")
    model_name: Optional[str] = Field(None, description="Display name for the trained model (training only)")
    trained_model_id: Optional[str] = Field(None, description="Trained model to generate with (image generation only)")


class JobCreateResponse(BaseModel):
    """Schema for job submission response."""
    job_id: str
    status: JobStatus
    cost: int
    remaining_credits: int


class JobResponse(BaseModel):
    """Schema for job status response."""
    id: str
    job_type: JobType
    status: JobStatus
    progress: int
    cost: int
    result_artifacts: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None
    trained_model_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobStatusResponse(JobResponse):
    """Job status after a reconciliation pass."""
    reconcile_outcome: str
    retry_later: bool = False


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
