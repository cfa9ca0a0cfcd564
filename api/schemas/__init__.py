"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .jobs import CreateJobRequest, CreateJobResponse, JobOptionsIn

__all__ = ["ApiResponse", "CreateJobRequest", "CreateJobResponse", "JobOptionsIn", "ResponseMeta"]
