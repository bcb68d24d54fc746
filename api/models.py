"""API request and response models."""

from pydantic import BaseModel


class ManualRunResponse(BaseModel):
    success: bool = True
    message: str
    item_id: str
    job_id: str
