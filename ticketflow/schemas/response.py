import uuid
from typing import Any, Optional
from pydantic import BaseModel, Field


def _rid():
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Envelope for every successful API response. Errors use the handlers in core.exception_handlers."""
    success: bool = Field(default=True)
    request_id: str = Field(default_factory=_rid)
    data: Optional[Any] = None
