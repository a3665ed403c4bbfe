from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class NoticeLevel(str, Enum):
    """Severity of a user-visible notice."""

    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Notice(BaseModel):
    """Transient, dismissible notification surfaced to the user."""

    id: str = Field(..., description="Notice identifier used to dismiss it")
    level: NoticeLevel = Field(..., description="Severity")
    title: str = Field(..., description="Short headline")
    message: Optional[str] = Field(None, description="Details, usually the error message")
    created_at: int = Field(..., description="Epoch milliseconds")
