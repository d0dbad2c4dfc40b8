from datetime import datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field


class ActiveSequence(BaseModel):
    """One running drip sequence on a lead. step_index only ever grows."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    trigger: str
    start_time: datetime
    step_index: int = 0
    completed: bool = False


class Lead(BaseModel):
    id: str | None = None
    phone: str
    name: str = ""
    source: str = "WhatsApp"
    status: str = "nuevo"
    labels: list[str] = Field(default_factory=list)
    active_sequences: list[ActiveSequence] = Field(default_factory=list)
    unread_count: int = 0
    created_at: datetime
    last_message_at: datetime | None = None


class Message(BaseModel):
    id: str | None = None
    content: str = ""
    media_type: str | None = None  # text, image, pdf, audio, video
    media_url: str | None = None
    sender: Literal["lead", "business", "system"]
    timestamp: datetime
