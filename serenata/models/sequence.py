from enum import Enum

from pydantic import BaseModel, Field


class StepType(str, Enum):
    TEXT = "text"
    FORM = "form"
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"


class Step(BaseModel):
    type: StepType
    content: str  # template text, or a media URL for audio/image/video
    delay_minutes: float = 0  # measured from the sequence start, not the previous step


class SequenceDefinition(BaseModel):
    trigger: str
    steps: list[Step] = Field(default_factory=list)
