from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel

JobKind = Literal["lyrics", "music"]


class LyricsStatus(str, Enum):
    PENDING_LYRICS = "pending_lyrics"
    PENDING_SEND = "pending_send"
    SENT = "sent"
    ERROR = "error"


class MusicStatus(str, Enum):
    PENDING_LYRICS = "pending_lyrics"
    PENDING_PROMPT = "pending_prompt"
    PENDING_GENERATION = "pending_generation"
    GENERATING = "generating"
    PENDING_SEND = "pending_send"
    SENT = "sent"
    ERROR = "error"


# Forward order of the music pipeline; error sits outside it.
MUSIC_FLOW = [
    MusicStatus.PENDING_LYRICS,
    MusicStatus.PENDING_PROMPT,
    MusicStatus.PENDING_GENERATION,
    MusicStatus.GENERATING,
    MusicStatus.PENDING_SEND,
    MusicStatus.SENT,
]


class Job(BaseModel):
    """Fields shared by every job kind: the status cursor plus claim/retry bookkeeping."""
    id: str | None = None
    status: str
    lead_id: str | None = None
    created_at: datetime
    version: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    attempts: int = 0
    next_attempt_at: datetime | None = None
    error_message: str | None = None
    sent_at: datetime | None = None


class LyricsJob(Job):
    status: str = LyricsStatus.PENDING_LYRICS.value
    purpose: str = ""
    subject_name: str = ""
    anecdotes: str = ""
    requester_name: str = ""
    lyrics: str | None = None
    generated_at: datetime | None = None


class MusicJob(Job):
    status: str = MusicStatus.PENDING_LYRICS.value
    purpose: str = ""
    subject_name: str = ""
    anecdotes: str = ""
    artist: str = ""
    genre: str = ""
    voice_type: str = ""
    lyrics: str | None = None
    style_prompt: str | None = None
    task_id: str | None = None
    audio_source_url: str | None = None
    full_track_url: str | None = None
    clip_url: str | None = None
    lead_phone: str | None = None


def is_forward_transition(old: str, new: str) -> bool:
    """True when a music job may move from old to new without going backwards."""
    if old == new:
        return True
    if new == MusicStatus.ERROR.value:
        return old != MusicStatus.SENT.value
    if old == MusicStatus.ERROR.value:
        return False
    order = [s.value for s in MUSIC_FLOW]
    return order.index(new) > order.index(old)
