"""Exception types raised across the service."""


class SerenataError(Exception):
    """Base class for all service errors."""


class SendError(SerenataError):
    """The WhatsApp transport rejected or failed a send."""

    def __init__(self, message: str, response: dict | None = None):
        super().__init__(message)
        self.response = response or {}


class GenerationError(SerenataError):
    """Text or music generation failed or returned nothing usable."""


class TranscodeError(SerenataError):
    """ffmpeg exited with a non-zero status."""


class DuplicateLead(SerenataError):
    """A lead with this phone already exists (lost an insert race)."""

    def __init__(self, phone: str):
        super().__init__(f"Lead with phone {phone} already exists")
        self.phone = phone
