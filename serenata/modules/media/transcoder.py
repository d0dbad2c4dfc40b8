"""
Media Transcoder: thin async wrapper over the ffmpeg CLI.
Used for WhatsApp-friendly audio (AAC/M4A) and for watermarked song previews.
"""

import asyncio
import logging
from pathlib import Path
from uuid import uuid4

from serenata.config import Settings
from serenata.errors import TranscodeError

logger = logging.getLogger(__name__)

CODEC_CONTAINERS = {
    "aac": ("mp4", ".m4a"),
    "libmp3lame": ("mp3", ".mp3"),
    "libopus": ("ogg", ".ogg"),
}


class MediaTranscoder:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.work_dir = Path(settings.work_dir)

    def _output_path(self, suffix: str) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return self.work_dir / f"{uuid4().hex}{suffix}"

    async def _run(self, cmd: list[str]) -> None:
        logger.info("Running %s", " ".join(cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            error_msg = stderr.decode(errors="replace")[-500:]
            logger.error("ffmpeg error: %s", error_msg)
            raise TranscodeError(f"ffmpeg failed: {error_msg}")

    async def transcode(self, input_path: str | Path, codec: str = "aac") -> Path:
        """Re-encode any input media to an audio-only file in `codec`."""
        fmt, suffix = CODEC_CONTAINERS[codec]
        output = self._output_path(suffix)
        await self._run([
            self.settings.ffmpeg_path, "-y", "-i", str(input_path),
            "-vn", "-c:a", codec, "-f", fmt, str(output),
        ])
        return output

    async def clip(self, input_path: str | Path, start: float, duration: float) -> Path:
        output = self._output_path(".mp3")
        await self._run([
            self.settings.ffmpeg_path, "-y", "-ss", str(start), "-t", str(duration),
            "-i", str(input_path), "-vn", "-c:a", "libmp3lame", str(output),
        ])
        return output

    async def overlay(self, clip_path: str | Path, watermark_path: str | Path, offset_seconds: float = 1) -> Path:
        """Mix the watermark under the clip starting at offset_seconds; output keeps the clip's length."""
        output = self._output_path(".mp3")
        delay_ms = int(offset_seconds * 1000)
        filter_graph = (
            f"[1:a]adelay={delay_ms}|{delay_ms}[wm];"
            "[0:a][wm]amix=inputs=2:duration=first:dropout_transition=0[out]"
        )
        await self._run([
            self.settings.ffmpeg_path, "-y", "-i", str(clip_path), "-i", str(watermark_path),
            "-filter_complex", filter_graph, "-map", "[out]", "-c:a", "libmp3lame", str(output),
        ])
        return output
