"""
Video compression handler.

Downloads a video by URL and transcodes it to a small MP4 with ffmpeg.

Steps:
    1. Decode the payload ``{"video_url": ...}``      (bad JSON -> permanent)
    2. HEAD the URL and read its Content-Type          (network error -> transient)
    3. Map the content type to a file extension        (unsupported -> permanent)
    4. Stream the body to ``<work_dir>/downloads``     (5xx/408/429 -> transient, other 4xx -> permanent)
    5. Run ffmpeg into ``<work_dir>/compress``         (non-zero exit -> transient)

The handler is idempotent in the sense that matters for redelivery: every
attempt downloads into a per-task input file and writes a new timestamped
output file.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from taskq.exceptions import PermanentExecutionError, TransientExecutionError
from taskq.handlers.builtin import decode_json_payload
from taskq.types.task import TaskContext

logger = logging.getLogger(__name__)

TYPE_VIDEO_COMPRESS = "video:compress"

VIDEO_MAX_RETRIES = 2
VIDEO_TIMEOUT_SECONDS = 20.0

ALLOWED_VIDEO_TYPES: dict[str, str] = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
    "video/x-matroska": ".mkv",
    "video/x-msvideo": ".avi",
}

USER_AGENT = "Mozilla/5.0"

# Retrying these statuses can plausibly succeed
RETRYABLE_STATUSES = frozenset({408, 429})


def new_video_compression_task(video_url: str) -> dict[str, Any]:
    """
    Build the enqueue arguments for a video compression task.

    Usage:
        await producer.enqueue(**new_video_compression_task(url))
    """
    return {
        "task_type": TYPE_VIDEO_COMPRESS,
        "payload": {"video_url": video_url},
        "max_retries": VIDEO_MAX_RETRIES,
        "timeout": VIDEO_TIMEOUT_SECONDS,
    }


def _raise_for_status(response: httpx.Response, what: str) -> None:
    status = response.status_code
    if status == 200:
        return
    message = f"{what}: bad status {status} {response.reason_phrase}"
    if status >= 500 or status in RETRYABLE_STATUSES or status < 400:
        raise TransientExecutionError(message)
    raise PermanentExecutionError(message)


class VideoCompressor:
    """
    Task handler for ``video:compress``.

    Args:
        work_dir: Root for ``downloads/`` and ``compress/``.
        ffmpeg_binary: ffmpeg executable name or path.
        client_factory: Builds the httpx client used for the HEAD request and download.
    """

    def __init__(
        self,
        work_dir: str | Path,
        ffmpeg_binary: str = "ffmpeg",
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.work_dir = Path(work_dir)
        self.ffmpeg_binary = ffmpeg_binary
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(follow_redirects=True, timeout=30.0)
        )

    async def __call__(self, context: TaskContext, payload: bytes) -> None:
        data = decode_json_payload(payload)
        video_url = data.get("video_url")
        if not isinstance(video_url, str) or not video_url:
            raise PermanentExecutionError("payload is missing 'video_url'")

        logger.info(
            "Video compression started",
            extra={"task_id": context.task_id, "video_url": video_url},
        )

        async with self._client_factory() as client:
            content_type = await self.fetch_content_type(client, video_url)

            extension = ALLOWED_VIDEO_TYPES.get(content_type)
            if extension is None:
                raise PermanentExecutionError(f"unsupported content-type: {content_type}")

            input_path = self.work_dir / "downloads" / f"input-{context.task_id}{extension}"
            output_path = (
                self.work_dir
                / "compress"
                / f"super-compressed-{datetime.now().strftime('%Y%m%d%H%M%S')}.mp4"
            )

            logger.info("Downloading video", extra={"path": str(input_path)})
            await self.download(client, video_url, input_path)

        logger.info("Compressing video", extra={"task_id": context.task_id})
        await self.compress(input_path, output_path)

        logger.info(
            "Video compressed successfully",
            extra={"task_id": context.task_id, "output": str(output_path)},
        )

    async def fetch_content_type(self, client: httpx.AsyncClient, url: str) -> str:
        """
        HEAD the URL and return its media type without parameters.
        """
        try:
            response = await client.head(url, headers={"User-Agent": USER_AGENT})
        except httpx.InvalidURL as e:
            raise PermanentExecutionError(f"invalid video URL: {e}") from e
        except httpx.HTTPError as e:
            raise TransientExecutionError(f"content-type request failed: {e}") from e

        content_type = response.headers.get("Content-Type", "")
        if not content_type:
            raise TransientExecutionError("missing Content-Type")
        return content_type.split(";")[0].strip().lower()

    async def download(self, client: httpx.AsyncClient, url: str, out: Path) -> None:
        out.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
                _raise_for_status(response, "download")
                with out.open("wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise TransientExecutionError(f"failed to download video: {e}") from e

    async def compress(self, input_path: Path, output_path: Path) -> None:
        """
        Transcode ``input_path`` to a 640px-wide low bitrate MP4.

        The ffmpeg process is killed if the task is cancelled (timeout or
        shutdown).
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        args = [
            "-y",
            "-i", str(input_path),
            "-vf", "scale=640:-2",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-crf", "35",
            "-b:v", "300k",
            "-c:a", "aac",
            "-b:a", "64k",
            str(output_path),
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_binary,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PermanentExecutionError(f"ffmpeg not found: {self.ffmpeg_binary}") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            tail = stderr.decode("utf-8", "replace").strip().splitlines()[-3:]
            raise TransientExecutionError(
                f"failed to compress video: ffmpeg exited with {process.returncode}: "
                + " | ".join(tail)
            )
