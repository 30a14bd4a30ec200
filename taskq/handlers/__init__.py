"""
Task handlers shipped with taskq.
"""

from taskq.config import Settings
from taskq.handlers.builtin import register_builtin_handlers
from taskq.handlers.video import TYPE_VIDEO_COMPRESS, VideoCompressor, new_video_compression_task
from taskq.worker.registry import HandlerRegistry


def build_default_registry(settings: Settings) -> HandlerRegistry:
    """Registry with the built-in handlers and the video compressor."""
    registry = HandlerRegistry()
    register_builtin_handlers(registry)
    registry.register(
        TYPE_VIDEO_COMPRESS,
        VideoCompressor(settings.video_work_dir, ffmpeg_binary=settings.ffmpeg_binary),
    )
    return registry


__all__ = [
    "TYPE_VIDEO_COMPRESS",
    "VideoCompressor",
    "build_default_registry",
    "new_video_compression_task",
]
