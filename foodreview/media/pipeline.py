"""Image ingestion: validate, preview and compress a user-selected photo.

Per file the pipeline walks:

    IDLE -> VALIDATING -> (REJECTED | PREVIEWING) -> PREVIEWED -> COMPRESSING
         -> (COMPRESSED_SMALL | COMPRESSION_FAILED
             | FALLBACK_ENCODING -> (FALLBACK_SUCCEEDED | FALLBACK_FAILED))

FALLBACK_ENCODING is entered as soon as the primary encode strategy fails;
COMPRESSION_FAILED is terminal (unreadable input, decode timeout, over budget).

Decoding and encoding are CPU bound, so they run in a worker thread and are
bounded by ``decode_timeout_s``. Every Pillow image opened along the way is
closed through an ExitStack, whatever the exit path.
"""

import asyncio
import io
import logging
import mimetypes
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from PIL import Image, ImageOps

from ..core.device import CompressionConfig, DeviceClass, IngestionLimits, detect_device_class
from ..errors import (
    CompressionFailedError,
    DecodeTimeoutError,
    FileReadTimeoutError,
    FileTooLargeError,
    MediaError,
    UnsupportedMediaTypeError,
)
from ..settings import settings
from .encoders import DEFAULT_STRATEGIES, encode_with_fallback

logger = logging.getLogger("foodreview.media")


class IngestState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    PREVIEWING = "previewing"
    PREVIEWED = "previewed"
    COMPRESSING = "compressing"
    COMPRESSED_SMALL = "compressed_small"
    COMPRESSION_FAILED = "compression_failed"
    FALLBACK_ENCODING = "fallback_encoding"
    FALLBACK_SUCCEEDED = "fallback_succeeded"
    FALLBACK_FAILED = "fallback_failed"


@dataclass(frozen=True)
class SelectedFile:
    name: str
    media_type: Optional[str]
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    async def from_path(cls, path, timeout_s: Optional[float] = None) -> "SelectedFile":
        path = Path(path)
        timeout_s = timeout_s if timeout_s is not None else settings.file_read_timeout_s
        try:
            data = await asyncio.wait_for(asyncio.to_thread(path.read_bytes), timeout=timeout_s)
        except asyncio.TimeoutError:
            raise FileReadTimeoutError()
        media_type, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, media_type=media_type, data=data)


@dataclass(frozen=True)
class Preview:
    data: bytes
    media_type: Optional[str]
    width: Optional[int] = None
    height: Optional[int] = None
    degraded: bool = False


@dataclass(frozen=True)
class Artifact:
    filename: str
    media_type: str
    data: bytes
    width: Optional[int] = None
    height: Optional[int] = None
    quality: Optional[float] = None
    compressed: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class _Encoded:
    data: bytes
    width: int
    height: int
    quality: float
    fallback_used: bool


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale (width, height) down, preserving aspect ratio, so both fit the bounds."""
    if width <= max_width and height <= max_height:
        return width, height
    ratio = min(max_width / width, max_height / height)
    return max(1, int(width * ratio)), max(1, int(height * ratio))


def jpeg_filename(name: str) -> str:
    stem = Path(name).stem or "image"
    return f"{stem}.jpg"


def _open(stack: ExitStack, data: bytes, target: tuple[int, int]) -> Image.Image:
    src = stack.enter_context(Image.open(io.BytesIO(data)))
    # JPEG only: lets libjpeg decode at a reduced scale instead of full size
    src.draft("RGB", target)
    src.load()
    img = ImageOps.exif_transpose(src)
    if img is not src:
        stack.callback(img.close)
    if img.mode != "RGB":
        if img.mode in ("RGBA", "LA", "P"):
            rgba = img.convert("RGBA")
            stack.callback(rgba.close)
            flat = Image.new("RGB", rgba.size, (255, 255, 255))
            flat.paste(rgba, mask=rgba.getchannel("A"))
        else:
            flat = img.convert("RGB")
        stack.callback(flat.close)
        img = flat
    return img


def _render_preview(data: bytes, edge: int) -> Preview:
    with ExitStack() as stack:
        img = _open(stack, data, (edge, edge))
        size = fit_within(img.width, img.height, edge, edge)
        thumb = img.resize(size, Image.Resampling.LANCZOS)
        stack.callback(thumb.close)
        buf = stack.enter_context(io.BytesIO())
        thumb.save(buf, format="JPEG", quality=70)
        return Preview(data=buf.getvalue(), media_type="image/jpeg", width=thumb.width, height=thumb.height)


def _compress(data: bytes, config: CompressionConfig, strategies: Sequence, on_fallback=None) -> _Encoded:
    with ExitStack() as stack:
        try:
            img = _open(stack, data, (config.max_width, config.max_height))
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise CompressionFailedError(f"Could not read the image ({e}). Try a different image.") from e

        size = fit_within(img.width, img.height, config.max_width, config.max_height)
        if size != img.size:
            resized = img.resize(size, Image.Resampling.LANCZOS)
            stack.callback(resized.close)
            img = resized

        quality = config.quality
        ladder = encode_with_fallback(img, quality, strategies, on_fallback)
        fallback_used = ladder.fallback_used

        if len(ladder.result.data) > config.byte_budget:
            retry_quality = config.retry_quality()
            if retry_quality < quality:
                logger.info(
                    f"{len(ladder.result.data)} bytes over budget {config.byte_budget}, "
                    f"retrying at quality {retry_quality}"
                )
                quality = retry_quality
                ladder = encode_with_fallback(img, quality, strategies, on_fallback)
                fallback_used = fallback_used or ladder.fallback_used

        if len(ladder.result.data) > config.byte_budget:
            raise CompressionFailedError(
                f"Image is still {len(ladder.result.data) // 1024} KB after compression "
                f"(limit {config.byte_budget // 1024} KB). Try a smaller image."
            )

        return _Encoded(
            data=ladder.result.data,
            width=img.width,
            height=img.height,
            quality=quality,
            fallback_used=fallback_used,
        )


class ImagePipeline:
    """Turns one selected file at a time into a preview and an upload artifact."""

    def __init__(
        self,
        device: Optional[DeviceClass] = None,
        compression: Optional[CompressionConfig] = None,
        limits: Optional[IngestionLimits] = None,
        strategies: Optional[Sequence] = None,
        decode_timeout_s: Optional[float] = None,
    ):
        self.device = device or detect_device_class()
        self.compression = compression or CompressionConfig.for_device(self.device)
        self.limits = limits or IngestionLimits.for_device(self.device)
        self.strategies = tuple(strategies) if strategies is not None else DEFAULT_STRATEGIES
        self.decode_timeout_s = decode_timeout_s if decode_timeout_s is not None else settings.decode_timeout_s

        self.state = IngestState.IDLE
        self.file: Optional[SelectedFile] = None
        self.preview: Optional[Preview] = None

    def reset(self) -> None:
        self.state = IngestState.IDLE
        self.file = None
        self.preview = None

    def _reject(self, error: MediaError) -> MediaError:
        self.reset()
        self.state = IngestState.REJECTED
        logger.info(f"Rejected image: {error}")
        return error

    def validate(self, file: SelectedFile) -> None:
        self.reset()
        self.state = IngestState.VALIDATING
        if not file.media_type or not file.media_type.startswith("image/"):
            raise self._reject(UnsupportedMediaTypeError(file.media_type))
        if file.size == 0:
            raise self._reject(CompressionFailedError("The selected file is empty."))
        if file.size > self.limits.max_file_bytes:
            raise self._reject(FileTooLargeError(file.size, self.limits.max_file_bytes))

    def _enter_fallback(self, failure) -> None:
        # Called from the worker thread when the primary encode gives nothing usable
        logger.info(f"Encode strategy '{failure.strategy}' failed, falling back")
        self.state = IngestState.FALLBACK_ENCODING

    async def _run_bounded(self, fn, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.decode_timeout_s)
        except asyncio.TimeoutError:
            raise DecodeTimeoutError()

    async def select(self, file: SelectedFile) -> Preview:
        """Validate the file and build its preview. Preview problems never fail this call."""
        self.validate(file)
        self.file = file
        self.state = IngestState.PREVIEWING
        try:
            preview = await self._run_bounded(_render_preview, file.data, self.limits.preview_edge)
        except (MediaError, OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning(f"Preview failed for {file.name}, using raw bytes: {e}")
            preview = Preview(data=file.data, media_type=file.media_type, degraded=True)
        self.preview = preview
        self.state = IngestState.PREVIEWED
        return preview

    async def compress(self, file: Optional[SelectedFile] = None) -> Artifact:
        if file is not None and file is not self.file:
            await self.select(file)
        file = self.file
        if file is None:
            raise CompressionFailedError("No image selected.")

        self.state = IngestState.COMPRESSING
        budget = self.compression.byte_budget
        if file.size <= budget:
            logger.info(f"{file.name} is {file.size} bytes, under budget {budget}; uploading as-is")
            self.state = IngestState.COMPRESSED_SMALL
            return Artifact(
                filename=file.name,
                media_type=file.media_type or "application/octet-stream",
                data=file.data,
                compressed=False,
            )

        try:
            encoded = await self._run_bounded(
                _compress, file.data, self.compression, self.strategies, self._enter_fallback
            )
        except CompressionFailedError as e:
            # Only the encode ladder attaches its failures
            ladder_exhausted = bool(getattr(e, "failures", None)) and len(self.strategies) > 1
            self.state = IngestState.FALLBACK_FAILED if ladder_exhausted else IngestState.COMPRESSION_FAILED
            raise
        except DecodeTimeoutError:
            self.state = IngestState.COMPRESSION_FAILED
            raise

        if encoded.fallback_used:
            self.state = IngestState.FALLBACK_SUCCEEDED
        else:
            self.state = IngestState.COMPRESSED_SMALL

        logger.info(
            f"Compressed {file.name}: {file.size} -> {len(encoded.data)} bytes, "
            f"{encoded.width}x{encoded.height} q={encoded.quality}"
        )
        return Artifact(
            filename=jpeg_filename(file.name),
            media_type="image/jpeg",
            data=encoded.data,
            width=encoded.width,
            height=encoded.height,
            quality=encoded.quality,
            compressed=True,
        )

    async def ingest(self, file: SelectedFile) -> tuple[Preview, Artifact]:
        preview = await self.select(file)
        artifact = await self.compress()
        return preview, artifact
