"""JPEG encode strategies, tried in order until one yields usable bytes.

The first strategy writes straight into a buffer with the optimizer on. The
second builds a ``data:`` URL and reconstructs the binary payload from its
base64 text, using a plain baseline encode. Some images trip the optimizer
("Suspension not allowed here" and friends), so the second path exists to
get *something* out rather than drop the photo.
"""

import base64
import binascii
import io
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from PIL import Image

from ..errors import CompressionFailedError

logger = logging.getLogger("foodreview.media")

JPEG_MAGIC = b"\xff\xd8\xff"
DATA_URL_PREFIX = "data:image/jpeg;base64,"


@dataclass
class EncodeResult:
    strategy: str
    data: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.data)


@dataclass
class LadderResult:
    result: EncodeResult
    fallback_used: bool
    failures: list[EncodeResult] = field(default_factory=list)


def _quality_percent(quality: float) -> int:
    return max(1, min(95, int(round(quality * 100))))


def _checked(strategy: str, data: bytes) -> EncodeResult:
    if not data:
        return EncodeResult(strategy, error="encoder produced no output")
    if not data.startswith(JPEG_MAGIC):
        return EncodeResult(strategy, error="encoder output is not a JPEG")
    return EncodeResult(strategy, data=data)


class PillowBufferEncoder:
    name = "buffer"

    def encode(self, image: Image.Image, quality: float) -> EncodeResult:
        buf = io.BytesIO()
        try:
            image.save(buf, format="JPEG", quality=_quality_percent(quality), optimize=True)
            return _checked(self.name, buf.getvalue())
        except (OSError, ValueError) as e:
            return EncodeResult(self.name, error=str(e))
        finally:
            buf.close()


def to_data_url(image: Image.Image, quality: float) -> str:
    buf = io.BytesIO()
    try:
        image.save(buf, format="JPEG", quality=_quality_percent(quality))
        return DATA_URL_PREFIX + base64.b64encode(buf.getvalue()).decode("ascii")
    finally:
        buf.close()


def from_data_url(url: str) -> bytes:
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise ValueError("not a base64 data URL")
    return base64.b64decode(payload, validate=True)


class DataUrlEncoder:
    name = "data_url"

    def encode(self, image: Image.Image, quality: float) -> EncodeResult:
        try:
            data = from_data_url(to_data_url(image, quality))
        except (OSError, ValueError, binascii.Error) as e:
            return EncodeResult(self.name, error=str(e))
        return _checked(self.name, data)


DEFAULT_STRATEGIES = (PillowBufferEncoder(), DataUrlEncoder())


def encode_with_fallback(
    image: Image.Image,
    quality: float,
    strategies: Sequence = DEFAULT_STRATEGIES,
    on_fallback: Optional[Callable[[EncodeResult], None]] = None,
) -> LadderResult:
    """Try each strategy in order; the first usable output wins.

    ``on_fallback`` is called with the last failure before each strategy after
    the first. Raises CompressionFailedError once the list is exhausted.
    """
    failures: list[EncodeResult] = []
    for index, strategy in enumerate(strategies):
        if index > 0 and on_fallback is not None:
            on_fallback(failures[-1])
        result = strategy.encode(image, quality)
        if result.ok:
            if index > 0:
                logger.info(f"Encoded with fallback strategy '{result.strategy}' after {len(failures)} failure(s)")
            return LadderResult(result=result, fallback_used=index > 0, failures=failures)
        logger.warning(f"Encode strategy '{result.strategy}' failed: {result.error}")
        failures.append(result)

    err = CompressionFailedError()
    err.failures = failures
    raise err
