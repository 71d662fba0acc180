import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..settings import settings

logger = logging.getLogger("foodreview.device")

MOBILE_UA_PATTERN = re.compile(r"Mobi|Android|iPhone|iPad|iPod", re.IGNORECASE)
LOW_MEMORY_GB = 4.0

MB = 1024 * 1024
KB = 1024


class DeviceClass(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


@dataclass(frozen=True)
class CompressionConfig:
    max_width: int
    max_height: int
    quality: float
    byte_budget: int
    min_quality: float
    quality_step: float = 0.2

    def retry_quality(self) -> float:
        return max(round(self.quality - self.quality_step, 2), self.min_quality)

    @classmethod
    def for_device(cls, device: DeviceClass) -> "CompressionConfig":
        if device == DeviceClass.MOBILE:
            return cls(max_width=600, max_height=600, quality=0.6, byte_budget=300 * KB, min_quality=0.3)
        return cls(max_width=800, max_height=800, quality=0.8, byte_budget=500 * KB, min_quality=0.4)


@dataclass(frozen=True)
class IngestionLimits:
    max_file_bytes: int
    preview_edge: int = 400

    @classmethod
    def for_device(cls, device: DeviceClass) -> "IngestionLimits":
        if device == DeviceClass.MOBILE:
            return cls(max_file_bytes=15 * MB)
        return cls(max_file_bytes=25 * MB)


def detect_device_class(
    override: Optional[str] = None,
    user_agent: Optional[str] = None,
    device_memory_gb: Optional[float] = None,
) -> DeviceClass:
    """Pick the device class from explicit config, then UA, then memory."""
    override = override if override is not None else settings.device_class
    if override and override.lower() != "auto":
        try:
            return DeviceClass(override.lower())
        except ValueError:
            logger.warning(f"Unknown device class '{override}', falling back to detection")

    user_agent = user_agent if user_agent is not None else settings.user_agent
    if user_agent and MOBILE_UA_PATTERN.search(user_agent):
        return DeviceClass.MOBILE

    memory = device_memory_gb if device_memory_gb is not None else settings.device_memory_gb
    if memory is not None and memory <= LOW_MEMORY_GB:
        return DeviceClass.MOBILE

    return DeviceClass.DESKTOP
