"""Chat-completions image generation with key failover."""

from .models import (
    PLATFORM_CONFIGS,
    ImageJob,
    ImageResult,
    JobError,
    OrchestrationResult,
    PlatformConfig,
)
from .orchestrator import ImageGenerationError, ImageOrchestrator, classify_error

__all__ = [
    "PLATFORM_CONFIGS",
    "ImageJob",
    "ImageResult",
    "JobError",
    "OrchestrationResult",
    "PlatformConfig",
    "ImageGenerationError",
    "ImageOrchestrator",
    "classify_error",
]
