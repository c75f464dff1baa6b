"""Video generation providers."""

from .base import VideoProvider, is_rate_limit_error, is_transient_error
from .kie_veo3 import KieVeo3Provider
from .presets import (
    DEFAULT_PROVIDER,
    PRESET_A,
    PRESET_B,
    PROVIDERS,
    build_preset,
    get_provider,
    match_kie_platform,
    match_yunwu_platform,
    resolve_provider_key,
)
from .yunwu_sora2 import YunwuSora2Provider
from .yunwu_veo3 import YunwuVeo3Provider

__all__ = [
    "VideoProvider",
    "KieVeo3Provider",
    "YunwuVeo3Provider",
    "YunwuSora2Provider",
    "is_transient_error",
    "is_rate_limit_error",
    "DEFAULT_PROVIDER",
    "PRESET_A",
    "PRESET_B",
    "PROVIDERS",
    "build_preset",
    "get_provider",
    "match_kie_platform",
    "match_yunwu_platform",
    "resolve_provider_key",
]
