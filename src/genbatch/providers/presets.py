"""
Workflow presets and the provider registry.

A preset is a plain dict of defaults that rides along in ``SubmitPayload.extra``:
- Workflow A: vertical 9:16, prompt translation on, no watermark
- Workflow B: landscape 16:9, translation off, brand watermark, model fallback

Provider keys select the vendor implementation, the model variant, the key
pool platform filter and the submission batch pacing.
"""

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import httpx

from .base import VideoProvider
from .kie_veo3 import KieVeo3Provider
from .yunwu_sora2 import YunwuSora2Provider
from .yunwu_veo3 import YunwuVeo3Provider

PRESET_A: Dict[str, Any] = {
    "model": "veo3_fast",
    "default_ratio": "9:16",
    "default_translate": "auto",
    "default_watermark": "",
    "default_callback": "",
    "enable_fallback": False,
}

PRESET_B: Dict[str, Any] = {
    "model": "veo3_fast",
    "default_ratio": "16:9",
    "default_translate": "off",
    "default_watermark": "@brandB",
    "default_callback": "",
    "enable_fallback": True,
}

WORKFLOWS = {"A": PRESET_A, "B": PRESET_B}

KIE_PLATFORMS = ("kie.ai", "kie", "kei", "kieai")
YUNWU_MARKERS = ("云雾", "yunwu", "yun-wu")


def match_kie_platform(platform: str) -> bool:
    return platform in KIE_PLATFORMS


def match_yunwu_platform(platform: str) -> bool:
    return any(marker in platform for marker in YUNWU_MARKERS)


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a selectable video provider."""

    key: str
    family: str  # "kie" or "yunwu"
    factory: Callable[..., VideoProvider]
    preset_overrides: Tuple[Tuple[str, Any], ...]
    platform_matcher: Callable[[str], bool]
    env_var_names: Sequence[str]
    batch_delay_s: float
    missing_key_message: str


_KIE_MISSING = "No Kie.ai API key configured"
_YUNWU_MISSING = "No Yunwu API key configured"

PROVIDERS: Dict[str, ProviderSpec] = {
    "kie-veo3-fast": ProviderSpec(
        key="kie-veo3-fast",
        family="kie",
        factory=KieVeo3Provider,
        preset_overrides=(("provider", "kie"),),
        platform_matcher=match_kie_platform,
        env_var_names=("KIE_API_KEY",),
        batch_delay_s=30.0,
        missing_key_message=_KIE_MISSING,
    ),
    "yunwu-veo3-fast": ProviderSpec(
        key="yunwu-veo3-fast",
        family="yunwu",
        factory=lambda **kw: YunwuVeo3Provider(model="veo3-fast", **kw),
        preset_overrides=(
            ("provider", "yunwu"), ("model", "veo3-fast"),
            ("enhance_prompt", True), ("enable_upsample", True),
        ),
        platform_matcher=match_yunwu_platform,
        env_var_names=("YUNWU_API_KEY",),
        batch_delay_s=0.0,
        missing_key_message=_YUNWU_MISSING,
    ),
    "yunwu-veo3.1-fast": ProviderSpec(
        key="yunwu-veo3.1-fast",
        family="yunwu",
        factory=lambda **kw: YunwuVeo3Provider(model="veo3.1", **kw),
        preset_overrides=(
            ("provider", "yunwu"), ("model", "veo3.1"),
            ("enhance_prompt", True), ("enable_upsample", True),
        ),
        platform_matcher=match_yunwu_platform,
        env_var_names=("YUNWU_API_KEY",),
        batch_delay_s=0.0,
        missing_key_message=_YUNWU_MISSING,
    ),
    "yunwu-sora2": ProviderSpec(
        key="yunwu-sora2",
        family="yunwu",
        factory=YunwuSora2Provider,
        preset_overrides=(
            ("provider", "yunwu"), ("model", "sora-2"),
            ("default_orientation", None), ("default_size", "large"),
            ("default_duration", 15), ("default_private", True),
            ("default_watermark_enabled", False),
        ),
        platform_matcher=match_yunwu_platform,
        env_var_names=("YUNWU_API_KEY",),
        batch_delay_s=0.0,
        missing_key_message=_YUNWU_MISSING,
    ),
}

DEFAULT_PROVIDER = "kie-veo3-fast"


def resolve_provider_key(key: Optional[str]) -> str:
    """Unknown or empty keys fall back to the default provider."""
    return key if key in PROVIDERS else DEFAULT_PROVIDER


def build_preset(workflow: str, provider_key: str) -> Dict[str, Any]:
    """Workflow defaults merged with the provider's own settings."""
    preset = copy.deepcopy(WORKFLOWS.get(workflow, PRESET_A))
    spec = PROVIDERS[resolve_provider_key(provider_key)]
    for key, value in spec.preset_overrides:
        if value is not None:
            preset[key] = value
    return preset


def get_provider(
    key: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout_s: float = 60.0,
    base_url: Optional[str] = None,
) -> VideoProvider:
    """Instantiate the provider registered under ``key``.

    Raises:
        KeyError: if ``key`` is not registered
    """
    spec = PROVIDERS[key]
    return spec.factory(client=client, timeout_s=timeout_s, base_url=base_url)
