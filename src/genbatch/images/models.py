"""Pydantic models for image generation jobs and results."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PlatformConfig(BaseModel):
    """Chat-completions endpoint and model served by a key platform."""

    url: str
    model: str


PLATFORM_CONFIGS: Dict[str, PlatformConfig] = {
    "云雾": PlatformConfig(
        url="https://yunwu.ai/v1/chat/completions",
        model="gemini-2.5-flash-image-preview",
    ),
    "API易": PlatformConfig(
        url="https://vip.apiyi.com/v1/chat/completions",
        model="gemini-2.5-flash-image-preview",
    ),
    "apicore": PlatformConfig(
        url="https://api.apicore.ai/v1/chat/completions",
        model="gemini-2.5-flash-image",
    ),
    "KIE.AI": PlatformConfig(
        url="https://api.kie.ai/api/v1/chat/completions",
        model="gemini-2.5-flash-image-preview",
    ),
}
DEFAULT_PLATFORM = "云雾"
FALLBACK_PLATFORM = "API易"


class ImageJob(BaseModel):
    """One image to generate."""

    id: str = Field(..., description="Job id, also the output file stem")
    prompt: str = Field(..., description="Prompt text before style is applied")
    ref_images: List[str] = Field(
        default_factory=list, description="Reference names, URLs or data URIs"
    )
    style_id: Optional[str] = Field(default=None, description="Style library entry to apply")
    meta: Dict[str, Any] = Field(
        default_factory=dict, description="prompt_number links the job to a prompt record"
    )

    @property
    def prompt_number(self) -> Optional[str]:
        value = self.meta.get("prompt_number")
        return value if isinstance(value, str) and value else None


class JobError(BaseModel):
    code: str
    message: str
    provider: Optional[str] = None


class ImageResult(BaseModel):
    job_id: str
    ok: bool
    url: Optional[str] = None
    local_path: Optional[str] = None
    error: Optional[JobError] = None
    elapsed_ms: Optional[int] = None


class OrchestrationResult(BaseModel):
    """``results`` follows job input order; ``failed`` is its failing subset."""

    results: List[ImageResult] = Field(default_factory=list)
    failed: List[ImageResult] = Field(default_factory=list)
    diagnostics: Optional[List[str]] = None


class ResolvedCredential(BaseModel):
    """Key chosen for an orchestration round."""

    key_name: str
    api_key: str
    platform: str
    url: str
    model: str
    diagnostics: List[str] = Field(default_factory=list)
