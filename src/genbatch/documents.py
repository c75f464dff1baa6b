"""Pydantic models for the persisted application document.

The document is stored as camelCase JSON; Python code works with the
snake_case attributes. Unknown keys are preserved so that fields written by
other tools survive a read-modify-write cycle.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class RecordStatus(str, Enum):
    """Status of a prompt or video task record as shown to users."""

    WAITING = "waiting"
    SUBMITTING = "submitting"
    GENERATING = "generating"
    DOWNLOADING = "downloading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DocumentModel(BaseModel):
    class Config:
        """Pydantic configuration."""

        alias_generator = to_camel
        populate_by_name = True
        use_enum_values = True
        extra = "allow"


class ApiSettings(DocumentModel):
    thread_count: int = Field(default=5, ge=1, description="Parallel image/video jobs")
    retry_count: int = Field(default=3, ge=1, description="Attempts per job")
    save_path: str = Field(default="", description="Image output folder")
    current_key_name: str = Field(default="", description="Preferred key library entry")
    api_platform: str = Field(default="云雾", description="Platform of the preferred key")


class VideoSettings(DocumentModel):
    api_key: str = ""
    save_path: str = ""
    default_aspect_ratio: str = "9:16"
    default_watermark: str = ""
    default_callback: str = ""
    enable_fallback: bool = False
    enable_translation: bool = True


class StyleEntry(DocumentModel):
    name: str
    content: str = ""
    category: str = ""
    created_time: Optional[str] = None
    usage_count: int = 0


class ImageReference(DocumentModel):
    name: str
    path: Optional[str] = None
    url: Optional[str] = None


class KeyEntry(DocumentModel):
    name: str
    api_key: str
    platform: str = ""
    created_time: Optional[str] = None
    last_used: Optional[str] = None


class PromptEntry(DocumentModel):
    number: str
    prompt: str
    status: RecordStatus = RecordStatus.WAITING
    image_url: Optional[str] = None
    local_path: Optional[str] = None
    error_msg: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    actual_filename: Optional[str] = None
    style: Optional[str] = None
    ref_images: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VideoTaskRecord(DocumentModel):
    number: str
    prompt: str
    image_urls: List[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = None
    watermark: Optional[str] = None
    callback_url: Optional[str] = None
    seeds: Optional[str] = None
    enable_fallback: bool = False
    enable_translation: bool = False
    status: RecordStatus = RecordStatus.WAITING
    progress: int = Field(default=0, ge=0, le=100)
    local_path: Optional[str] = None
    remote_url: Optional[str] = None
    error_msg: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    updated_at: Optional[str] = None
    workflow: Optional[str] = None
    provider_request_id: Optional[str] = None
    fingerprint: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    actual_filename: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class AppData(DocumentModel):
    """Root application document."""

    api_settings: ApiSettings = Field(default_factory=ApiSettings)
    style_library: Dict[str, StyleEntry] = Field(default_factory=dict)
    current_style: str = ""
    custom_style_content: str = ""
    category_links: Dict[str, List[ImageReference]] = Field(default_factory=dict)
    key_library: Dict[str, KeyEntry] = Field(default_factory=dict)
    prompts: List[PromptEntry] = Field(default_factory=list)
    video_settings: VideoSettings = Field(default_factory=VideoSettings)
    video_tasks: List[VideoTaskRecord] = Field(default_factory=list)
    generated_images: Dict[str, str] = Field(default_factory=dict)
    generated_videos: List[str] = Field(default_factory=list)

    def find_prompt(self, number: str) -> Optional[PromptEntry]:
        return next((p for p in self.prompts if p.number == number), None)

    def find_video_task(self, number: str) -> Optional[VideoTaskRecord]:
        return next((t for t in self.video_tasks if t.number == number), None)
