"""Pydantic models for configuration."""

from typing import Optional

from pydantic import BaseModel, Field


class BackoffConfig(BaseModel):
    """Exponential backoff parameters."""

    base_s: float = Field(default=0.2, ge=0.0, description="Delay before the first retry in seconds")
    factor: float = Field(default=1.6, ge=1.0, description="Multiplier applied per attempt")
    cap_s: float = Field(default=5.0, ge=0.0, description="Upper bound for a single delay")
    jitter_s: float = Field(default=0.0, ge=0.0, description="Random extra delay added on top")


class EngineSettings(BaseModel):
    """Video batch engine parameters."""

    concurrency: int = Field(default=5, ge=1, description="Max in-flight submissions/polls")
    max_attempts: int = Field(default=3, ge=1, description="Submission attempts per task")
    batch_delay_s: float = Field(
        default=0.0, ge=0.0, description="Pause between submission batches in seconds"
    )
    poll_interval_s: float = Field(default=5.0, ge=0.0, description="Pause between polls")
    max_polls: int = Field(default=120, ge=1, description="Poll budget before a task times out")
    rate_limit_delay_s: float = Field(
        default=30.0, ge=0.0, description="Wait after a rate-limited submission"
    )
    download_retries: int = Field(
        default=0, ge=0, description="Extra attempts for transient download failures"
    )
    backoff: BackoffConfig = Field(default_factory=BackoffConfig, description="Submit retry backoff")


class ImageSettings(BaseModel):
    """Image orchestrator parameters."""

    concurrency: int = Field(default=5, ge=1, description="Parallel image requests")
    retry_count: int = Field(default=3, ge=0, description="Retries per image job and key")
    timeout_s: float = Field(default=600.0, gt=0.0, description="Per-request timeout")
    preflight_timeout_s: float = Field(
        default=8.0, gt=0.0, description="Timeout of the HEAD reachability check"
    )
    backoff: BackoffConfig = Field(default_factory=BackoffConfig, description="Per-job retry backoff")


class StorageSettings(BaseModel):
    """Filesystem layout for persisted state and generated assets."""

    data_file: str = Field(default="data/app-data.json", description="Application document path")
    public_dir: str = Field(default="public", description="Root that local paths are relative to")
    video_dir: str = Field(default="public/generated_videos", description="Video output folder")
    image_dir: str = Field(default="public/generated_images", description="Image output folder")


class ProviderSettings(BaseModel):
    """Provider selection defaults."""

    video_provider: str = Field(default="kie-veo3-fast", description="Default video provider key")
    workflow: str = Field(default="A", description="Default workflow preset")
    http_timeout_s: float = Field(default=60.0, gt=0.0, description="Provider HTTP timeout")
    kie_base_url: Optional[str] = Field(default=None, description="Override Kie API base URL")
    yunwu_base_url: Optional[str] = Field(default=None, description="Override Yunwu API base URL")


class GenBatchConfig(BaseModel):
    """Root configuration model."""

    engine: EngineSettings = Field(default_factory=EngineSettings)
    images: ImageSettings = Field(default_factory=ImageSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)

    @classmethod
    def from_dict(cls, data: dict) -> "GenBatchConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "GenBatchConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("concurrency") is not None:
            config_dict["engine"]["concurrency"] = cli_args["concurrency"]
            config_dict["images"]["concurrency"] = cli_args["concurrency"]
        if cli_args.get("max_attempts") is not None:
            config_dict["engine"]["max_attempts"] = cli_args["max_attempts"]
            config_dict["images"]["retry_count"] = cli_args["max_attempts"]
        if cli_args.get("poll_interval") is not None:
            config_dict["engine"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("max_polls") is not None:
            config_dict["engine"]["max_polls"] = cli_args["max_polls"]
        if cli_args.get("data") is not None:
            config_dict["storage"]["data_file"] = cli_args["data"]
        if cli_args.get("provider") is not None:
            config_dict["providers"]["video_provider"] = cli_args["provider"]
        if cli_args.get("workflow") is not None:
            config_dict["providers"]["workflow"] = cli_args["workflow"]

        return GenBatchConfig.from_dict(config_dict)
