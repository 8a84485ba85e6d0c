"""
Configuration loader for the background-removal pipeline.

Environment variables (prefixed ``CUTOUT_``) are centralized here so the
rest of the code stays focused on the pipeline itself.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .registry import MODEL_CATALOG


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CUTOUT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Model cache + download
    model_dir: Path = Field(Path.home() / ".cache" / "cutout_service" / "models")
    download_timeout_seconds: int = 60
    download_chunk_size: int = 1 << 16
    default_model: str = "u2netp"

    # Engine
    execution_providers: List[str] = Field(
        default_factory=lambda: ["CUDAExecutionProvider", "CoreMLExecutionProvider", "CPUExecutionProvider"]
    )

    # Input guard
    max_image_pixels: Optional[int] = 64_000_000

    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/cutout_debug")

    @field_validator("default_model")
    @classmethod
    def validate_default_model(cls, v: str) -> str:
        if v not in MODEL_CATALOG:
            raise ValueError(f"CUTOUT_DEFAULT_MODEL must be one of {'|'.join(MODEL_CATALOG)}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
