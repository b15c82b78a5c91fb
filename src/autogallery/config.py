"""Environment-based configuration for AutoGallery."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from AUTOGALLERY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOGALLERY_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Preferred accelerated backend; "cpu" disables the accelerated attempt
    device: Literal["cpu", "cuda", "openvino"] = "cuda"

    # Model selection
    classification_model: str = "mobilenetv4_conv_small"
    models_dir: str = "./models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Blocking inference runs on this many worker threads
    inference_workers: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
