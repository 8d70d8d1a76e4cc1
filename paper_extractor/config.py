from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Annotated

load_dotenv()

MAX_PDF_BYTES = 100 * 1024 * 1024


class Settings(BaseSettings):
    env: Annotated[str, Field(default="development")]
    log_level: Annotated[str, Field(default="INFO")]

    # DashScope (OpenAI compatible mode)
    dashscope_api_key: Annotated[Optional[str], Field(default=None)]
    dashscope_base_url: Annotated[str, Field(default="https://dashscope.aliyuncs.com/compatible-mode/v1")]
    dashscope_model: Annotated[str, Field(default="qwen-long")]

    # PDF download / scratch storage
    scratch_dir: Annotated[str, Field(default="temp")]
    max_pdf_bytes: Annotated[int, Field(default=MAX_PDF_BYTES)]
    download_timeout: Annotated[float, Field(default=30.0)]
    allowed_pdf_hosts: Annotated[List[str], Field(default=["arxiv.org", "www.arxiv.org", "export.arxiv.org"])]
    stale_artifact_age: Annotated[int, Field(default=60 * 60)]
    sweep_interval: Annotated[int, Field(default=15 * 60)]

    # SSE relay
    heartbeat_interval: Annotated[float, Field(default=30.0)]

    # Admission control
    general_rate_limit: Annotated[int, Field(default=100)]
    general_rate_window: Annotated[int, Field(default=15 * 60)]
    interpretation_rate_limit: Annotated[int, Field(default=10)]
    interpretation_rate_window: Annotated[int, Field(default=60 * 60)]

    # Daily papers catalog
    catalog_base_url: Annotated[str, Field(default="https://huggingface.co/api")]
    catalog_timeout: Annotated[float, Field(default=10.0)]

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def dashscope_configured(self) -> bool:
        return bool(self.dashscope_api_key)

    @property
    def is_dev(self) -> bool:
        return self.env == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
