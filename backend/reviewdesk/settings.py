from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "reviewdesk"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "REVIEWDESK_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/reviewdesk",
        validation_alias=AliasChoices("DATABASE_URL", "REVIEWDESK_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "REVIEWDESK_REDIS_URL"))
    imgbb_api_key: str | None = Field(default=None, validation_alias=AliasChoices("IMGBB_API_KEY", "REVIEWDESK_IMGBB_API_KEY"))
    imgbb_upload_url: str = Field(
        default="https://api.imgbb.com/1/upload",
        validation_alias=AliasChoices("IMGBB_UPLOAD_URL", "REVIEWDESK_IMGBB_UPLOAD_URL"),
    )
    image_upload_timeout_sec: float = Field(default=30.0, validation_alias=AliasChoices("IMAGE_UPLOAD_TIMEOUT_SEC", "REVIEWDESK_IMAGE_UPLOAD_TIMEOUT_SEC"))
    image_max_bytes: int = Field(default=5 * 1024 * 1024, validation_alias=AliasChoices("IMAGE_MAX_BYTES", "REVIEWDESK_IMAGE_MAX_BYTES"))
    max_images_per_item: int = Field(default=4, validation_alias=AliasChoices("MAX_IMAGES_PER_ITEM", "REVIEWDESK_MAX_IMAGES_PER_ITEM"))
    project_proof_ttl_hours: int = Field(default=24, validation_alias=AliasChoices("PROJECT_PROOF_TTL_HOURS", "REVIEWDESK_PROJECT_PROOF_TTL_HOURS"))
    revalidate_channel: str = Field(default="reviewdesk:revalidate", validation_alias=AliasChoices("REVALIDATE_CHANNEL", "REVIEWDESK_REVALIDATE_CHANNEL"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    @property
    def cookie_secure(self) -> bool:
        return self.environment != "local"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
