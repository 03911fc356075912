from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "billsync"
    app_version: str = "0.1.0"

    api_key: str = Field(..., alias="API_KEY")

    backend_api_url: str = Field(
        default="https://api.claritybusinesssolutions.ca",
        alias="BACKEND_API_URL",
    )
    backend_secret_key: Optional[str] = Field(default=None, alias="BACKEND_SECRET_KEY")
    organization_id: Optional[str] = Field(default=None, alias="ORGANIZATION_ID")

    filemaker_api_url: Optional[str] = Field(default=None, alias="FILEMAKER_API_URL")
    filemaker_bearer_token: Optional[str] = Field(default=None, alias="FILEMAKER_BEARER_TOKEN")
    filemaker_records_layout: str = Field(default="dapiRecords", alias="FILEMAKER_RECORDS_LAYOUT")

    supabase_url: str = Field(
        default="https://supabase.claritybusinesssolutions.ca",
        alias="SUPABASE_URL",
    )
    supabase_anon_key: Optional[str] = Field(default=None, alias="SUPABASE_ANON_KEY")
    supabase_service_role_key: Optional[str] = Field(default=None, alias="SUPABASE_SERVICE_ROLE_KEY")

    database_url: str = Field(default="sqlite+aiosqlite:///./billsync.db", alias="DATABASE_URL")

    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")

    qbo_test_panel_enabled: bool = Field(default=False, alias="QBO_TEST_PANEL_ENABLED")
    script_billing_emails: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="SCRIPT_BILLING_EMAILS",
    )
    script_billing_script: str = Field(default="bill obsi customer", alias="SCRIPT_BILLING_SCRIPT")
    business_timezone: str = Field(default="America/Vancouver", alias="BUSINESS_TIMEZONE")

    allow_docs_without_auth: bool = Field(default=True, alias="ALLOW_DOCS_WITHOUT_AUTH")

    @field_validator("script_billing_emails", mode="before")
    @classmethod
    def _split_emails(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return value

    @property
    def filemaker_base_url(self) -> str:
        if self.filemaker_api_url:
            return self.filemaker_api_url.rstrip("/")
        return f"{self.backend_api_url.rstrip('/')}/filemaker"

    @property
    def quickbooks_base_url(self) -> str:
        return f"{self.backend_api_url.rstrip('/')}/quickbooks"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
