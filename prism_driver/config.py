from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PRISM_", env_file=".env", extra="ignore")

    endpoint: str = Field(default="")
    port: int = Field(default=9440, ge=1, le=65535)
    username: str = Field(default="")
    password: str = Field(default="")
    insecure: bool = Field(default=False)
    proxy_url: str | None = Field(default=None)

    request_timeout_sec: float = Field(default=30.0, gt=0)
    retry_attempts: int = Field(default=1, ge=1)
    retry_sleep_sec: float = Field(default=2.0, ge=0)
    list_page_size: int = Field(default=250, ge=1, le=500)

    task_poll_interval_sec: float = Field(default=5.0, ge=0)
    lifecycle_poll_interval_sec: float = Field(default=1.0, ge=0)
    lifecycle_poll_attempts: int = Field(default=1200, ge=1)
    ip_wait_mode: Literal["blocking", "background"] = Field(default="blocking")

    database_url: str = Field(default="sqlite:///./prism_driver.db")
    ssh_key_dir: str = Field(default="./machines")

    log_level: str = Field(default="INFO")
    log_format: Literal["plain", "keyvalue"] = Field(default="plain")

    @property
    def base_url(self) -> str:
        endpoint = self.endpoint.rstrip("/")
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        return f"{endpoint}:{self.port}/api/nutanix/v3"

    def validate_connection(self) -> None:
        for field in ("username", "password", "endpoint"):
            if not getattr(self, field):
                raise ValueError(f"{field} cannot be empty")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
