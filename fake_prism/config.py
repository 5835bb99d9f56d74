from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakePrismSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_PRISM_", extra="ignore")

    bind_host: str = Field(default="0.0.0.0")
    bind_port: int = Field(default=9440, ge=1)

    task_polls_to_complete: int = Field(default=1, ge=1)
    ip_polls: int = Field(default=0, ge=0)
    ip_prefix: str = Field(default="10.0.0.")
    first_ip_suffix: int = Field(default=5, ge=1, le=254)

    seed_demo: bool = Field(default=True)


@lru_cache(maxsize=1)
def get_settings() -> FakePrismSettings:
    return FakePrismSettings()
