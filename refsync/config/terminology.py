from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ._validators import _normalize_base_url, _parse_positive_float

DEFAULT_BASE_URL = "http://localhost:8080/snowstorm/snomed-ct"
DEFAULT_ACCEPT_LANGUAGE = "en-X-900000000000509007,en-X-900000000000508004,en"


class TerminologyServerConfig(BaseModel):
    """Connection settings for the remote terminology server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    base_url: str = Field(default=DEFAULT_BASE_URL, validation_alias="SNOWSTORM_URL")
    accept_language: str = Field(
        default=DEFAULT_ACCEPT_LANGUAGE, validation_alias="SNOWSTORM_ACCEPT_LANGUAGE"
    )
    username: str = Field(default="", validation_alias="SNOWSTORM_USERNAME")
    password: str = Field(default="", validation_alias="SNOWSTORM_PASSWORD")
    timeout_sec: float = Field(default=60.0, validation_alias="SNOWSTORM_TIMEOUT_SEC")
    max_retries: int = Field(default=3, validation_alias="SNOWSTORM_MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, validation_alias="SNOWSTORM_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, validation_alias="SNOWSTORM_RETRY_MAX_DELAY")
    max_connections: int = Field(default=50, validation_alias="SNOWSTORM_MAX_CONNECTIONS")

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        return _normalize_base_url(value, default=DEFAULT_BASE_URL)

    @field_validator("accept_language", mode="before")
    @classmethod
    def _validate_accept_language(cls, value: Any) -> str:
        header = str(value or DEFAULT_ACCEPT_LANGUAGE).strip()
        return header or DEFAULT_ACCEPT_LANGUAGE

    @field_validator("timeout_sec", "retry_base_delay", "retry_max_delay", mode="before")
    @classmethod
    def _validate_positive_float(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        return _parse_positive_float(
            value, name=info.field_name.replace("_", " ").capitalize(), default=default
        )

    @field_validator("max_retries", mode="before")
    @classmethod
    def _validate_max_retries(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 3))
        except ValueError as exc:
            msg = "Max retries must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 0 or parsed > 10:
            msg = "Max retries must be between 0 and 10"
            raise ValueError(msg)
        return parsed

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)
