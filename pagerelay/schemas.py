"""Pydantic DTOs for the control-server protocol and operator commands."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class JobPayload(BaseModel):
    """Body of a ``200`` answer from ``GET /get_url``; no ``url`` means an empty queue."""

    model_config = ConfigDict(extra="ignore")

    url: str | None = Field(default=None, description="Page the agent must render")
    capture_screenshot: bool = Field(default=True, description="False means text-only mode")

    @field_validator("url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("capture_screenshot", mode="before")
    @classmethod
    def _null_is_text_only(cls, value: object) -> object:
        return False if value is None else value


class SubmitContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    raw_html: str = Field(alias="rawHtml")
    raw_purified_content: str = Field(alias="rawPurifiedContent")
    readable_content: str = Field(alias="readableContent")
    title: str
    screenshot: str | None = Field(default=None, description="PNG data URL, None in text-only mode")


class SubmitPayload(BaseModel):
    """Body of ``POST /submit``."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    transformed_url: str = Field(alias="transformedUrl")
    content: SubmitContent


class ErrorReport(BaseModel):
    """Body of ``POST /report_error``."""

    url: str
    error: str
    timestamp: str


class StartPolling(BaseModel):
    type: Literal["start_polling"] = "start_polling"
    control_url: str = Field(alias="controlUrl")
    poll_interval_seconds: int = Field(default=30, alias="pollInterval", ge=1)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("control_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("controlUrl must not be empty")
        return value


class StopPolling(BaseModel):
    type: Literal["stop_polling"] = "stop_polling"


class GetStatus(BaseModel):
    type: Literal["get_status"] = "get_status"


class GetLogs(BaseModel):
    type: Literal["get_logs"] = "get_logs"
    limit: int | None = Field(default=None, ge=1)


Command = Annotated[
    Union[StartPolling, StopPolling, GetStatus, GetLogs],
    Field(discriminator="type"),
]
COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(raw: object) -> Command:
    """Validate an inbound command mapping; raises ``pydantic.ValidationError``."""

    return COMMAND_ADAPTER.validate_python(raw)
