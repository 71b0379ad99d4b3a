"""
Profile payload model and field validation.
"""
import base64
import binascii
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, ValidationInfo, field_validator

DATA_URL_PATTERN = re.compile(r"^data:image/(png|jpeg|jpg|gif);base64,")


@dataclass(frozen=True)
class ProfileLimits:
    max_name_length: int = 36
    description_length: int = 500
    image_url_length: int = 2000
    max_image_bytes: int = 150 * 1024

    @classmethod
    def from_config(cls, cfg) -> "ProfileLimits":
        return cls(
            max_name_length=cfg.max_name_length,
            description_length=cfg.description_length,
            image_url_length=cfg.image_url_length,
            max_image_bytes=cfg.max_image_bytes,
        )


def _limits(info: ValidationInfo) -> ProfileLimits:
    if isinstance(info.context, ProfileLimits):
        return info.context
    return ProfileLimits()


class ProfilePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    name: StrictStr
    description: Optional[StrictStr] = None
    image_url: Optional[StrictStr] = Field(default=None, alias="imageUrl")
    preview_image_url: Optional[StrictStr] = Field(default=None, alias="previewImageUrl")

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str, info: ValidationInfo) -> str:
        limit = _limits(info).max_name_length
        if not value or len(value) > limit:
            raise ValueError(f"Name is required and must be a string with a maximum length of {limit} characters.")
        return value

    @field_validator("description")
    @classmethod
    def check_description(cls, value, info: ValidationInfo):
        limit = _limits(info).description_length
        if value and len(value) > limit:
            raise ValueError(f"Description must be a string and cannot exceed {limit} characters.")
        return value

    @field_validator("image_url")
    @classmethod
    def check_image_url(cls, value, info: ValidationInfo):
        if not value:
            return value
        limit = _limits(info).image_url_length
        if len(value) > limit:
            raise ValueError(f"Image URL must be a string and cannot exceed {limit} characters.")
        if urlparse(value).scheme not in ("http", "https"):
            raise ValueError("Image URL must use HTTP or HTTPS protocol")
        return value

    @field_validator("preview_image_url")
    @classmethod
    def check_preview_image(cls, value, info: ValidationInfo):
        if not value:
            return value
        limit = _limits(info).max_image_bytes
        match = DATA_URL_PATTERN.match(value)
        if not match:
            raise ValueError("Invalid preview image data URL")
        try:
            decoded = base64.b64decode(value[match.end():], validate=True)
        except binascii.Error:
            raise ValueError("Preview image is not valid base64")
        if len(decoded) > limit:
            raise ValueError(f"Preview image size exceeds {limit // 1024}KB.")
        return value

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def _format_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = ".".join(str(p) for p in item.get("loc", ())) or "payload"
        msg = item.get("msg", "invalid")
        # pydantic prefixes custom ValueErrors
        msg = msg.removeprefix("Value error, ")
        messages.append(f"{field}: {msg}")
    return messages


class ProfileValidator:
    """Validates raw payloads against the configured limits."""

    def __init__(self, limits: ProfileLimits):
        self.limits = limits

    def validate(self, data) -> Tuple[Optional[ProfilePayload], List[str]]:
        if not isinstance(data, dict):
            return None, ["Profile must be a JSON object"]
        try:
            return ProfilePayload.model_validate(data, context=self.limits), []
        except ValidationError as e:
            return None, _format_errors(e)
