"""Message payload variants, keyed by ``message_type``.

Each variant carries only the fields it needs; anything else is rejected
so a text message can never smuggle a media or GIF reference.
"""
import base64
import binascii
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from courier.core.config import settings
from courier.core.errors import ValidationError

ALLOWED_MIME_TYPES = {
    "image/jpeg": "image",
    "image/jpg": "image",
    "image/png": "image",
    "image/gif": "image",
    "image/webp": "image",
    "audio/mpeg": "audio",
    "audio/mp3": "audio",
    "audio/wav": "audio",
    "audio/ogg": "audio",
    "audio/webm": "audio",
    "application/pdf": "file",
    "text/plain": "file",
    "application/zip": "file",
}

PAYLOAD_FIELDS = ("message_type", "content", "media", "gif")


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class MediaAttachment(_Strict):
    url: str = Field(..., min_length=1)
    mime_type: str = Field(..., min_length=1)
    size: Optional[int] = Field(default=None, ge=0)
    filename: Optional[str] = Field(default=None, max_length=255)


class GifReference(_Strict):
    url: str = Field(..., min_length=1)
    title: Optional[str] = Field(default=None, max_length=200)


class TextPayload(_Strict):
    message_type: Literal["text"] = "text"
    content: str

    @field_validator("content")
    @classmethod
    def _content_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("Message content cannot be empty")
        return value


class MediaPayload(_Strict):
    message_type: Literal["image", "audio", "file"]
    media: MediaAttachment
    content: str = ""


class GifPayload(_Strict):
    message_type: Literal["gif"]
    gif: GifReference
    content: str = ""


MessagePayload = Annotated[
    Union[TextPayload, MediaPayload, GifPayload],
    Field(discriminator="message_type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(MessagePayload)


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid message payload"
    error = errors[0]
    location = ".".join(str(part) for part in error.get("loc", ()) if not isinstance(part, int))
    message = str(error.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}" if location else message


def parse_payload(data: Dict[str, Any]) -> Union[TextPayload, MediaPayload, GifPayload]:
    """Build the payload variant from a client frame or request body.

    Only payload keys are considered; ``None`` values count as absent.
    """
    candidate = {key: data[key] for key in PAYLOAD_FIELDS if data.get(key) is not None}
    candidate.setdefault("message_type", "text")
    try:
        return _payload_adapter.validate_python(candidate)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc), code="invalid_payload") from exc


def decoded_size(url: str) -> Optional[int]:
    """Byte size of a base64 data URL, or None for a plain URL."""
    if not url.startswith("data:"):
        return None
    header, _, encoded = url.partition(",")
    if ";base64" not in header:
        return len(encoded.encode("utf-8"))
    try:
        return len(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Media data is not valid base64", code="invalid_media") from exc


def check_media(payload: MediaPayload) -> int:
    """Re-check mime allow-list and size ceiling; returns the size in bytes."""
    media = payload.media
    category = ALLOWED_MIME_TYPES.get(media.mime_type.lower())
    if category is None:
        raise ValidationError("File type not allowed", code="unsupported_media_type")
    if category != payload.message_type:
        raise ValidationError(
            f"A {media.mime_type} attachment cannot be sent as {payload.message_type}",
            code="media_type_mismatch",
        )

    size = decoded_size(media.url)
    if size is None:
        size = media.size
    if size is None:
        raise ValidationError("Media size is required", code="invalid_media")
    if size > settings.MAX_MEDIA_BYTES:
        limit_mb = settings.MAX_MEDIA_BYTES / (1024 * 1024)
        raise ValidationError(f"File too large (max {limit_mb:g}MB)", code="media_too_large")
    return size
