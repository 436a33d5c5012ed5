from __future__ import annotations
import base64
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ValidationError
from .models import ImageBlock, Message, TextBlock

DEFAULT_IMAGE_PROMPT = "Describe this image."


@dataclass(frozen=True)
class RawImage:
    data: bytes
    media_type: str


def normalize(raw_text: str, raw_image: Optional[RawImage] = None) -> Message:
    """
    Turn user input into a provider-neutral user message.
    - text only: a single text block, verbatim (empty string included)
    - with image: [text or DEFAULT_IMAGE_PROMPT, image as base64]
    """
    if raw_image is None:
        return Message(role="user", content=(TextBlock(raw_text),))

    encoded = base64.b64encode(raw_image.data).decode("ascii")
    return Message(
        role="user",
        content=(
            TextBlock(raw_text or DEFAULT_IMAGE_PROMPT),
            ImageBlock(media_type=raw_image.media_type, data=encoded),
        ),
    )


def read_image(path: Path) -> RawImage:
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"Image file not found: {path}")
    media_type, _ = mimetypes.guess_type(path.name)
    if not media_type or not media_type.startswith("image/"):
        raise ValidationError(f"Not an image file: {path}")
    return RawImage(data=path.read_bytes(), media_type=media_type)
