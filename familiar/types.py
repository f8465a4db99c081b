"""Small shared value types."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ImageObservation:
    """A tool result that carries a picture alongside its text."""

    text: str
    image_b64: str
    media_type: str = "image/jpeg"

    def __str__(self) -> str:
        return self.text
