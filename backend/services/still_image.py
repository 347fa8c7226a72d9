import base64
import binascii
import io
import re
from dataclasses import dataclass
from typing import Tuple

from PIL import Image

_DATA_URI_HEADER = re.compile(r"^data:(?P<mime>[^;,]+);base64$")


@dataclass(frozen=True)
class StillImage:
    """
    An encoded raster image (JPEG/PNG/WEBP bytes plus its mime type).

    On the wire it always travels as a data URI: ``data:<mime>;base64,<payload>``.
    This is the one format shared by the compositor, the HTTP API and Gemini.
    """

    mime_type: str
    data: bytes

    @classmethod
    def from_data_uri(cls, uri: str) -> "StillImage":
        # e.g. "data:image/jpeg;base64,...." -> ("data:image/jpeg;base64", "....")
        header, _, payload = (uri or "").partition(",")
        match = _DATA_URI_HEADER.match(header.strip())
        if not match or not payload:
            raise ValueError("Invalid base64 image string")
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 image string")
        return cls(mime_type=match.group("mime"), data=data)

    @classmethod
    def from_inline_data(cls, mime_type: str, b64_data: str) -> "StillImage":
        return cls(mime_type=mime_type or "image/png", data=base64.b64decode(b64_data))

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) read from the image header."""
        with Image.open(io.BytesIO(self.data)) as im:
            return im.size

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"

    def __repr__(self) -> str:
        return f"StillImage(mime_type={self.mime_type!r}, bytes={len(self.data)})"
