import io
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ValidationError
from .still_image import StillImage

logger = logging.getLogger(__name__)


def _try_register_heif() -> bool:
    """
    Try to enable HEIC/HEIF decoding in Pillow via pillow-heif.
    Optional at runtime; without it iPhone HEIC uploads are rejected as undecodable.
    """
    try:
        import pillow_heif  # type: ignore
    except ImportError:
        return False
    pillow_heif.register_heif_opener()
    return True


_HEIF_REGISTERED: Optional[bool] = None


def ensure_heif_registered() -> bool:
    global _HEIF_REGISTERED
    if _HEIF_REGISTERED is None:
        _HEIF_REGISTERED = _try_register_heif()
        if _HEIF_REGISTERED:
            logger.info("pillow-heif enabled: HEIC/HEIF decoding available")
        else:
            logger.info("pillow-heif not available: HEIC/HEIF decoding NOT available")
    return bool(_HEIF_REGISTERED)


def normalize_image_bytes(
    image_bytes: bytes,
    *,
    max_dimension: int = 2200,
    jpeg_quality: int = 90,
) -> Tuple[bytes, str, int, int]:
    """
    Decode an upload, apply EXIF orientation, downscale to max_dimension (longest side)
    and re-encode: PNG when the image has alpha, JPEG otherwise.

    Returns: (normalized_bytes, mime_type, width, height)
    """
    if not image_bytes:
        raise ValidationError("Empty image")

    ensure_heif_registered()

    try:
        with Image.open(io.BytesIO(image_bytes)) as src:
            im = ImageOps.exif_transpose(src)
            im.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Could not decode image: {e}") from e

    width, height = im.size
    longest = max(width, height)
    if longest > max_dimension:
        scale = max_dimension / float(longest)
        im = im.resize(
            (max(1, int(round(width * scale))), max(1, int(round(height * scale)))),
            Image.Resampling.LANCZOS,
        )
        width, height = im.size

    has_alpha = im.mode in ("RGBA", "LA") or (im.mode == "P" and "transparency" in (im.info or {}))

    out = io.BytesIO()
    if has_alpha:
        im.save(out, format="PNG", optimize=True)
        return out.getvalue(), "image/png", width, height

    im.convert("RGB").save(out, format="JPEG", quality=jpeg_quality, optimize=True, progressive=True)
    return out.getvalue(), "image/jpeg", width, height


def normalize_to_still_image(
    image_bytes: bytes,
    *,
    max_bytes: int,
    max_dimension: int = 2200,
    min_dimension: int = 900,
    jpeg_quality: int = 88,
    min_jpeg_quality: int = 70,
) -> StillImage:
    """
    Normalize an upload into a StillImage, progressively downscaling and lowering
    quality until the encoded bytes fit max_bytes (best-effort).

    Keeps the Gemini request payloads small; phone photos are often 5-10MB.
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be > 0")

    dim = max_dimension
    q = jpeg_quality
    best: Optional[Tuple[bytes, str, int, int]] = None

    for _ in range(8):
        best = normalize_image_bytes(image_bytes, max_dimension=dim, jpeg_quality=q)
        if len(best[0]) <= max_bytes:
            break
        if dim == min_dimension and q == min_jpeg_quality:
            logger.warning(f"Upload still over budget after downscaling: {len(best[0])}B > {max_bytes}B")
            break

        # Tighten knobs
        dim = max(min_dimension, int(dim * 0.85))
        q = max(min_jpeg_quality, q - 6)

    out_bytes, out_mime, w, h = best
    logger.info(f"Normalized upload to {w}x{h} {out_mime} ({len(out_bytes)}B)")
    return StillImage(mime_type=out_mime, data=out_bytes)
