"""
Collage construction and cropping for the styling pipeline.

Layout contract: every collage is exactly twice as wide as its model panel and the
model fills the left half, ``model_panel_box(width, height)``. The image model is
asked to answer in the same layout, so the left half of any collage or generated
image is model-only content and ``crop_left_half`` recovers it without metadata.
"""
import asyncio
import io
import logging
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import CompositingError
from .still_image import StillImage

logger = logging.getLogger(__name__)

COLLAGE_HEIGHT = 600
RETRY_COLLAGE_HEIGHT = 800
OUTPUT_MIME = "image/jpeg"
JPEG_QUALITY = 92
BACKGROUND = (255, 255, 255)


def model_panel_width(model_width: int, model_height: int, canvas_height: int) -> int:
    return max(1, int(round(canvas_height * model_width / float(model_height))))


def model_panel_box(canvas_width: int, canvas_height: int) -> Tuple[int, int, int, int]:
    """The region of a collage (or generated image) that holds only the model."""
    return (0, 0, canvas_width // 2, canvas_height)


def _decode(image: StillImage, label: str) -> Image.Image:
    try:
        im = Image.open(io.BytesIO(image.data))
        im.load()
        im = ImageOps.exif_transpose(im)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise CompositingError(f"Could not decode {label} image: {e}") from e
    if im.width <= 0 or im.height <= 0:
        raise CompositingError(f"Could not decode {label} image: empty raster")
    return im.convert("RGBA")


def _encode(canvas: Image.Image) -> StillImage:
    out = io.BytesIO()
    try:
        canvas.convert("RGB").save(out, format="JPEG", quality=JPEG_QUALITY)
    except (OSError, ValueError) as e:
        raise CompositingError(f"Could not encode image: {e}") from e
    return StillImage(mime_type=OUTPUT_MIME, data=out.getvalue())


def _draw(canvas: Image.Image, im: Image.Image, box: Tuple[int, int, int, int]) -> None:
    """Stretch ``im`` to fill ``box`` (left, top, right, bottom), alpha over the canvas."""
    left, top, right, bottom = box
    size = (max(1, right - left), max(1, bottom - top))
    resized = im.resize(size, Image.Resampling.LANCZOS)
    canvas.paste(resized, (left, top), mask=resized)


def _new_canvas(model: Image.Image, height: int) -> Tuple[Image.Image, int]:
    panel_w = model_panel_width(model.width, model.height, height)
    canvas = Image.new("RGBA", (panel_w * 2, height), BACKGROUND + (255,))
    _draw(canvas, model, model_panel_box(panel_w * 2, height))
    return canvas, panel_w


def fit_item_box(item_width: int, item_height: int, panel_x: int, panel_width: int,
                 canvas_height: int) -> Tuple[int, int, int, int]:
    """Scale to the panel width, or to the canvas height if that is too tall; center it."""
    aspect = item_width / float(item_height)
    draw_w = float(panel_width)
    draw_h = draw_w / aspect
    if draw_h > canvas_height:
        draw_h = float(canvas_height)
        draw_w = draw_h * aspect
    x = panel_x + (panel_width - draw_w) / 2
    y = (canvas_height - draw_h) / 2
    left, top = int(round(x)), int(round(y))
    return (left, top, left + max(1, int(round(draw_w))), top + max(1, int(round(draw_h))))


def render_collage(model: StillImage, item: StillImage) -> StillImage:
    model_im = _decode(model, "model")
    item_im = _decode(item, "item")

    canvas, panel_w = _new_canvas(model_im, COLLAGE_HEIGHT)
    box = fit_item_box(item_im.width, item_im.height, panel_w, canvas.width - panel_w, COLLAGE_HEIGHT)
    _draw(canvas, item_im, box)
    logger.info(f"Collage built: {canvas.width}x{canvas.height} (model panel {panel_w}px)")
    return _encode(canvas)


def render_retry_collage(model: StillImage, item: StillImage, failed_attempt: StillImage) -> StillImage:
    model_im = _decode(model, "model")
    item_im = _decode(item, "item")
    failed_im = _decode(failed_attempt, "previous attempt")

    canvas, panel_w = _new_canvas(model_im, RETRY_COLLAGE_HEIGHT)
    half = RETRY_COLLAGE_HEIGHT // 2
    _draw(canvas, item_im, (panel_w, 0, canvas.width, half))
    _draw(canvas, failed_im, (panel_w, half, canvas.width, RETRY_COLLAGE_HEIGHT))
    logger.info(f"Retry collage built: {canvas.width}x{canvas.height} (model panel {panel_w}px)")
    return _encode(canvas)


def render_left_half(image: StillImage) -> StillImage:
    im = _decode(image, "generated")
    box = model_panel_box(im.width, im.height)
    if box[2] < 1:
        raise CompositingError(f"Image too narrow to crop: {im.width}px")
    return _encode(im.crop(box))


async def build_collage(model: StillImage, item: StillImage) -> StillImage:
    return await asyncio.to_thread(render_collage, model, item)


async def build_retry_collage(model: StillImage, item: StillImage, failed_attempt: StillImage) -> StillImage:
    return await asyncio.to_thread(render_retry_collage, model, item, failed_attempt)


async def crop_left_half(image: StillImage) -> StillImage:
    return await asyncio.to_thread(render_left_half, image)
