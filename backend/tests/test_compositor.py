import io

import pytest
from PIL import Image as PILImage  # type: ignore

from services import compositor
from services.errors import CompositingError
from services.still_image import StillImage

RED = (200, 30, 30)
BLUE = (30, 30, 200)
GREEN = (30, 180, 30)


def open_image(image: StillImage) -> PILImage.Image:
    return PILImage.open(io.BytesIO(image.data)).convert("RGB")


def close_to(pixel, expected, tolerance=24):
    return all(abs(a - b) <= tolerance for a, b in zip(pixel, expected))


def test_model_panel_box_is_left_half():
    assert compositor.model_panel_box(600, 600) == (0, 0, 300, 600)
    assert compositor.model_panel_box(601, 400) == (0, 0, 300, 400)


def test_collage_dimensions_follow_model_aspect(make_image):
    collage = compositor.render_collage(make_image((300, 600), RED), make_image((400, 400), BLUE))

    assert collage.mime_type == "image/jpeg"
    # 600 * (300 / 600) = 300px model panel, doubled
    assert collage.size == (600, 600)


def test_collage_item_is_centered_on_white(make_image):
    # Wide item: fitted to the 300px panel width -> 150px tall, centered vertically
    collage = open_image(compositor.render_collage(make_image((300, 600), RED), make_image((400, 200), BLUE)))

    assert close_to(collage.getpixel((450, 300)), BLUE)
    assert close_to(collage.getpixel((450, 100)), (255, 255, 255))
    assert close_to(collage.getpixel((450, 500)), (255, 255, 255))


def test_collage_tall_item_is_fitted_by_height(make_image):
    # Tall item: width-fit would be 900px tall, so fit by height -> 150x600, centered horizontally
    collage = open_image(compositor.render_collage(make_image((300, 600), RED), make_image((100, 400), BLUE)))

    assert close_to(collage.getpixel((450, 300)), BLUE)
    assert close_to(collage.getpixel((320, 300)), (255, 255, 255))
    assert close_to(collage.getpixel((585, 300)), (255, 255, 255))


def test_crop_of_collage_is_the_model_panel(make_image):
    model = make_image((300, 600), RED)
    collage = compositor.render_collage(model, make_image((400, 400), BLUE))
    cropped = compositor.render_left_half(collage)

    assert cropped.size == (collage.size[0] // 2, collage.size[1])
    cropped_im = open_image(cropped)
    for xy in [(5, 5), (150, 300), (cropped_im.width - 20, 580)]:
        assert close_to(cropped_im.getpixel(xy), RED)


def test_crop_floors_odd_widths(make_image):
    cropped = compositor.render_left_half(make_image((301, 50), GREEN))
    assert cropped.size == (150, 50)


def test_retry_collage_layout(make_image):
    model = make_image((300, 400), RED)
    retry = compositor.render_retry_collage(model, make_image((100, 100), BLUE), make_image((500, 100), GREEN))

    # 800 * (300 / 400) = 600px panel
    assert retry.size == (1200, 800)
    im = open_image(retry)
    assert close_to(im.getpixel((300, 400)), RED)
    # Right half: item stretched over the top 400px, failed attempt over the bottom 400px
    assert close_to(im.getpixel((620, 20)), BLUE)
    assert close_to(im.getpixel((1180, 380)), BLUE)
    assert close_to(im.getpixel((620, 420)), GREEN)
    assert close_to(im.getpixel((1180, 780)), GREEN)


def test_transparent_item_is_drawn_over_white(make_image):
    item = make_image((100, 100), (0, 0, 0, 0), mode="RGBA")
    collage = open_image(compositor.render_collage(make_image((300, 600), RED), item))

    assert close_to(collage.getpixel((450, 300)), (255, 255, 255))


def test_undecodable_inputs_raise_compositing_error(make_image):
    broken = StillImage(mime_type="image/png", data=b"not an image")

    with pytest.raises(CompositingError):
        compositor.render_collage(make_image(), broken)
    with pytest.raises(CompositingError):
        compositor.render_retry_collage(make_image(), make_image(), broken)
    with pytest.raises(CompositingError):
        compositor.render_left_half(broken)


@pytest.mark.asyncio
async def test_async_wrappers_match_sync_layout(make_image):
    model = make_image((200, 400), RED)
    item = make_image((100, 100), BLUE)

    collage = await compositor.build_collage(model, item)
    retry = await compositor.build_retry_collage(model, item, collage)
    cropped = await compositor.crop_left_half(retry)

    assert collage.size == (600, 600)
    assert retry.size == (800, 800)
    assert cropped.size == (400, 800)
