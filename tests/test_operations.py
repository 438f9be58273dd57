from pathlib import Path

import numpy as np
import pytest
from PIL import Image as PILImage

from pixbatch.batch import operations
from pixbatch.batch.operations import (
    OperationRotate,
    apply_operation,
    parse_operation,
)
from pixbatch.batch.outputs import RunContext
from pixbatch.core.config import BatchConfig
from pixbatch.core.errors import GeometryError, OperationError, ParseError
from pixbatch.core.image import Frame, Image
from pixbatch.core.policy import ExactMode


def make_image(width: int = 8, height: int = 6, frames: int = 1, seed: int = 0) -> Image:
    rng = np.random.default_rng(seed)
    data = [Frame(rng.integers(1, 255, size=(height, width, 4), dtype=np.uint8)) for _ in range(frames)]
    return Image(Path("sample.png"), data)


def run(spec: str, image: Image, context: RunContext = None) -> Image:
    op = parse_operation(spec)
    assert op.valid, op.errors
    apply_operation(op, image, context)
    return image


def pixels_of(image: Image, index: int = 0) -> np.ndarray:
    return image.frames[index].pixels.copy()


@pytest.mark.parametrize("spec", ["flip[h]", "flip[v]"])
def test_flip_twice_is_identity(spec: str) -> None:
    image = make_image(frames=2)
    before = [pixels_of(image, i) for i in range(2)]
    run(spec, image)
    assert not np.array_equal(image.frames[0].pixels, before[0])
    run(spec, image)
    for i in range(2):
        assert np.array_equal(image.frames[i].pixels, before[i])


def test_rotate_zero_is_identity() -> None:
    image = make_image()
    before = pixels_of(image)
    op = parse_operation("rotate[0]")
    assert op.exact is ExactMode.ZERO
    apply_operation(op, image)
    assert np.array_equal(image.frames[0].pixels, before)


def test_rotate_r180_twice_is_identity() -> None:
    image = make_image(7, 5)
    before = pixels_of(image)
    run("rotate[180]", image)
    assert np.array_equal(image.frames[0].pixels, before[::-1, ::-1])
    run("rotate[-180]", image)
    assert np.array_equal(image.frames[0].pixels, before)


def test_rotate_exact_quarter_turns() -> None:
    image = make_image(8, 6)
    before = pixels_of(image)
    run("rotate[450]", image)
    assert (image.width, image.height) == (6, 8)
    # Anticlockwise: the top-left pixel ends up bottom-left.
    assert np.array_equal(image.frames[0].pixels[7, 0], before[0, 0])
    run("rotate[-90]", image)
    assert np.array_equal(image.frames[0].pixels, before)


def test_rotate_angle_normalisation() -> None:
    op = parse_operation("rotate[270]")
    assert op.exact is ExactMode.CW90
    assert op.angle == pytest.approx(-np.pi / 2)
    assert operations.exact_mode_for(30.0) is ExactMode.OFF


@pytest.mark.parametrize(
    "spec, check",
    [
        ("rotate[30,fill]", lambda w, h: (w, h) == (40, 20)),
        ("rotate[30,resize]", lambda w, h: w > 40 and h > 20),
        ("rotate[30,crop]", lambda w, h: w < 40 and h < 20),
        ("rotate[30,fill,none]", lambda w, h: (w, h) == (40, 20)),
        ("rotate[30,fill,bicubic,lanczos]", lambda w, h: (w, h) == (40, 20)),
    ],
)
def test_rotate_continuous_modes(spec: str, check) -> None:  # noqa: ANN001
    image = make_image(40, 20)
    run(spec, image)
    assert check(image.width, image.height)


@pytest.mark.parametrize("size", [(4, 4), (7, 5), (16, 9), (33, 4)])
def test_resize_reports_exact_size(size) -> None:  # noqa: ANN001
    image = make_image(10, 10, frames=2)
    run(f"resize[{size[0]},{size[1]},lanczos]", image)
    assert (image.width, image.height) == size
    assert all(f.width == size[0] and f.height == size[1] for f in image.frames)


def test_resize_derives_missing_dimension() -> None:
    image = make_image(16, 8)
    run("resize[8,*]", image)
    assert (image.width, image.height) == (8, 4)
    run("resize[*,12,nearest,wrap]", image)
    assert (image.width, image.height) == (24, 12)


def test_resize_wrap_samples_across_the_tile_seam() -> None:
    strip = np.zeros((4, 16, 4), dtype=np.uint8)
    strip[:, 8:, :3] = 255
    strip[..., 3] = 255
    wrapped = run("resize[8,4,bilinear,wrap]", Image(Path("tile.png"), [Frame(strip.copy())]))
    clamped = run("resize[8,4,bilinear]", Image(Path("tile.png"), [Frame(strip.copy())]))

    # Resizing a 3x horizontal tiling and keeping the middle tile gives the seamless result.
    tiled = np.tile(strip, (1, 3, 1))
    reference = np.array(PILImage.fromarray(tiled).resize((24, 4), PILImage.Resampling.BILINEAR))[:, 8:16]
    result = wrapped.frames[0].pixels
    assert np.abs(result.astype(int) - reference.astype(int)).max() <= 1
    assert result[0, 0, 0] > 0
    assert clamped.frames[0].pixels[0, 0, 0] == 0


@pytest.mark.parametrize("spec", ["resize[3,8]", "resize[0,8]", "resize[*,*]", "resize[abc]"])
def test_resize_rejects_bad_sizes(spec: str) -> None:
    assert not parse_operation(spec).valid


def test_resize_bad_filter_is_a_warning() -> None:
    op = parse_operation("resize[8,8,sharpest]")
    assert op.valid
    assert op.warnings
    assert op.filter.value == "bilinear"


def test_crop_absolute_full_size_is_identity() -> None:
    image = make_image(9, 7)
    before = pixels_of(image)
    run("crop[abs,0,0,9,7]", image)
    assert np.array_equal(image.frames[0].pixels, before)


def test_crop_relative_and_fill() -> None:
    image = make_image(8, 8)
    before = pixels_of(image)
    run("crop[rel,2,2,6,6]", image)
    assert np.array_equal(image.frames[0].pixels, before[2:6, 2:6])

    image = make_image(4, 4)
    before = pixels_of(image)
    run("crop[abs,-2,0,6,4,red]", image)
    assert (image.width, image.height) == (6, 4)
    assert np.all(image.frames[0].pixels[:, :2] == (255, 0, 0, 255))
    assert np.array_equal(image.frames[0].pixels[:, 2:], before)


def test_crop_to_nothing_fails_and_leaves_image_untouched() -> None:
    image = make_image()
    before = pixels_of(image)
    with pytest.raises(GeometryError):
        run("crop[rel,4,4,4,8]", image)
    assert np.array_equal(image.frames[0].pixels, before)


def test_canvas_anchors() -> None:
    image = make_image(4, 4)
    before = pixels_of(image)
    run("canvas[8,8,tl,red]", image)
    out = image.frames[0].pixels
    assert np.array_equal(out[:4, :4], before)
    assert np.all(out[4:, :] == (255, 0, 0, 255))

    image = make_image(4, 4)
    run("canvas[8,8]", image)
    assert np.array_equal(image.frames[0].pixels[2:6, 2:6], before)

    image = make_image(4, 4)
    run("canvas[2,2,br]", image)
    assert np.array_equal(image.frames[0].pixels, before[2:, 2:])


def test_canvas_anchor_and_explicit_offset_are_exclusive() -> None:
    assert not parse_operation("canvas[8,8,tl,black,1,1]").valid
    op = parse_operation("canvas[8,8,*,black,1]")
    assert op.valid
    assert op.anchor_x == -1 and op.warnings


def test_aspect_crop_and_letterbox() -> None:
    image = make_image(16, 8)
    run("aspect[1:1,crop]", image)
    assert (image.width, image.height) == (8, 8)

    image = make_image(16, 8)
    run("aspect[1:1,letter,mm,white]", image)
    assert (image.width, image.height) == (16, 16)
    assert np.all(image.frames[0].pixels[0] == (255, 255, 255, 255))

    image = make_image(16, 9)
    before = pixels_of(image)
    run("aspect[16:9]", image)
    assert np.array_equal(image.frames[0].pixels, before)
    assert not parse_operation("aspect[16/9]").valid


def bordered(colour=(0, 0, 0, 255), border: int = 2, size: int = 10) -> Image:  # noqa: ANN001
    pixels = np.empty((size, size, 4), dtype=np.uint8)
    pixels[...] = colour
    rng = np.random.default_rng(3)
    pixels[border:-border, border:-border] = rng.integers(10, 250, size=(size - 2 * border, size - 2 * border, 4))
    return Image(Path("bordered.png"), [Frame(pixels)])


def test_deborder_removes_uniform_border() -> None:
    image = bordered()
    interior = image.frames[0].pixels[2:-2, 2:-2].copy()
    run("deborder", image)
    assert (image.width, image.height) == (6, 6)
    assert np.array_equal(image.frames[0].pixels, interior)


def test_deborder_channel_mask() -> None:
    # Transparent black only matches opaque black when alpha is ignored.
    image = bordered(colour=(0, 0, 0, 0))
    run("deborder[black]", image)
    assert (image.width, image.height) == (10, 10)
    run("deborder[black,rgb]", image)
    assert (image.width, image.height) == (6, 6)


def test_deborder_uses_smallest_border_across_frames() -> None:
    first = bordered(border=2).frames[0]
    second = bordered(border=3).frames[0]
    image = Image(Path("anim.gif"), [first, second])
    run("deborder", image)
    assert (image.width, image.height) == (6, 6)


def test_deborder_total_collapse_is_reported() -> None:
    image = Image(Path("flat.png"), [Frame.blank(5, 5, (9, 9, 9, 255))])
    with pytest.raises(GeometryError):
        run("deborder", image)
    assert (image.width, image.height) == (5, 5)


def test_levels_contrast_brightness_identities() -> None:
    image = make_image()
    before = pixels_of(image)
    for spec in ("levels", "contrast[0.5]", "brightness[0.5]"):
        run(spec, image)
        assert np.array_equal(image.frames[0].pixels, before), spec


def test_levels_black_point_and_frame_selection() -> None:
    image = make_image(frames=2)
    first, second = pixels_of(image, 0), pixels_of(image, 1)
    run("levels[0.5,*,1,0,1,0]", image)
    out = image.frames[0].pixels
    assert np.all(out[..., :3][first[..., :3] <= 127] == 0)
    assert np.all(out[..., :3][first[..., :3] == 254] == 253)
    assert np.array_equal(out[..., 3], first[..., 3])
    assert np.array_equal(image.frames[1].pixels, second)


def test_levels_rejects_misordered_points() -> None:
    assert not parse_operation("levels[0.8,*,0.2]").valid
    assert not parse_operation("levels[0.2,0.9,0.5]").valid
    assert parse_operation("levels[0.2,0.3,0.5,0,1,-1,g,false]").valid


def test_brightness_full_only_touches_selected_channel() -> None:
    image = make_image()
    before = pixels_of(image)
    run("brightness[1,-1,r]", image)
    out = image.frames[0].pixels
    assert np.all(out[..., 0] == 255)
    assert np.array_equal(out[..., 1:], before[..., 1:])


def test_adjust_frame_out_of_range() -> None:
    image = make_image(frames=1)
    with pytest.raises(GeometryError):
        run("contrast[0.7,3]", image)


def test_contrast_requires_value_in_range() -> None:
    assert not parse_operation("contrast").valid
    assert not parse_operation("contrast[1.5]").valid


def test_quantize_exact_keeps_existing_palette() -> None:
    pixels = np.zeros((6, 6, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    pixels[:3, :3, 0] = 200
    pixels[3:, :, 1] = 90
    image = Image(Path("few.png"), [Frame(pixels.copy())])
    run("quantize[fixed,256,true]", image)
    assert np.array_equal(image.frames[0].pixels, pixels)


def test_quantize_to_two_greys() -> None:
    image = make_image(12, 12)
    alpha = image.frames[0].pixels[..., 3].copy()
    run("quantize[fixed,2,false]", image)
    out = image.frames[0].pixels
    colours = {tuple(int(v) for v in c) for c in out[..., :3].reshape(-1, 3)}
    assert colours <= {(0, 0, 0), (255, 255, 255)}
    assert np.array_equal(out[..., 3], alpha)


def test_quantize_ordered_dither_and_spatial() -> None:
    image = make_image(12, 12)
    run("quantize[fixed,8,false,*,0.5]", image)
    run("quantize[spatial,16,false,5]", image)
    assert (image.width, image.height) == (12, 12)


@pytest.mark.parametrize(
    "spec",
    ["quantize", "quantize[fixed]", "quantize[fixed,1]", "quantize[fixed,257]", "quantize[spatial,16,true,0]", "quantize[wu,16,true,2]", "quantize[wu,16,true,3,-1]"],
)
def test_quantize_validation(spec: str) -> None:
    assert not parse_operation(spec).valid


def test_channel_modes() -> None:
    image = make_image()
    before = pixels_of(image)
    run("channel[spread,g]", image)
    out = image.frames[0].pixels
    assert np.array_equal(out[..., 0], before[..., 1])
    assert np.array_equal(out[..., 2], before[..., 1])
    assert np.array_equal(out[..., 3], before[..., 3])

    image = make_image()
    run("channel[set,*,#102030]", image)
    assert np.all(image.frames[0].pixels[..., :3] == (16, 32, 48))

    image = make_image()
    before = pixels_of(image)
    run("channel[intensity]", image)
    out = image.frames[0].pixels
    assert np.array_equal(out[..., 0], out[..., 1])
    assert np.array_equal(out[..., 3], before[..., 3])


def test_channel_blend_over_background() -> None:
    pixels = np.zeros((2, 2, 4), dtype=np.uint8)
    pixels[0, 0] = (200, 100, 50, 255)
    image = Image(Path("alpha.png"), [Frame(pixels)])
    run("channel[blend,rgba,white]", image)
    out = image.frames[0].pixels
    assert tuple(out[0, 0]) == (200, 100, 50, 255)
    assert tuple(out[1, 1]) == (255, 255, 255, 255)


def test_swizzle_identity_and_swap() -> None:
    image = make_image()
    before = pixels_of(image)
    run("swizzle[rgba]", image)
    assert np.array_equal(image.frames[0].pixels, before)

    run("swizzle[bgr1]", image)
    out = image.frames[0].pixels
    assert np.array_equal(out[..., 0], before[..., 2])
    assert np.array_equal(out[..., 2], before[..., 0])
    assert np.all(out[..., 3] == 255)


def test_pixel_set_and_bounds() -> None:
    image = make_image()
    before = pixels_of(image)
    run("pixel[1,2,#00ff00,g]", image)
    out = image.frames[0].pixels
    assert out[2, 1, 1] == 255
    assert out[2, 1, 0] == before[2, 1, 0]
    with pytest.raises(GeometryError):
        run("pixel[8,0]", image)
    assert not parse_operation("pixel[1]").valid


def test_extract_writes_selected_frames(tmp_path: Path) -> None:
    frames = [Frame.blank(4, 4, (i * 40, 0, 0, 255)) for i in range(3)]
    image = Image(tmp_path / "anim.gif", frames)
    context = RunContext.from_config(BatchConfig(output_dir=tmp_path, out_type="png"))
    run("extract[0+2+5,frames,shot]", image, context)
    assert (tmp_path / "frames" / "shot_000.png").exists()
    assert (tmp_path / "frames" / "shot_002.png").exists()
    assert not (tmp_path / "frames" / "shot_001.png").exists()
    assert not (tmp_path / "frames" / "shot_005.png").exists()


def test_extract_defaults_to_image_stem(tmp_path: Path) -> None:
    image = Image(tmp_path / "clip.gif", [Frame.blank(4, 4)])
    run("extract[0]", image, RunContext.from_config(BatchConfig(output_dir=tmp_path)))
    assert (tmp_path / "clip_000.png").exists()


def test_extract_warns_when_a_name_is_split() -> None:
    op = parse_operation("extract[0-2,out,walk cycle]")
    assert op.valid
    assert op.base_name == "walk"
    assert op.warnings


def test_malformed_operation_is_never_applied() -> None:
    image = make_image()
    before = pixels_of(image)
    op = parse_operation("canvas[wide,8]")
    assert not op.valid
    assert op.errors
    with pytest.raises(OperationError) as exc:
        apply_operation(op, image)
    assert exc.value.code == "PARSE_ERROR"
    assert np.array_equal(image.frames[0].pixels, before)


def test_unknown_operation_and_strict_parsing() -> None:
    with pytest.raises(ParseError):
        parse_operation("sharpen[2]")
    with pytest.raises(ParseError):
        parse_operation("resize", strict=True)
    assert parse_operation("flip[h]", strict=True).valid


def test_describe_is_json_friendly() -> None:
    data = parse_operation("canvas[8,8,tl,red]").describe()
    assert data["op"] == "canvas"
    assert data["fields"]["anchor"] == "tl"
    assert data["fields"]["fill_colour"] == "#ff0000ff"
    assert isinstance(OperationRotate.parse("45"), OperationRotate)
    assert len(operations.operation_catalog()) == 15
