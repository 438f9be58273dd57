import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image as PILImage
from PIL import ImageFilter, ImageSequence

from pixbatch.core.errors import GeometryError, QuantizeError
from pixbatch.core.policy import (
    TRANSPARENT,
    Anchor,
    Colour,
    Comp,
    EdgeMode,
    ExactMode,
    QuantizeMethod,
    ResampleFilter,
    RotateMode,
)

DEFAULT_FRAME_DURATION_MS = 33.0

IMAGE_SUFFIXES = {
    ".png",
    ".apng",
    ".gif",
    ".webp",
    ".jpg",
    ".jpeg",
    ".bmp",
    ".tga",
    ".tif",
    ".tiff",
    ".ico",
    ".qoi",
}
MULTI_FRAME_SUFFIXES = {".png", ".apng", ".gif", ".webp", ".tif", ".tiff"}
APNG_SUFFIXES = {".png", ".apng"}
NO_ALPHA_SUFFIXES = {".jpg", ".jpeg", ".bmp"}

PIL_FILTERS = {
    ResampleFilter.NONE: PILImage.Resampling.NEAREST,
    ResampleFilter.NEAREST: PILImage.Resampling.NEAREST,
    ResampleFilter.BOX: PILImage.Resampling.BOX,
    ResampleFilter.BILINEAR: PILImage.Resampling.BILINEAR,
    ResampleFilter.BICUBIC: PILImage.Resampling.BICUBIC,
    ResampleFilter.HAMMING: PILImage.Resampling.HAMMING,
    ResampleFilter.LANCZOS: PILImage.Resampling.LANCZOS,
}

PIL_QUANTIZE = {
    QuantizeMethod.SPATIAL: PILImage.Quantize.MAXCOVERAGE,
    QuantizeMethod.NEU: PILImage.Quantize.MEDIANCUT,
    QuantizeMethod.WU: PILImage.Quantize.FASTOCTREE,
}

BAYER_4X4 = np.array(
    [
        [0, 8, 2, 10],
        [12, 4, 14, 6],
        [3, 11, 1, 9],
        [15, 7, 13, 5],
    ],
    dtype=np.float64,
)

# Swizzle sources: channel index 0-3, or a constant written as ("const", value).
SwizzleSource = Union[int, Tuple[str, int]]


@dataclass
class Frame:
    pixels: np.ndarray
    duration: float = DEFAULT_FRAME_DURATION_MS

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def with_pixels(self, pixels: np.ndarray) -> "Frame":
        return Frame(np.ascontiguousarray(pixels, dtype=np.uint8), self.duration)

    def to_pil(self) -> PILImage.Image:
        return PILImage.fromarray(np.ascontiguousarray(self.pixels))

    @classmethod
    def from_pil(cls, image: PILImage.Image, duration: float = DEFAULT_FRAME_DURATION_MS) -> "Frame":
        return cls(np.array(image.convert("RGBA"), dtype=np.uint8), duration)

    @classmethod
    def blank(cls, width: int, height: int, colour: Colour = TRANSPARENT) -> "Frame":
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[...] = colour
        return cls(pixels)


class Image:
    """A decoded, possibly multi-frame image with RGBA frames."""

    def __init__(self, path: Path, frames: List[Frame]):
        self.path = Path(path)
        self.frames = frames

    @classmethod
    def load(cls, path: Path) -> "Image":
        path = Path(path)
        return cls(path, load_frames(path))

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def width(self) -> int:
        return self.frames[0].width if self.frames else 0

    @property
    def height(self) -> int:
        return self.frames[0].height if self.frames else 0

    @property
    def num_frames(self) -> int:
        return len(self.frames)

    def replace_frames(self, frames: List[Frame]) -> None:
        self.frames = frames

    def map_frames(self, fn: Callable[[np.ndarray], np.ndarray], indices: Optional[Sequence[int]] = None) -> None:
        # Every new buffer is built before any is committed so a failure leaves the image untouched.
        selected = set(range(self.num_frames) if indices is None else indices)
        frames = [f.with_pixels(fn(f.pixels)) if i in selected else f for i, f in enumerate(self.frames)]
        self.replace_frames(frames)

    def save(self, path: Path) -> List[float]:
        return save_frames(self.frames, Path(path))


def load_frames(path: Path) -> List[Frame]:
    frames: List[Frame] = []
    with PILImage.open(path) as src:
        default = src.info.get("duration") or DEFAULT_FRAME_DURATION_MS
        for frame in ImageSequence.Iterator(src):
            rgba = frame.convert("RGBA")
            # Some decoders only fill in the duration once the frame is loaded.
            duration = frame.info.get("duration") or default
            frames.append(Frame.from_pil(rgba, float(duration)))
    return frames


def save_frames(frames: Sequence[Frame], path: Path, durations: Optional[Sequence[float]] = None) -> List[float]:
    """Write frames to path and return the durations of the frames the file actually holds.

    GIF and WebP writers fold identical neighbouring frames into one, summing
    their durations, so the result can be shorter than ``frames``. Formats
    without animation support keep only the first frame.
    """
    if not frames:
        raise GeometryError(f"No frames to write to {path}")
    suffix = path.suffix.lower()
    pil_frames = [f.to_pil() for f in frames]
    if suffix in NO_ALPHA_SUFFIXES:
        pil_frames = [f.convert("RGB") for f in pil_frames]
    path.parent.mkdir(parents=True, exist_ok=True)
    if durations is None:
        durations = [f.duration for f in frames]
    if len(pil_frames) > 1 and suffix in MULTI_FRAME_SUFFIXES:
        options = {}
        if suffix in APNG_SUFFIXES:
            # The APNG writer only folds neighbours that share a disposal op.
            options["disposal"] = [i % 2 for i in range(len(pil_frames))]
        pil_frames[0].save(
            path,
            save_all=True,
            append_images=pil_frames[1:],
            duration=[max(1, int(round(d))) for d in durations],
            loop=0,
            **options,
        )
        return [f.duration for f in load_frames(path)]
    pil_frames[0].save(path)
    return [float(durations[0])]


def anchor_origin(width: int, height: int, new_width: int, new_height: int, anchor: Anchor) -> Tuple[int, int]:
    columns = (0, width // 2 - new_width // 2, width - new_width)
    rows = (0, height // 2 - new_height // 2, height - new_height)
    return columns[anchor.column], rows[anchor.row]


def explicit_origin(width: int, height: int, new_width: int, new_height: int, x: int, y: int) -> Tuple[int, int]:
    return int(x * (width - new_width) / width), int(y * (height - new_height) / height)


def crop_pixels(pixels: np.ndarray, new_width: int, new_height: int, origin_x: int, origin_y: int, fill: Colour) -> np.ndarray:
    if new_width <= 0 or new_height <= 0:
        raise GeometryError(f"Crop region {new_width}x{new_height} is empty")
    height, width = pixels.shape[:2]
    out = np.empty((new_height, new_width, 4), dtype=np.uint8)
    out[...] = fill
    sx0, sy0 = max(origin_x, 0), max(origin_y, 0)
    sx1, sy1 = min(origin_x + new_width, width), min(origin_y + new_height, height)
    if sx1 > sx0 and sy1 > sy0:
        out[sy0 - origin_y : sy1 - origin_y, sx0 - origin_x : sx1 - origin_x] = pixels[sy0:sy1, sx0:sx1]
    return out


def _wrap_pad(src: int, dst: int) -> int:
    support = 3.0 * max(1.0, src / float(dst))
    return min(src, int(math.ceil(support)) + 2)


def resample_pixels(pixels: np.ndarray, width: int, height: int, filt: ResampleFilter, edge: EdgeMode) -> np.ndarray:
    src_h, src_w = pixels.shape[:2]
    resample = PIL_FILTERS[filt]
    if edge is EdgeMode.WRAP:
        px = _wrap_pad(src_w, width)
        py = _wrap_pad(src_h, height)
        padded = np.pad(pixels, ((py, py), (px, px), (0, 0)), mode="wrap")
        box = (px, py, px + src_w, py + src_h)
        return np.array(PILImage.fromarray(padded).resize((width, height), resample, box=box))
    return np.array(PILImage.fromarray(np.ascontiguousarray(pixels)).resize((width, height), resample))


def _leading_true(values: np.ndarray) -> int:
    falses = np.flatnonzero(~values)
    return int(falses[0]) if falses.size else int(values.size)


def border_extents(pixels: np.ndarray, colour: Colour, channels: Comp) -> Optional[Tuple[int, int, int, int]]:
    """Return (top, bottom, left, right) border thickness, or None if every pixel is border."""
    idx = channels.indices()
    target = np.array(colour, dtype=np.uint8)[idx]
    match = np.all(pixels[:, :, idx] == target, axis=2)
    height = match.shape[0]
    rows = match.all(axis=1)
    top = _leading_true(rows)
    if top == height:
        return None
    bottom = _leading_true(rows[::-1])
    columns = match[top : height - bottom].all(axis=0)
    left = _leading_true(columns)
    right = _leading_true(columns[::-1])
    return top, bottom, left, right


def flip_pixels(pixels: np.ndarray, horizontal: bool) -> np.ndarray:
    return np.ascontiguousarray(pixels[:, ::-1] if horizontal else pixels[::-1, :])


def rotate_exact_pixels(pixels: np.ndarray, exact: ExactMode) -> np.ndarray:
    turns = {ExactMode.ZERO: 0, ExactMode.ACW90: 1, ExactMode.CW90: -1, ExactMode.R180: 2}[exact]
    return np.ascontiguousarray(np.rot90(pixels, turns))


def inscribed_size(width: int, height: int, angle: float) -> Tuple[int, int]:
    """Largest axis-aligned rectangle inside a width x height rectangle rotated by angle."""
    if width <= 0 or height <= 0:
        return 0, 0
    width_is_longer = width >= height
    side_long, side_short = (width, height) if width_is_longer else (height, width)
    sin_a, cos_a = abs(math.sin(angle)), abs(math.cos(angle))
    if side_short <= 2.0 * sin_a * cos_a * side_long or abs(sin_a - cos_a) < 1e-10:
        x = 0.5 * side_short
        wr, hr = (x / sin_a, x / cos_a) if width_is_longer else (x / cos_a, x / sin_a)
    else:
        cos_2a = cos_a * cos_a - sin_a * sin_a
        wr = (width * cos_a - height * sin_a) / cos_2a
        hr = (height * cos_a - width * sin_a) / cos_2a
    return int(wr), int(hr)


def rotate_pixels(
    pixels: np.ndarray,
    angle: float,
    mode: RotateMode,
    filter_up: ResampleFilter,
    filter_down: ResampleFilter,
    fill: Colour,
) -> np.ndarray:
    height, width = pixels.shape[:2]
    degrees = math.degrees(angle)
    src = PILImage.fromarray(np.ascontiguousarray(pixels))
    if filter_up is ResampleFilter.NONE:
        rotated = src.rotate(degrees, resample=PILImage.Resampling.NEAREST, expand=True, fillcolor=fill)
    else:
        up = src.resize((width * 4, height * 4), PIL_FILTERS[filter_up])
        big = up.rotate(degrees, resample=PILImage.Resampling.NEAREST, expand=True, fillcolor=fill)
        big_w, big_h = big.size
        if filter_down is ResampleFilter.NONE:
            pad_w = (big_w + 3) // 4 * 4
            pad_h = (big_h + 3) // 4 * 4
            canvas = PILImage.new("RGBA", (pad_w, pad_h), fill)
            canvas.paste(big, ((pad_w - big_w) // 2, (pad_h - big_h) // 2))
            rotated = canvas.reduce(2).reduce(2)
        else:
            size = (max(1, int(round(big_w / 4.0))), max(1, int(round(big_h / 4.0))))
            rotated = big.resize(size, PIL_FILTERS[filter_down])

    out = np.array(rotated.convert("RGBA"), dtype=np.uint8)
    rot_h, rot_w = out.shape[:2]
    if mode is RotateMode.RESIZE:
        return out
    if mode is RotateMode.FILL:
        new_w, new_h = width, height
    else:
        new_w, new_h = inscribed_size(width, height, angle)
        if new_w <= 0 or new_h <= 0:
            raise GeometryError(f"Rotation by {degrees:.3f} degrees leaves no croppable area")
    return crop_pixels(out, new_w, new_h, rot_w // 2 - new_w // 2, rot_h // 2 - new_h // 2, fill)


def levels_lut(
    black: float,
    mid: float,
    white: float,
    out_black: float,
    out_white: float,
    power_mid_gamma: bool,
) -> np.ndarray:
    values = np.arange(256, dtype=np.float64) / 255.0
    if mid < 0.0:
        mid = (black + white) / 2.0
    if white > black:
        t = np.clip((values - black) / (white - black), 0.0, 1.0)
        m = min(max((mid - black) / (white - black), 1e-4), 1.0 - 1e-4)
        if power_mid_gamma:
            t = t ** (math.log(0.5) / math.log(m))
        else:
            t = np.where(t < m, 0.5 * t / m, 0.5 + 0.5 * (t - m) / (1.0 - m))
    else:
        t = (values >= white).astype(np.float64)
    out = out_black + t * (out_white - out_black)
    return np.clip(np.rint(out * 255.0), 0, 255).astype(np.uint8)


def contrast_lut(contrast: float) -> np.ndarray:
    values = np.arange(256, dtype=np.float64) / 255.0
    slope = math.tan(min(max(contrast, 0.0), 1.0) * math.pi / 2.0)
    out = (values - 0.5) * slope + 0.5
    return np.clip(np.rint(out * 255.0), 0, 255).astype(np.uint8)


def brightness_lut(brightness: float) -> np.ndarray:
    values = np.arange(256, dtype=np.float64) / 255.0
    out = values + 2.0 * (brightness - 0.5)
    return np.clip(np.rint(out * 255.0), 0, 255).astype(np.uint8)


def apply_lut(pixels: np.ndarray, lut: np.ndarray, channels: Sequence[int]) -> np.ndarray:
    out = pixels.copy()
    for c in channels:
        out[..., c] = lut[pixels[..., c]]
    return out


def _fixed_palette(num_colours: int) -> PILImage.Image:
    if num_colours < 8:
        levels = [int(round(i * 255.0 / (num_colours - 1))) for i in range(num_colours)]
        colours = [(v, v, v) for v in levels]
    else:
        r = g = b = 1
        while (r + 1) ** 3 <= num_colours:
            r += 1
        g = b = r
        if (r + 1) * g * b <= num_colours:
            r += 1
        if r * (g + 1) * b <= num_colours:
            g += 1

        def ramp(n: int) -> List[int]:
            return [int(round(i * 255.0 / (n - 1))) for i in range(n)]

        colours = [(rv, gv, bv) for rv in ramp(r) for gv in ramp(g) for bv in ramp(b)]
    flat: List[int] = []
    for colour in colours + [colours[0]] * (256 - len(colours)):
        flat.extend(colour)
    palette = PILImage.new("P", (1, 1))
    palette.putpalette(flat)
    return palette


def _ordered_noise(rgb: np.ndarray, amount: float, num_colours: int) -> np.ndarray:
    height, width = rgb.shape[:2]
    step = 255.0 / max(1.0, num_colours ** (1.0 / 3.0) - 1.0)
    threshold = (BAYER_4X4 + 0.5) / 16.0 - 0.5
    tiled = np.tile(threshold, (height // 4 + 1, width // 4 + 1))[:height, :width]
    noisy = rgb.astype(np.float64) + (tiled * step * amount)[..., None]
    return np.clip(np.rint(noisy), 0, 255).astype(np.uint8)


def quantize_pixels(
    pixels: np.ndarray,
    method: QuantizeMethod,
    num_colours: int,
    check_exact: bool,
    samp_filt: int,
    dither: float,
) -> np.ndarray:
    if pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise QuantizeError("Cannot quantize an empty frame")
    rgb_array = np.ascontiguousarray(pixels[..., :3])
    rgb = PILImage.fromarray(rgb_array)
    if check_exact and rgb.getcolors(maxcolors=num_colours) is not None:
        return pixels.copy()

    try:
        if method is QuantizeMethod.FIXED:
            palette = _fixed_palette(num_colours)
        else:
            source = rgb
            if method is QuantizeMethod.SPATIAL and samp_filt > 1:
                source = rgb.filter(ImageFilter.BoxBlur((samp_filt - 1) / 2.0))
            palette = source.quantize(colors=num_colours, method=PIL_QUANTIZE[method], dither=PILImage.Dither.NONE)
        if dither == 0.0:
            result = rgb.quantize(palette=palette, dither=PILImage.Dither.FLOYDSTEINBERG)
        else:
            noisy = PILImage.fromarray(_ordered_noise(rgb_array, dither, num_colours))
            result = noisy.quantize(palette=palette, dither=PILImage.Dither.NONE)
    except (ValueError, OSError) as exc:
        raise QuantizeError(f"Quantization failed: {exc}") from exc

    out = pixels.copy()
    out[..., :3] = np.array(result.convert("RGB"), dtype=np.uint8)
    return out


def set_channels(pixels: np.ndarray, channels: Comp, colour: Colour) -> np.ndarray:
    out = pixels.copy()
    for c in channels.indices():
        out[..., c] = colour[c]
    return out


def blend_channels(pixels: np.ndarray, channels: Comp, colour: Colour) -> np.ndarray:
    out = pixels.copy()
    alpha = pixels[..., 3].astype(np.float64) / 255.0
    for c in channels.indices():
        if c == 3:
            continue
        blended = pixels[..., c].astype(np.float64) * alpha + colour[c] * (1.0 - alpha)
        out[..., c] = np.clip(np.rint(blended), 0, 255).astype(np.uint8)
    if channels & Comp.A:
        out[..., 3] = colour[3]
    return out


def spread_channel(pixels: np.ndarray, channels: Comp) -> np.ndarray:
    out = pixels.copy()
    source = channels.indices()[0]
    out[..., :3] = pixels[..., source : source + 1]
    return out


def intensity_channels(pixels: np.ndarray, channels: Comp) -> np.ndarray:
    out = pixels.copy()
    rgb = pixels[..., :3].astype(np.float64)
    intensity = np.clip(np.rint(rgb @ np.array([0.299, 0.587, 0.114])), 0, 255).astype(np.uint8)
    for c in channels.indices():
        out[..., c] = intensity
    return out


def swizzle_pixels(pixels: np.ndarray, mapping: Sequence[SwizzleSource]) -> np.ndarray:
    out = np.empty_like(pixels)
    for dst, src in enumerate(mapping):
        if isinstance(src, tuple):
            out[..., dst] = src[1]
        else:
            out[..., dst] = pixels[..., src]
    return out


def set_pixel(pixels: np.ndarray, x: int, y: int, colour: Colour, channels: Comp) -> np.ndarray:
    height, width = pixels.shape[:2]
    if not (0 <= x < width and 0 <= y < height):
        raise GeometryError(f"Pixel ({x}, {y}) is outside the {width}x{height} image")
    out = pixels.copy()
    for c in channels.indices():
        out[y, x, c] = colour[c]
    return out


def fit_into_cell(frame: Frame, cell_width: int, cell_height: int, fill: Colour) -> np.ndarray:
    if frame.width == cell_width and frame.height == cell_height:
        return frame.pixels
    src = frame.to_pil()
    scale = min(cell_width / float(frame.width), cell_height / float(frame.height))
    size = (max(1, int(round(frame.width * scale))), max(1, int(round(frame.height * scale))))
    fitted = np.array(src.resize(size, PILImage.Resampling.LANCZOS), dtype=np.uint8)
    return crop_pixels(fitted, cell_width, cell_height, size[0] // 2 - cell_width // 2, size[1] // 2 - cell_height // 2, fill)
