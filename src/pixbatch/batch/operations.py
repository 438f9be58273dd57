import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar

from pixbatch.batch.outputs import RunContext
from pixbatch.core import image as pixels
from pixbatch.core.errors import GeometryError, OperationError, ParseError
from pixbatch.core.image import Image
from pixbatch.core.logger import get_logger
from pixbatch.core.policy import (
    BLACK,
    TRANSPARENT,
    AdjChan,
    Anchor,
    AspectMode,
    ChanMode,
    Colour,
    Comp,
    CropMode,
    EdgeMode,
    ExactMode,
    FlipMode,
    IntervalSet,
    QuantizeMethod,
    ResampleFilter,
    RotateMode,
    format_colour,
    is_default,
    parse_bool,
    parse_channels,
    parse_colour,
    parse_enum,
    parse_float,
    parse_int,
    split_args,
    split_spec,
)

log = get_logger(__name__)

T = TypeVar("T")
Parser = Callable[[str], Optional[Any]]

SAMPLE_FILTERS = (1, 3, 5)
SWIZZLE_CHARS = "RGBA01"


class ArgReader:
    """Positional token access that records diagnostics as it goes."""

    def __init__(self, op_name: str, text: str):
        self.op_name = op_name
        self.tokens = split_args(text)
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def token(self, index: int) -> Optional[str]:
        return self.tokens[index] if index < len(self.tokens) else None

    def given(self, index: int) -> bool:
        return not is_default(self.token(index))

    def error(self, message: str) -> None:
        self.errors.append(f"{self.op_name}: {message}")

    def warn(self, message: str) -> None:
        self.warnings.append(f"{self.op_name}: {message}")

    def required(self, index: int, label: str, parser: Parser) -> Optional[Any]:
        token = self.token(index)
        if is_default(token):
            self.error(f"argument {index + 1} ({label}) is required")
            return None
        value = parser(token)
        if value is None:
            self.error(f"argument {index + 1} ({label}) is invalid: {token!r}")
        return value

    def optional(self, index: int, label: str, parser: Parser, default: T) -> T:
        token = self.token(index)
        if is_default(token):
            return default
        value = parser(token)
        if value is None:
            self.warn(f"argument {index + 1} ({label}) is invalid: {token!r}, using default")
            return default
        return value

    def ignore_after(self, used: int) -> None:
        if len(self.tokens) > used:
            self.warn(f"ignoring extra argument(s) {' '.join(self.tokens[used:])!r}; names cannot contain spaces")

    def finish(self, op: "Operation") -> "Operation":
        op.errors = list(self.errors)
        op.warnings = list(self.warnings)
        op.valid = not self.errors
        return op


def _enum(enum_cls: Type[Enum]) -> Parser:
    return lambda token: parse_enum(enum_cls, token)


def _resize_filter(token: str) -> Optional[ResampleFilter]:
    filt = parse_enum(ResampleFilter, token)
    return None if filt is ResampleFilter.NONE else filt


def _ratio(token: str) -> Optional[Tuple[int, int]]:
    parts = token.split(":")
    if len(parts) != 2:
        return None
    num, den = parse_int(parts[0]), parse_int(parts[1])
    if num is None or den is None or num <= 0 or den <= 0:
        return None
    return num, den


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value if not isinstance(value, Comp) else value.letters()
    if isinstance(value, IntervalSet):
        return str(value)
    if isinstance(value, tuple) and len(value) == 4 and all(isinstance(v, int) for v in value):
        return format_colour(value)
    if isinstance(value, list):
        return [jsonable(v) for v in value]
    return value


@dataclass
class Operation:
    name: ClassVar[str] = ""
    grammar: ClassVar[str] = ""

    valid: bool = field(default=False, repr=False)
    errors: List[str] = field(default_factory=list, repr=False)
    warnings: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def parse(cls, text: str) -> "Operation":
        raise NotImplementedError

    def apply(self, image: Image, context: Optional[RunContext] = None) -> None:
        apply_operation(self, image, context)

    def describe(self) -> Dict[str, Any]:
        skip = {"valid", "errors", "warnings"}
        return {
            "op": self.name,
            "valid": self.valid,
            "fields": {f.name: jsonable(getattr(self, f.name)) for f in fields(self) if f.name not in skip},
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class OperationPixel(Operation):
    name: ClassVar[str] = "pixel"
    grammar: ClassVar[str] = "pixel[x,y,colour,chans]"

    x: int = 0
    y: int = 0
    colour: Colour = BLACK
    channels: Comp = Comp.RGBA

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        op = cls(
            x=a.required(0, "x", parse_int) or 0,
            y=a.required(1, "y", parse_int) or 0,
            colour=a.optional(2, "colour", parse_colour, BLACK),
            channels=a.optional(3, "chans", parse_channels, Comp.RGBA),
        )
        return a.finish(op)


@dataclass
class OperationResize(Operation):
    name: ClassVar[str] = "resize"
    grammar: ClassVar[str] = "resize[w,h,filter,edge]"

    width: int = 0  # 0 derives the dimension from the current aspect.
    height: int = 0
    filter: ResampleFilter = ResampleFilter.BILINEAR
    edge_mode: EdgeMode = EdgeMode.CLAMP

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        width = a.required(0, "width", parse_int) if a.given(0) else 0
        height = a.required(1, "height", parse_int) if a.given(1) else 0
        if not a.given(0) and not a.given(1):
            a.error("width and height are required (one of them may be '*')")
        for index, label, value in ((0, "width", width), (1, "height", height)):
            if a.given(index) and value is not None and value < 4:
                a.error(f"{label} must be >= 4, got {value}")
        op = cls(
            width=width or 0,
            height=height or 0,
            filter=a.optional(2, "filter", _resize_filter, ResampleFilter.BILINEAR),
            edge_mode=a.optional(3, "edge", _enum(EdgeMode), EdgeMode.CLAMP),
        )
        return a.finish(op)


def _parse_placement(a: ArgReader, first: int) -> Dict[str, Any]:
    anchor = a.optional(first, "anchor", _enum(Anchor), Anchor.MM)
    fill = a.optional(first + 1, "fill", parse_colour, BLACK)
    anchor_x = a.optional(first + 2, "anchorx", parse_int, -1)
    anchor_y = a.optional(first + 3, "anchory", parse_int, -1)
    if (anchor_x >= 0) != (anchor_y >= 0):
        a.warn("anchorx and anchory must both be given, using the anchor instead")
        anchor_x = anchor_y = -1
    if anchor_x >= 0 and a.given(first):
        a.error("anchor and anchorx/anchory are mutually exclusive")
    return {"anchor": anchor, "fill_colour": fill, "anchor_x": anchor_x, "anchor_y": anchor_y}


def _placement_origin(op: Any, image: Image, new_width: int, new_height: int) -> Tuple[int, int]:
    if op.anchor_x >= 0 and op.anchor_y >= 0:
        return pixels.explicit_origin(image.width, image.height, new_width, new_height, op.anchor_x, op.anchor_y)
    return pixels.anchor_origin(image.width, image.height, new_width, new_height, op.anchor)


@dataclass
class OperationCanvas(Operation):
    name: ClassVar[str] = "canvas"
    grammar: ClassVar[str] = "canvas[w,h,anchor,fill,anchorx,anchory]"

    width: int = 0
    height: int = 0
    anchor: Anchor = Anchor.MM
    fill_colour: Colour = BLACK
    anchor_x: int = -1
    anchor_y: int = -1

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        width = a.required(0, "width", parse_int)
        height = a.required(1, "height", parse_int)
        for label, value in (("width", width), ("height", height)):
            if value is not None and value <= 0:
                a.error(f"{label} must be > 0, got {value}")
        op = cls(width=width or 0, height=height or 0, **_parse_placement(a, 2))
        return a.finish(op)


@dataclass
class OperationAspect(Operation):
    name: ClassVar[str] = "aspect"
    grammar: ClassVar[str] = "aspect[num:den,mode,anchor,fill,anchorx,anchory]"

    num: int = 16
    den: int = 9
    mode: AspectMode = AspectMode.CROP
    anchor: Anchor = Anchor.MM
    fill_colour: Colour = BLACK
    anchor_x: int = -1
    anchor_y: int = -1

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        num, den = a.required(0, "num:den", _ratio) or (16, 9)
        mode = a.optional(1, "mode", _enum(AspectMode), AspectMode.CROP)
        op = cls(num=num, den=den, mode=mode, **_parse_placement(a, 2))
        return a.finish(op)

    def target_size(self, width: int, height: int) -> Tuple[int, int]:
        src_aspect = width / float(height)
        dst_aspect = self.num / float(self.den)
        if abs(dst_aspect - src_aspect) < 1e-6:
            return width, height
        if self.mode is AspectMode.CROP:
            if dst_aspect > src_aspect:
                return width, _round_half_up(width / dst_aspect)
            return _round_half_up(height * dst_aspect), height
        if dst_aspect > src_aspect:
            return _round_half_up(height * dst_aspect), height
        return width, _round_half_up(width / dst_aspect)


@dataclass
class OperationDeborder(Operation):
    name: ClassVar[str] = "deborder"
    grammar: ClassVar[str] = "deborder[colour,chans]"

    use_test_colour: bool = False
    test_colour: Colour = BLACK
    channels: Comp = Comp.RGBA

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        colour = a.optional(0, "colour", parse_colour, None)
        op = cls(
            use_test_colour=colour is not None,
            test_colour=colour or BLACK,
            channels=a.optional(1, "chans", parse_channels, Comp.RGBA),
        )
        return a.finish(op)


@dataclass
class OperationCrop(Operation):
    name: ClassVar[str] = "crop"
    grammar: ClassVar[str] = "crop[mode,x,y,w|maxx,h|maxy,fill]"

    mode: CropMode = CropMode.ABSOLUTE
    origin_x: int = 0
    origin_y: int = 0
    width_or_max_x: int = 4
    height_or_max_y: int = 4
    fill_colour: Colour = TRANSPARENT

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        mode = a.optional(0, "mode", _enum(CropMode), CropMode.ABSOLUTE)
        wlabel, hlabel = ("w", "h") if mode is CropMode.ABSOLUTE else ("maxx", "maxy")
        origin_x = a.required(1, "x", parse_int)
        origin_y = a.required(2, "y", parse_int)
        w = a.required(3, wlabel, parse_int)
        h = a.required(4, hlabel, parse_int)
        for label, value in ((wlabel, w), (hlabel, h)):
            if value is not None and value < 0:
                a.error(f"{label} must be >= 0, got {value}")
        op = cls(
            mode=mode,
            origin_x=origin_x or 0,
            origin_y=origin_y or 0,
            width_or_max_x=4 if w is None else w,
            height_or_max_y=4 if h is None else h,
            fill_colour=a.optional(5, "fill", parse_colour, TRANSPARENT),
        )
        return a.finish(op)

    def size(self) -> Tuple[int, int]:
        if self.mode is CropMode.ABSOLUTE:
            return self.width_or_max_x, self.height_or_max_y
        return self.width_or_max_x - self.origin_x, self.height_or_max_y - self.origin_y


@dataclass
class OperationFlip(Operation):
    name: ClassVar[str] = "flip"
    grammar: ClassVar[str] = "flip[h|v]"

    mode: FlipMode = FlipMode.HORIZONTAL

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        return a.finish(cls(mode=a.optional(0, "mode", _enum(FlipMode), FlipMode.HORIZONTAL)))


def normalize_degrees(degrees: float) -> float:
    """Wrap an angle in degrees into (-180, 180]."""
    d = math.fmod(degrees, 360.0)
    if d <= -180.0:
        d += 360.0
    elif d > 180.0:
        d -= 360.0
    return d


def exact_mode_for(degrees: float) -> ExactMode:
    return {0.0: ExactMode.ZERO, 90.0: ExactMode.ACW90, -90.0: ExactMode.CW90, 180.0: ExactMode.R180}.get(
        normalize_degrees(degrees) + 0.0, ExactMode.OFF
    )


@dataclass
class OperationRotate(Operation):
    name: ClassVar[str] = "rotate"
    grammar: ClassVar[str] = "rotate[degrees,mode,upfilter,downfilter,fill]"

    angle: float = 0.0  # Radians, anticlockwise, in (-pi, pi].
    exact: ExactMode = ExactMode.ZERO
    mode: RotateMode = RotateMode.CROP
    filter_up: ResampleFilter = ResampleFilter.BILINEAR
    filter_down: ResampleFilter = ResampleFilter.NONE
    fill_colour: Colour = BLACK

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        degrees = a.required(0, "degrees", parse_float)
        degrees = normalize_degrees(degrees or 0.0)
        op = cls(
            angle=math.radians(degrees),
            exact=exact_mode_for(degrees),
            mode=a.optional(1, "mode", _enum(RotateMode), RotateMode.CROP),
            filter_up=a.optional(2, "upfilter", _enum(ResampleFilter), ResampleFilter.BILINEAR),
            filter_down=a.optional(3, "downfilter", _enum(ResampleFilter), ResampleFilter.NONE),
            fill_colour=a.optional(4, "fill", parse_colour, BLACK),
        )
        return a.finish(op)


def _parse_unit(a: ArgReader, index: int, label: str, default: float) -> float:
    value = a.optional(index, label, parse_float, default)
    if not 0.0 <= value <= 1.0:
        a.error(f"{label} must be within [0, 1], got {value}")
    return value


def _parse_frame(a: ArgReader, index: int) -> int:
    frame = a.optional(index, "frame", parse_int, -1)
    if frame < -1:
        a.error(f"frame must be -1 (all) or a frame index, got {frame}")
    return frame


@dataclass
class OperationLevels(Operation):
    name: ClassVar[str] = "levels"
    grammar: ClassVar[str] = "levels[black,mid,white,outblack,outwhite,frame,chan,powermid]"

    black_point: float = 0.0
    mid_point: float = -1.0  # -1 is halfway between black and white.
    white_point: float = 1.0
    out_black_point: float = 0.0
    out_white_point: float = 1.0
    frame_number: int = -1
    channels: AdjChan = AdjChan.RGB
    power_mid_gamma: bool = True

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        black = _parse_unit(a, 0, "black", 0.0)
        mid = a.optional(1, "mid", parse_float, -1.0)
        white = _parse_unit(a, 2, "white", 1.0)
        if black > white:
            a.error(f"black ({black}) must not exceed white ({white})")
        if mid != -1.0 and not black <= mid <= white:
            a.error(f"mid ({mid}) must lie between black ({black}) and white ({white}), or be -1")
        op = cls(
            black_point=black,
            mid_point=mid,
            white_point=white,
            out_black_point=_parse_unit(a, 3, "outblack", 0.0),
            out_white_point=_parse_unit(a, 4, "outwhite", 1.0),
            frame_number=_parse_frame(a, 5),
            channels=a.optional(6, "chan", _enum(AdjChan), AdjChan.RGB),
            power_mid_gamma=a.optional(7, "powermid", parse_bool, True),
        )
        return a.finish(op)


@dataclass
class OperationContrast(Operation):
    name: ClassVar[str] = "contrast"
    grammar: ClassVar[str] = "contrast[value,frame,chan]"

    contrast: float = 0.5
    frame_number: int = -1
    channels: AdjChan = AdjChan.RGB

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        value = a.required(0, "value", parse_float)
        if value is not None and not 0.0 <= value <= 1.0:
            a.error(f"value must be within [0, 1], got {value}")
        op = cls(
            contrast=0.5 if value is None else value,
            frame_number=_parse_frame(a, 1),
            channels=a.optional(2, "chan", _enum(AdjChan), AdjChan.RGB),
        )
        return a.finish(op)


@dataclass
class OperationBrightness(Operation):
    name: ClassVar[str] = "brightness"
    grammar: ClassVar[str] = "brightness[value,frame,chan]"

    brightness: float = 0.5
    frame_number: int = -1
    channels: AdjChan = AdjChan.RGB

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        value = a.required(0, "value", parse_float)
        if value is not None and not 0.0 <= value <= 1.0:
            a.error(f"value must be within [0, 1], got {value}")
        op = cls(
            brightness=0.5 if value is None else value,
            frame_number=_parse_frame(a, 1),
            channels=a.optional(2, "chan", _enum(AdjChan), AdjChan.RGB),
        )
        return a.finish(op)


@dataclass
class OperationQuantize(Operation):
    name: ClassVar[str] = "quantize"
    grammar: ClassVar[str] = "quantize[method,colours,exact,sampfilt,dither]"

    method: QuantizeMethod = QuantizeMethod.FIXED
    num_colours: int = 256
    check_exact: bool = True
    samp_filt: int = 0  # 0 means unset; the spatial method then uses 3.
    dither: float = 0.0  # 0 selects error diffusion.

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        method = a.required(0, "method", _enum(QuantizeMethod))
        colours = a.required(1, "colours", parse_int)
        if colours is not None and not 2 <= colours <= 256:
            a.error(f"colours must be within [2, 256], got {colours}")
        samp_filt = 0
        if a.given(3):
            samp_filt = a.required(3, "sampfilt", parse_int) or 0
            if samp_filt not in SAMPLE_FILTERS:
                a.error(f"sampfilt must be one of {SAMPLE_FILTERS}, got {a.token(3)!r}")
        dither = a.optional(4, "dither", parse_float, 0.0)
        if dither < 0.0:
            a.error(f"dither must be >= 0, got {dither}")
        op = cls(
            method=method or QuantizeMethod.FIXED,
            num_colours=colours or 256,
            check_exact=a.optional(2, "exact", parse_bool, True),
            samp_filt=samp_filt,
            dither=dither,
        )
        return a.finish(op)


CHANNEL_MODE_DEFAULTS = {
    ChanMode.SET: Comp.RGB,
    ChanMode.BLEND: Comp.RGBA,
    ChanMode.SPREAD: Comp.R,
    ChanMode.INTENSITY: Comp.RGB,
}


@dataclass
class OperationChannel(Operation):
    name: ClassVar[str] = "channel"
    grammar: ClassVar[str] = "channel[mode,chans,colour]"

    mode: ChanMode = ChanMode.BLEND
    channels: Comp = Comp.RGBA
    colour: Colour = BLACK

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        mode = a.optional(0, "mode", _enum(ChanMode), ChanMode.BLEND)
        op = cls(
            mode=mode,
            channels=a.optional(1, "chans", parse_channels, CHANNEL_MODE_DEFAULTS[mode]),
            colour=a.optional(2, "colour", parse_colour, BLACK),
        )
        return a.finish(op)


def _swizzle(token: str) -> Optional[str]:
    key = token.strip().upper()
    if not 0 < len(key) <= 4 or any(c not in SWIZZLE_CHARS + "*" for c in key):
        return None
    key = key.ljust(4, "*")
    return "".join("RGBA"[i] if c == "*" else c for i, c in enumerate(key))


@dataclass
class OperationSwizzle(Operation):
    name: ClassVar[str] = "swizzle"
    grammar: ClassVar[str] = "swizzle[rgba]"

    swizzle_r: str = "R"
    swizzle_g: str = "G"
    swizzle_b: str = "B"
    swizzle_a: str = "A"

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        mapping = a.optional(0, "rgba", _swizzle, "RGBA")
        return a.finish(cls(swizzle_r=mapping[0], swizzle_g=mapping[1], swizzle_b=mapping[2], swizzle_a=mapping[3]))

    def mapping(self) -> List[pixels.SwizzleSource]:
        out: List[pixels.SwizzleSource] = []
        for c in (self.swizzle_r, self.swizzle_g, self.swizzle_b, self.swizzle_a):
            out.append(("const", 255 if c == "1" else 0) if c in "01" else "RGBA".index(c))
        return out


@dataclass
class OperationExtract(Operation):
    name: ClassVar[str] = "extract"
    grammar: ClassVar[str] = "extract[frames,subfolder,basename] (names end at a comma or space)"

    frame_set: IntervalSet = field(default_factory=IntervalSet)
    sub_folder: str = ""
    base_name: str = ""

    @classmethod
    def parse(cls, text: str) -> Operation:
        a = ArgReader(cls.name, text)
        frame_set = a.required(0, "frames", IntervalSet.parse)
        op = cls(
            frame_set=frame_set or IntervalSet(),
            sub_folder=a.optional(1, "subfolder", str.strip, ""),
            base_name=a.optional(2, "basename", str.strip, ""),
        )
        a.ignore_after(3)
        return a.finish(op)


OPERATIONS: Dict[str, Type[Operation]] = {
    cls.name: cls
    for cls in (
        OperationPixel,
        OperationResize,
        OperationCanvas,
        OperationAspect,
        OperationDeborder,
        OperationCrop,
        OperationFlip,
        OperationRotate,
        OperationLevels,
        OperationContrast,
        OperationBrightness,
        OperationQuantize,
        OperationChannel,
        OperationSwizzle,
        OperationExtract,
    )
}


def parse_operation(spec: str, strict: bool = False) -> Operation:
    name, args = split_spec(spec)
    cls = OPERATIONS.get(name)
    if cls is None:
        raise ParseError(f"Unknown operation: {spec!r}")
    op = cls.parse(args)
    for warning in op.warnings:
        log.warning(warning)
    if strict and not op.valid:
        raise ParseError("; ".join(op.errors))
    return op


def _apply_pixel(op: OperationPixel, image: Image, context: RunContext) -> None:
    image.map_frames(lambda p: pixels.set_pixel(p, op.x, op.y, op.colour, op.channels))


def _apply_resize(op: OperationResize, image: Image, context: RunContext) -> None:
    width, height = op.width, op.height
    if not width:
        width = max(4, _round_half_up(height * image.width / float(image.height)))
    if not height:
        height = max(4, _round_half_up(width * image.height / float(image.width)))
    if (width, height) == (image.width, image.height):
        return
    image.map_frames(lambda p: pixels.resample_pixels(p, width, height, op.filter, op.edge_mode))


def _crop_all(image: Image, width: int, height: int, origin: Tuple[int, int], fill: Colour) -> None:
    image.map_frames(lambda p: pixels.crop_pixels(p, width, height, origin[0], origin[1], fill))


def _apply_canvas(op: OperationCanvas, image: Image, context: RunContext) -> None:
    if (op.width, op.height) == (image.width, image.height):
        return
    _crop_all(image, op.width, op.height, _placement_origin(op, image, op.width, op.height), op.fill_colour)


def _apply_aspect(op: OperationAspect, image: Image, context: RunContext) -> None:
    width, height = op.target_size(image.width, image.height)
    if (width, height) == (image.width, image.height):
        return
    _crop_all(image, width, height, _placement_origin(op, image, width, height), op.fill_colour)


def _apply_deborder(op: OperationDeborder, image: Image, context: RunContext) -> None:
    colour = op.test_colour if op.use_test_colour else tuple(int(c) for c in image.frames[0].pixels[0, 0])
    extents = [pixels.border_extents(f.pixels, colour, op.channels) for f in image.frames]
    found = [e for e in extents if e is not None]
    if not found:
        raise GeometryError(f"Every pixel matches border colour {format_colour(colour)}; nothing would remain")
    top, bottom, left, right = (min(e[i] for e in found) for i in range(4))
    if not any((top, bottom, left, right)):
        return
    width = image.width - left - right
    height = image.height - top - bottom
    _crop_all(image, width, height, (left, top), TRANSPARENT)


def _apply_crop(op: OperationCrop, image: Image, context: RunContext) -> None:
    width, height = op.size()
    _crop_all(image, width, height, (op.origin_x, op.origin_y), op.fill_colour)


def _apply_flip(op: OperationFlip, image: Image, context: RunContext) -> None:
    horizontal = op.mode is FlipMode.HORIZONTAL
    image.map_frames(lambda p: pixels.flip_pixels(p, horizontal))


def _apply_rotate(op: OperationRotate, image: Image, context: RunContext) -> None:
    if op.exact is ExactMode.ZERO:
        return
    if op.exact is not ExactMode.OFF:
        image.map_frames(lambda p: pixels.rotate_exact_pixels(p, op.exact))
        return
    image.map_frames(
        lambda p: pixels.rotate_pixels(p, op.angle, op.mode, op.filter_up, op.filter_down, op.fill_colour)
    )


def _frame_indices(image: Image, frame_number: int) -> Optional[List[int]]:
    if frame_number == -1:
        return None
    if frame_number >= image.num_frames:
        raise GeometryError(f"Frame {frame_number} out of range, image has {image.num_frames} frame(s)")
    return [frame_number]


def _apply_levels(op: OperationLevels, image: Image, context: RunContext) -> None:
    lut = pixels.levels_lut(
        op.black_point, op.mid_point, op.white_point, op.out_black_point, op.out_white_point, op.power_mid_gamma
    )
    chans = op.channels.indices()
    image.map_frames(lambda p: pixels.apply_lut(p, lut, chans), _frame_indices(image, op.frame_number))


def _apply_contrast(op: OperationContrast, image: Image, context: RunContext) -> None:
    lut = pixels.contrast_lut(op.contrast)
    chans = op.channels.indices()
    image.map_frames(lambda p: pixels.apply_lut(p, lut, chans), _frame_indices(image, op.frame_number))


def _apply_brightness(op: OperationBrightness, image: Image, context: RunContext) -> None:
    lut = pixels.brightness_lut(op.brightness)
    chans = op.channels.indices()
    image.map_frames(lambda p: pixels.apply_lut(p, lut, chans), _frame_indices(image, op.frame_number))


def _apply_quantize(op: OperationQuantize, image: Image, context: RunContext) -> None:
    samp_filt = op.samp_filt or 3
    image.map_frames(
        lambda p: pixels.quantize_pixels(p, op.method, op.num_colours, op.check_exact, samp_filt, op.dither)
    )


def _apply_channel(op: OperationChannel, image: Image, context: RunContext) -> None:
    if op.mode is ChanMode.SET:
        image.map_frames(lambda p: pixels.set_channels(p, op.channels, op.colour))
    elif op.mode is ChanMode.BLEND:
        image.map_frames(lambda p: pixels.blend_channels(p, op.channels, op.colour))
    elif op.mode is ChanMode.SPREAD:
        image.map_frames(lambda p: pixels.spread_channel(p, op.channels))
    else:
        image.map_frames(lambda p: pixels.intensity_channels(p, op.channels))


def _apply_swizzle(op: OperationSwizzle, image: Image, context: RunContext) -> None:
    mapping = op.mapping()
    if mapping == [0, 1, 2, 3]:
        return
    image.map_frames(lambda p: pixels.swizzle_pixels(p, mapping))


def _apply_extract(op: OperationExtract, image: Image, context: RunContext) -> None:
    base = op.base_name or image.path.stem
    folder = image.path.parent / op.sub_folder if op.sub_folder else image.path.parent
    for index in op.frame_set.indices(image.num_frames):
        path = folder / f"{base}_{index:03d}.{context.config.out_type}"
        context.outputs.claim(path, f"extract({image.name})")
        pixels.save_frames([image.frames[index]], path)
        log.info("Extracted frame %d of %s to %s", index, image.name, path)


_APPLIERS: Dict[Type[Operation], Callable[[Any, Image, RunContext], None]] = {
    OperationPixel: _apply_pixel,
    OperationResize: _apply_resize,
    OperationCanvas: _apply_canvas,
    OperationAspect: _apply_aspect,
    OperationDeborder: _apply_deborder,
    OperationCrop: _apply_crop,
    OperationFlip: _apply_flip,
    OperationRotate: _apply_rotate,
    OperationLevels: _apply_levels,
    OperationContrast: _apply_contrast,
    OperationBrightness: _apply_brightness,
    OperationQuantize: _apply_quantize,
    OperationChannel: _apply_channel,
    OperationSwizzle: _apply_swizzle,
    OperationExtract: _apply_extract,
}


def apply_operation(op: Operation, image: Image, context: Optional[RunContext] = None) -> None:
    if not op.valid:
        raise OperationError(f"Refusing to apply invalid operation {op.name}: {'; '.join(op.errors)}", "PARSE_ERROR")
    if not image.frames:
        raise GeometryError(f"{image.name} has no frames")
    _APPLIERS[type(op)](op, image, context or RunContext())


def operation_catalog() -> List[Dict[str, str]]:
    return [{"name": cls.name, "grammar": cls.grammar} for cls in OPERATIONS.values()]
