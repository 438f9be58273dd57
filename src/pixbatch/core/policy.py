import math
import re
from dataclasses import dataclass, field
from enum import Enum, IntFlag
from typing import Dict, Iterator, List, Optional, Tuple, Type, TypeVar

from PIL import ImageColor

Colour = Tuple[int, int, int, int]

BLACK: Colour = (0, 0, 0, 255)
WHITE: Colour = (255, 255, 255, 255)
TRANSPARENT: Colour = (0, 0, 0, 0)

E = TypeVar("E", bound=Enum)


class Comp(IntFlag):
    NONE = 0
    R = 1
    G = 2
    B = 4
    A = 8
    RGB = R | G | B
    RGBA = R | G | B | A

    def indices(self) -> List[int]:
        return [i for i, bit in enumerate((Comp.R, Comp.G, Comp.B, Comp.A)) if self & bit]

    def letters(self) -> str:
        return "".join(c for c, bit in zip("RGBA", (Comp.R, Comp.G, Comp.B, Comp.A)) if self & bit)


class Anchor(Enum):
    TL = "tl"
    TM = "tm"
    TR = "tr"
    ML = "ml"
    MM = "mm"
    MR = "mr"
    BL = "bl"
    BM = "bm"
    BR = "br"

    @property
    def column(self) -> int:
        return "lmr".index(self.value[1])

    @property
    def row(self) -> int:
        return "tmb".index(self.value[0])


ANCHOR_ALIASES = {
    "top-left": Anchor.TL,
    "top-middle": Anchor.TM,
    "top-right": Anchor.TR,
    "middle-left": Anchor.ML,
    "middle": Anchor.MM,
    "center": Anchor.MM,
    "middle-right": Anchor.MR,
    "bottom-left": Anchor.BL,
    "bottom-middle": Anchor.BM,
    "bottom-right": Anchor.BR,
}


class ResampleFilter(Enum):
    NONE = "none"
    NEAREST = "nearest"
    BOX = "box"
    BILINEAR = "bilinear"
    BICUBIC = "bicubic"
    HAMMING = "hamming"
    LANCZOS = "lanczos"


class EdgeMode(Enum):
    CLAMP = "clamp"
    WRAP = "wrap"


class CropMode(Enum):
    ABSOLUTE = "abs"
    RELATIVE = "rel"


class AspectMode(Enum):
    CROP = "crop"
    LETTERBOX = "letter"


class FlipMode(Enum):
    HORIZONTAL = "h"
    VERTICAL = "v"


class ExactMode(Enum):
    OFF = "off"
    ZERO = "zero"
    ACW90 = "acw90"
    CW90 = "cw90"
    R180 = "r180"


class RotateMode(Enum):
    FILL = "fill"
    CROP = "crop"
    RESIZE = "resize"


class AdjChan(Enum):
    RGB = "rgb"
    R = "r"
    G = "g"
    B = "b"
    A = "a"

    def indices(self) -> List[int]:
        if self is AdjChan.RGB:
            return [0, 1, 2]
        return ["rgba".index(self.value)]


class ChanMode(Enum):
    SET = "set"
    BLEND = "blend"
    SPREAD = "spread"
    INTENSITY = "intensity"


class QuantizeMethod(Enum):
    FIXED = "fixed"
    SPATIAL = "spatial"
    NEU = "neu"
    WU = "wu"


ENUM_ALIASES: Dict[type, Dict[str, Enum]] = {
    Anchor: dict(ANCHOR_ALIASES),
    CropMode: {"absolute": CropMode.ABSOLUTE, "relative": CropMode.RELATIVE},
    AspectMode: {"letterbox": AspectMode.LETTERBOX},
    FlipMode: {"horizontal": FlipMode.HORIZONTAL, "vertical": FlipMode.VERTICAL},
}

_TRUE = {"1", "true", "yes", "on", "t", "y"}
_FALSE = {"0", "false", "no", "off", "f", "n"}


def is_default(token: Optional[str]) -> bool:
    return token is None or token.strip() in {"", "*"}


def split_args(text: str) -> List[str]:
    text = (text or "").strip()
    if not text:
        return []
    return re.split(r"\s*,\s*|\s+", text)


def split_spec(spec: str) -> Tuple[str, str]:
    """Split ``name[args]`` into its name and raw argument text."""
    spec = (spec or "").strip()
    match = re.fullmatch(r"([A-Za-z_][\w-]*)\s*(?:\[(.*)\])?", spec, flags=re.DOTALL)
    if not match:
        return "", spec
    return match.group(1).lower(), (match.group(2) or "").strip()


def parse_enum(enum_cls: Type[E], token: str) -> Optional[E]:
    key = token.strip().lower()
    for member in enum_cls:
        if member.value == key or member.name.lower() == key:
            return member
    alias = ENUM_ALIASES.get(enum_cls, {}).get(key)
    return alias  # type: ignore[return-value]


def parse_int(token: str) -> Optional[int]:
    try:
        return int(token.strip(), 10)
    except (TypeError, ValueError):
        return None


def parse_float(token: str) -> Optional[float]:
    try:
        value = float(token.strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_bool(token: str) -> Optional[bool]:
    key = token.strip().lower()
    if key in _TRUE:
        return True
    if key in _FALSE:
        return False
    return None


def parse_colour(token: str) -> Optional[Colour]:
    key = token.strip().lower()
    if key in {"transparent", "clear"}:
        return TRANSPARENT
    try:
        rgb = ImageColor.getrgb(key)
    except ValueError:
        return None
    if len(rgb) == 3:
        return (rgb[0], rgb[1], rgb[2], 255)
    return (rgb[0], rgb[1], rgb[2], rgb[3])


def parse_channels(token: str) -> Optional[Comp]:
    key = token.strip().upper()
    if not key or any(c not in "RGBA" for c in key):
        return None
    mask = Comp.NONE
    for c in key:
        mask |= Comp[c]
    return mask


def format_colour(colour: Colour) -> str:
    return "#{:02x}{:02x}{:02x}{:02x}".format(*colour)


@dataclass(frozen=True)
class Interval:
    min: int
    max: int

    def contains(self, value: int) -> bool:
        return self.min <= value <= self.max

    def __str__(self) -> str:
        return str(self.min) if self.min == self.max else f"{self.min}-{self.max}"


_INTERVAL_TERM = re.compile(r"([\[(])?(\d+)(?:-(\d+))?([\])])?")


def parse_interval(token: str) -> Optional[Interval]:
    match = _INTERVAL_TERM.fullmatch(token.strip())
    if not match:
        return None
    open_br, lo, hi, close_br = match.groups()
    low = int(lo)
    high = int(hi) if hi is not None else low
    if open_br == "(":
        low += 1
    if close_br == ")":
        high -= 1
    if low > high:
        return None
    return Interval(low, high)


@dataclass
class IntervalSet:
    intervals: List[Interval] = field(default_factory=list)

    @classmethod
    def parse(cls, token: str) -> Optional["IntervalSet"]:
        terms = [t for t in token.strip().split("+")]
        intervals = []
        for term in terms:
            interval = parse_interval(term)
            if interval is None:
                return None
            intervals.append(interval)
        return cls(intervals) if intervals else None

    def is_empty(self) -> bool:
        return not self.intervals

    def contains(self, value: int) -> bool:
        return any(i.contains(value) for i in self.intervals)

    def indices(self, count: int) -> List[int]:
        """Sorted unique members that are valid indices for a sequence of ``count``."""
        found = set()
        for interval in self.intervals:
            found.update(range(max(interval.min, 0), min(interval.max, count - 1) + 1))
        return sorted(found)

    def __iter__(self) -> Iterator[Interval]:
        return iter(self.intervals)

    def __str__(self) -> str:
        return "+".join(str(i) for i in self.intervals)
