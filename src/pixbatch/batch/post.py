import math
import re
from dataclasses import dataclass, field, fields
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple, Type

from pixbatch.batch.operations import ArgReader, jsonable
from pixbatch.batch.outputs import RunContext
from pixbatch.core import image as pixels
from pixbatch.core.errors import GeometryError, OperationError, ParseError
from pixbatch.core.image import DEFAULT_FRAME_DURATION_MS, Frame, Image
from pixbatch.core.logger import get_logger
from pixbatch.core.policy import (
    TRANSPARENT,
    Anchor,
    Colour,
    Interval,
    IntervalSet,
    parse_colour,
    parse_float,
    parse_int,
    split_spec,
)

log = get_logger(__name__)

_PAIR = re.compile(r"(?P<frames>[^:]+):(?P<ms>[^:]+)")


@dataclass(frozen=True)
class IntervalDurationPair:
    frame_interval: Interval
    duration: float  # Milliseconds.

    def __str__(self) -> str:
        return f"{self.frame_interval}:{self.duration:g}"


def _duration_pairs(token: str) -> Optional[List[IntervalDurationPair]]:
    match = _PAIR.fullmatch(token.strip())
    if not match:
        return None
    frame_set = IntervalSet.parse(match.group("frames"))
    duration = parse_float(match.group("ms"))
    if frame_set is None or duration is None or duration <= 0.0:
        return None
    return [IntervalDurationPair(interval, duration) for interval in frame_set]


@dataclass
class PostOperation:
    name: ClassVar[str] = ""
    grammar: ClassVar[str] = ""

    valid: bool = field(default=False, repr=False)
    errors: List[str] = field(default_factory=list, repr=False)
    warnings: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def parse(cls, text: str) -> "PostOperation":
        raise NotImplementedError

    def apply(self, images: Sequence[Image], context: Optional[RunContext] = None) -> Dict[str, Any]:
        return apply_post_operation(self, images, context)

    def describe(self) -> Dict[str, Any]:
        skip = {"valid", "errors", "warnings"}
        return {
            "post": self.name,
            "valid": self.valid,
            "fields": {f.name: jsonable(getattr(self, f.name)) for f in fields(self) if f.name not in skip},
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class PostOperationCombine(PostOperation):
    name: ClassVar[str] = "combine"
    grammar: ClassVar[str] = "combine[frames:ms ...,subfolder,basename] (names end at a comma or space)"

    durations: List[IntervalDurationPair] = field(default_factory=list)
    sub_folder: str = "Combined"
    base_name: str = "Combined"

    @classmethod
    def parse(cls, text: str) -> PostOperation:
        a = ArgReader(cls.name, text)
        durations: List[IntervalDurationPair] = []
        index = 0
        while index < len(a.tokens) and ":" in a.tokens[index]:
            pairs = _duration_pairs(a.tokens[index])
            if pairs is None:
                a.error(f"argument {index + 1} (frames:ms) is invalid: {a.tokens[index]!r}")
            else:
                durations.extend(pairs)
            index += 1
        op = cls(
            durations=durations,
            sub_folder=a.optional(index, "subfolder", str.strip, "Combined"),
            base_name=a.optional(index + 1, "basename", str.strip, "Combined"),
        )
        a.ignore_after(index + 2)
        return a.finish(op)

    def frame_duration(self, frame_num: int) -> float:
        """Display time in milliseconds; the last matching override wins."""
        for pair in reversed(self.durations):
            if pair.frame_interval.contains(frame_num):
                return pair.duration
        return DEFAULT_FRAME_DURATION_MS

    def describe(self) -> Dict[str, Any]:
        data = super().describe()
        data["fields"]["durations"] = [str(p) for p in self.durations]
        return data


@dataclass
class PostOperationContact(PostOperation):
    name: ClassVar[str] = "contact"
    grammar: ClassVar[str] = "contact[cols,rows,fill,subfolder,basename] (names end at a comma or space)"

    columns: int = 0
    rows: int = 0
    fill_colour: Colour = TRANSPARENT
    sub_folder: str = "Contact"
    base_name: str = "ContactSheet"

    @classmethod
    def parse(cls, text: str) -> PostOperation:
        a = ArgReader(cls.name, text)
        columns = a.optional(0, "cols", parse_int, 0)
        rows = a.optional(1, "rows", parse_int, 0)
        for label, value in (("cols", columns), ("rows", rows)):
            if value < 0:
                a.error(f"{label} must be >= 0 (0 is automatic), got {value}")
        op = cls(
            columns=columns,
            rows=rows,
            fill_colour=a.optional(2, "fill", parse_colour, TRANSPARENT),
            sub_folder=a.optional(3, "subfolder", str.strip, "Contact"),
            base_name=a.optional(4, "basename", str.strip, "ContactSheet"),
        )
        a.ignore_after(5)
        return a.finish(op)

    def grid_size(self, count: int) -> Tuple[int, int]:
        columns, rows = self.columns, self.rows
        if columns == 0 and rows == 0:
            columns = max(1, math.ceil(math.sqrt(count)))
            rows = max(1, math.ceil(count / columns))
        elif rows == 0:
            rows = max(1, math.ceil(count / columns))
        elif columns == 0:
            columns = max(1, math.ceil(count / rows))
        return columns, rows


POST_OPERATIONS: Dict[str, Type[PostOperation]] = {
    cls.name: cls for cls in (PostOperationCombine, PostOperationContact)
}


def parse_post_operation(spec: str, strict: bool = False) -> PostOperation:
    name, args = split_spec(spec)
    cls = POST_OPERATIONS.get(name)
    if cls is None:
        raise ParseError(f"Unknown post-operation: {spec!r}")
    op = cls.parse(args)
    for warning in op.warnings:
        log.warning(warning)
    if strict and not op.valid:
        raise ParseError("; ".join(op.errors))
    return op


def _apply_combine(op: PostOperationCombine, images: Sequence[Image], context: RunContext) -> Dict[str, Any]:
    frames: List[Frame] = [frame for image in images for frame in image.frames]
    if not frames:
        raise GeometryError("No frames to combine")
    width, height = frames[0].width, frames[0].height
    uniform: List[Frame] = []
    for frame in frames:
        if (frame.width, frame.height) != (width, height):
            origin = pixels.anchor_origin(frame.width, frame.height, width, height, Anchor.MM)
            frame = frame.with_pixels(pixels.crop_pixels(frame.pixels, width, height, origin[0], origin[1], TRANSPARENT))
        uniform.append(frame)

    durations = [op.frame_duration(i) for i in range(len(uniform))]
    path = context.config.output_dir / op.sub_folder / f"{op.base_name}.{context.config.anim_type}"
    context.outputs.claim(path, op.name)
    written = pixels.save_frames(uniform, path, durations)
    log.info("Combined %d frame(s) from %d image(s) into %s", len(uniform), len(images), path)
    result: Dict[str, Any] = {"output": str(path), "frames": len(written), "durations": written}
    if len(written) < len(uniform):
        log.warning("%s folded %d identical frame(s) into their neighbours", path.name, len(uniform) - len(written))
        result["foldedFrames"] = len(uniform) - len(written)
    return result


def _apply_contact(op: PostOperationContact, images: Sequence[Image], context: RunContext) -> Dict[str, Any]:
    count = len(images)
    columns, rows = op.grid_size(count)
    if columns * rows < count:
        raise OperationError(f"A {columns}x{rows} contact sheet cannot hold {count} images", "INVALID_INPUT")
    cell_w, cell_h = images[0].width, images[0].height
    sheet = Frame.blank(columns * cell_w, rows * cell_h, op.fill_colour)
    for i, image in enumerate(images):
        x = (i % columns) * cell_w
        y = (i // columns) * cell_h
        sheet.pixels[y : y + cell_h, x : x + cell_w] = pixels.fit_into_cell(image.frames[0], cell_w, cell_h, op.fill_colour)

    path = context.config.output_dir / op.sub_folder / f"{op.base_name}.{context.config.out_type}"
    context.outputs.claim(path, op.name)
    pixels.save_frames([sheet], path)
    log.info("Wrote %dx%d contact sheet of %d image(s) to %s", columns, rows, count, path)
    return {"output": str(path), "columns": columns, "rows": rows, "cellWidth": cell_w, "cellHeight": cell_h}


_POST_APPLIERS: Dict[Type[PostOperation], Callable[[Any, Sequence[Image], RunContext], Dict[str, Any]]] = {
    PostOperationCombine: _apply_combine,
    PostOperationContact: _apply_contact,
}


def apply_post_operation(op: PostOperation, images: Sequence[Image], context: Optional[RunContext] = None) -> Dict[str, Any]:
    if not op.valid:
        raise OperationError(f"Refusing to apply invalid post-operation {op.name}: {'; '.join(op.errors)}", "PARSE_ERROR")
    if not images:
        raise OperationError(f"{op.name} has no images to work on", "INVALID_INPUT")
    return _POST_APPLIERS[type(op)](op, images, context or RunContext())


def post_operation_catalog() -> List[Dict[str, str]]:
    return [{"name": cls.name, "grammar": cls.grammar} for cls in POST_OPERATIONS.values()]
