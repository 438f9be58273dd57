import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pixbatch.batch.operations import Operation, apply_operation, parse_operation
from pixbatch.batch.outputs import RunContext
from pixbatch.batch.post import PostOperation, apply_post_operation, parse_post_operation
from pixbatch.core.config import BatchConfig
from pixbatch.core.errors import OperationError, ParseError
from pixbatch.core.image import IMAGE_SUFFIXES, Image
from pixbatch.core.logger import get_logger

log = get_logger(__name__)

PRESETS: Dict[str, List[str]] = {
    "thumbnail": ["resize[256,*,lanczos]"],
    "pixel-art": ["deborder", "quantize[wu,32,true]"],
    "web-16x9": ["aspect[16:9,crop]", "resize[1920,1080,lanczos]"],
    "grey": ["channel[intensity]"],
}


@dataclass
class Pipeline:
    """Validated per-image operations and the post-operations that follow them."""

    operations: List[Operation] = field(default_factory=list)
    post_operations: List[PostOperation] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.rejected

    def describe(self) -> Dict[str, Any]:
        return {
            "operations": [op.describe() for op in self.operations],
            "postOperations": [op.describe() for op in self.post_operations],
            "rejected": self.rejected,
        }


def build_pipeline(op_specs: Iterable[str] = (), post_specs: Iterable[str] = ()) -> Pipeline:
    """Parse every op string; invalid ones are reported and kept out of the pipeline."""
    pipeline = Pipeline()
    for spec in op_specs:
        op = _parse_or_reject(spec, parse_operation, pipeline)
        if op is not None:
            pipeline.operations.append(op)
    for spec in post_specs:
        post = _parse_or_reject(spec, parse_post_operation, pipeline)
        if post is not None:
            pipeline.post_operations.append(post)
    return pipeline


def _parse_or_reject(spec: str, parser: Callable[[str], Any], pipeline: Pipeline) -> Optional[Any]:
    try:
        op = parser(spec)
    except ParseError as exc:
        log.error(exc.message)
        pipeline.rejected.append({"spec": spec, "errors": [exc.message]})
        return None
    if not op.valid:
        for error in op.errors:
            log.error(error)
        pipeline.rejected.append({"spec": spec, "errors": op.errors})
        return None
    return op


def preset_specs(name: str) -> List[str]:
    try:
        return list(PRESETS[name])
    except KeyError:
        raise OperationError(f"Unknown preset: {name}", "INVALID_INPUT") from None


def load_ops_file(path: Path) -> Tuple[List[str], List[str]]:
    """Read a JSON list of op strings or ``{"op": ...}`` / ``{"post": ...}`` objects."""
    path = Path(path)
    if not path.exists():
        raise OperationError(f"Ops file not found: {path}", "NOT_FOUND")
    try:
        steps = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise OperationError(f"Invalid JSON in {path}: {exc}", "INVALID_INPUT") from exc
    if not isinstance(steps, list):
        raise OperationError("ops file must contain a list of steps", "INVALID_INPUT")
    ops: List[str] = []
    posts: List[str] = []
    for step in steps:
        if isinstance(step, str):
            ops.append(step)
        elif isinstance(step, dict) and isinstance(step.get("op"), str):
            ops.append(step["op"])
        elif isinstance(step, dict) and isinstance(step.get("post"), str):
            posts.append(step["post"])
        else:
            raise OperationError(f"each ops file step must be a string, op or post: {step!r}", "INVALID_INPUT")
    return ops, posts


def expand_inputs(paths: Iterable[Path]) -> List[Path]:
    out: List[Path] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            found = sorted(p for p in path.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)
            if not found:
                log.warning("No images found in %s", path)
            out.extend(found)
        else:
            out.append(path)
    return out


@dataclass
class ImageReport:
    index: int
    path: Path
    status: str = "ok"  # ok | failed | catastrophic
    output: Optional[Path] = None
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    width: int = 0
    height: int = 0
    frames: int = 0

    def fail(self, op_name: str, code: str, message: str) -> None:
        self.errors.append({"op": op_name, "code": code, "message": message})
        if self.status == "ok":
            self.status = "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "path": str(self.path),
            "status": self.status,
            "output": str(self.output) if self.output else None,
            "width": self.width,
            "height": self.height,
            "frames": self.frames,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class BatchReport:
    images: List[ImageReport] = field(default_factory=list)
    posts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.status == "ok" for r in self.images) and all(p["status"] != "failed" for p in self.posts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "images": [r.to_dict() for r in self.images],
            "postOperations": self.posts,
            "processed": sum(1 for r in self.images if r.status != "catastrophic"),
            "failed": sum(1 for r in self.images if r.status != "ok"),
        }


def run_image(image: Image, operations: Sequence[Operation], context: RunContext, report: ImageReport) -> bool:
    """Apply each operation in order; returns False if the image failed catastrophically."""
    for op in operations:
        try:
            apply_operation(op, image, context)
        except OperationError as exc:
            log.warning("%s failed on %s: %s", op.name, image.name, exc.message)
            report.fail(op.name, exc.code, exc.message)
        except Exception as exc:
            log.exception("%s crashed on %s", op.name, image.name)
            report.fail(op.name, "ERROR", str(exc))
            report.status = "catastrophic"
            return False
    return True


def _load(path: Path, report: ImageReport) -> Optional[Image]:
    try:
        return Image.load(path)
    except FileNotFoundError:
        report.fail("load", "NOT_FOUND", f"Image not found: {path}")
    except OSError as exc:
        report.fail("load", "INVALID_INPUT", f"Cannot read {path}: {exc}")
    report.status = "catastrophic"
    log.error("Skipping %s: %s", path, report.errors[-1]["message"])
    return None


def _process(index: int, path: Path, operations: Sequence[Operation], context: RunContext) -> Tuple[ImageReport, Optional[Image]]:
    report = ImageReport(index=index, path=path)
    image = _load(path, report)
    if image is None:
        return report, None
    if not run_image(image, operations, context, report):
        return report, None

    report.width, report.height, report.frames = image.width, image.height, image.num_frames
    if context.config.save_images:
        output = context.config.output_dir / f"{path.stem}.{context.config.out_type}"
        try:
            context.outputs.claim(output, image.name)
            written = image.save(output)
            report.output = output
            log.info("Wrote %s", output)
            if len(written) < image.num_frames:
                message = f"{output.name} holds {len(written)} of {image.num_frames} frame(s)"
                log.warning("%s: %s", image.name, message)
                report.warnings.append(message)
        except OperationError as exc:
            log.warning("Could not save %s: %s", image.name, exc.message)
            report.fail("save", exc.code, exc.message)
        except (OSError, ValueError, KeyError) as exc:
            log.warning("Could not save %s: %s", image.name, exc)
            report.fail("save", "ERROR", f"Cannot write {output}: {exc}")
    return report, image


def run_posts(post_operations: Sequence[PostOperation], images: Sequence[Image], context: RunContext) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for op in post_operations:
        if not images:
            log.warning("Skipping %s: no images survived the pipeline", op.name)
            results.append({"post": op.name, "status": "skipped"})
            continue
        try:
            data = apply_post_operation(op, images, context)
            results.append({"post": op.name, "status": "ok", **data})
        except OperationError as exc:
            log.warning("%s failed: %s", op.name, exc.message)
            results.append({"post": op.name, "status": "failed", "code": exc.code, "message": exc.message})
        except Exception as exc:
            log.exception("%s crashed", op.name)
            results.append({"post": op.name, "status": "failed", "code": "ERROR", "message": str(exc)})
    return results


def run_batch(paths: Sequence[Path], pipeline: Pipeline, config: Optional[BatchConfig] = None) -> BatchReport:
    if not pipeline.is_valid:
        raise ParseError("; ".join(e for r in pipeline.rejected for e in r["errors"]))
    context = RunContext.from_config(config or BatchConfig())
    paths = [Path(p) for p in paths]
    log.info("Processing %d image(s) with %d operation(s)", len(paths), len(pipeline.operations))

    with ThreadPoolExecutor(max_workers=max(1, context.config.workers)) as executor:
        futures = [executor.submit(_process, i, p, pipeline.operations, context) for i, p in enumerate(paths)]
        results = [f.result() for f in futures]

    report = BatchReport(images=[r for r, _ in results])
    survivors = [image for _, image in results if image is not None]
    report.posts = run_posts(pipeline.post_operations, survivors, context)
    return report
