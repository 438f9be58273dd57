import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from pixbatch import __version__
from pixbatch.batch.operations import operation_catalog, parse_operation
from pixbatch.batch.pipeline import (
    PRESETS,
    build_pipeline,
    expand_inputs,
    load_ops_file,
    preset_specs,
    run_batch,
)
from pixbatch.batch.post import parse_post_operation, post_operation_catalog
from pixbatch.batch.protocol import ERROR_CODES, PROTOCOL_VERSION
from pixbatch.core.config import ANIM_TYPES, BatchConfig
from pixbatch.core.errors import OperationError
from pixbatch.core.image import IMAGE_SUFFIXES
from pixbatch.core.logger import setup_logger

app = typer.Typer(add_completion=False, help="Batch image operation pipeline")


def _print(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _ok(command: str, data: Dict[str, Any]) -> None:
    _print({"ok": True, "protocolVersion": PROTOCOL_VERSION, "command": command, "data": data})


def _fail(command: str, code: str, message: str, retryable: bool = False, data: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {
        "ok": False,
        "protocolVersion": PROTOCOL_VERSION,
        "command": command,
        "error": {"code": code, "message": message, "retryable": retryable},
    }
    if data is not None:
        payload["data"] = data
    _print(payload)
    raise SystemExit(ERROR_CODES.get(code, 1))


@app.callback()
def _configure() -> None:
    setup_logger()


@app.command("process")
def process(
    images: List[Path] = typer.Argument(..., help="Image files or directories"),
    op: Optional[List[str]] = typer.Option(None, "--op", help="Per-image operation, e.g. resize[128,*]"),
    post: Optional[List[str]] = typer.Option(None, "--post", help="Post-operation, e.g. contact[4]"),
    preset: Optional[List[str]] = typer.Option(None, "--preset"),
    ops_file: Optional[Path] = typer.Option(None, "--ops-file"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir"),
    out_type: Optional[str] = typer.Option(None, "--out-type"),
    anim_type: Optional[str] = typer.Option(None, "--anim-type"),
    workers: Optional[int] = typer.Option(None, "--workers", min=1, max=64),
    overwrite: Optional[bool] = typer.Option(None, "--overwrite/--no-overwrite"),
    no_save: bool = typer.Option(False, "--no-save"),
) -> None:
    op_specs: List[str] = []
    post_specs: List[str] = list(post or [])
    try:
        for name in preset or []:
            op_specs.extend(preset_specs(name))
        if ops_file is not None:
            file_ops, file_posts = load_ops_file(ops_file)
            op_specs.extend(file_ops)
            post_specs.extend(file_posts)
    except OperationError as exc:
        _fail("process", exc.code, exc.message)
    op_specs.extend(op or [])

    config = BatchConfig().with_overrides(
        output_dir=output_dir,
        out_type=out_type,
        anim_type=anim_type,
        workers=workers,
        overwrite=overwrite,
        save_images=False if no_save else None,
    )
    if f".{config.out_type}" not in IMAGE_SUFFIXES:
        _fail("process", "INVALID_INPUT", f"Unsupported output type: {config.out_type}")
    if config.anim_type not in ANIM_TYPES:
        _fail("process", "INVALID_INPUT", f"Unsupported animation type: {config.anim_type} (use one of {sorted(ANIM_TYPES)})")

    pipeline = build_pipeline(op_specs, post_specs)
    if not pipeline.is_valid:
        message = "; ".join(e for r in pipeline.rejected for e in r["errors"])
        _fail("process", "PARSE_ERROR", message, data={"rejected": pipeline.rejected})

    paths = expand_inputs(images)
    if not paths:
        _fail("process", "INVALID_INPUT", "No input images")

    report = run_batch(paths, pipeline, config)
    data = {"config": config.to_dict(), "pipeline": pipeline.describe(), **report.to_dict()}
    if not report.ok:
        failed_posts = sum(1 for p in report.posts if p["status"] == "failed")
        _fail("process", "PARTIAL_FAILURE", f"{data['failed']} image(s) and {failed_posts} post-operation(s) failed", data=data)
    _ok("process", data)


@app.command("ops")
def ops() -> None:
    _ok("ops", {"operations": operation_catalog(), "postOperations": post_operation_catalog()})


@app.command("check-op")
def check_op(spec: str, post: bool = typer.Option(False, "--post", help="Parse as a post-operation")) -> None:
    parser = parse_post_operation if post else parse_operation
    try:
        parsed = parser(spec)
    except OperationError as exc:
        _fail("check-op", exc.code, exc.message)
    _ok("check-op", parsed.describe())


@app.command("presets")
def presets() -> None:
    _ok("presets", {"presets": {name: list(specs) for name, specs in sorted(PRESETS.items())}})


@app.command("version")
def version() -> None:
    _ok("version", {"version": __version__, "protocolVersion": PROTOCOL_VERSION})


def main() -> None:
    app()


if __name__ == "__main__":
    main()
