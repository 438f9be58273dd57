import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image as PILImage
from PIL import ImageSequence

from pixbatch.batch import operations
from pixbatch.batch.operations import OperationFlip
from pixbatch.batch.pipeline import (
    PRESETS,
    build_pipeline,
    expand_inputs,
    load_ops_file,
    preset_specs,
    run_batch,
)
from pixbatch.core.config import BatchConfig
from pixbatch.core.errors import OperationError, ParseError


def write_png(path: Path, size=(8, 8), colour=(10, 200, 30, 255)) -> Path:  # noqa: ANN001
    path.parent.mkdir(parents=True, exist_ok=True)
    PILImage.new("RGBA", size, colour).save(path)
    return path


def config_for(tmp_path: Path, **overrides) -> BatchConfig:  # noqa: ANN003
    return BatchConfig(output_dir=tmp_path / "out", workers=2).with_overrides(**overrides)


def write_gif(path: Path, colours, duration: int = 80) -> Path:  # noqa: ANN001
    path.parent.mkdir(parents=True, exist_ok=True)
    frames = [PILImage.new("RGB", (6, 6), colour) for colour in colours]
    frames[0].save(path, save_all=True, append_images=frames[1:], duration=duration, loop=0)
    return path


def test_build_pipeline_collects_rejections() -> None:
    pipeline = build_pipeline(["flip[h]", "resize[2,2]", "blur[3]"], ["contact", "contact[-1]"])
    assert [op.name for op in pipeline.operations] == ["flip"]
    assert [op.name for op in pipeline.post_operations] == ["contact"]
    assert [r["spec"] for r in pipeline.rejected] == ["resize[2,2]", "blur[3]", "contact[-1]"]
    assert not pipeline.is_valid
    with pytest.raises(ParseError):
        run_batch([], pipeline)


def test_run_batch_saves_processed_images(tmp_path: Path) -> None:
    inputs = [write_png(tmp_path / "in" / f"{name}.png") for name in ("a", "b", "c")]
    pipeline = build_pipeline(["resize[4,*]", "canvas[6,6,tl,white]"], ["contact"])
    report = run_batch(inputs, pipeline, config_for(tmp_path))

    assert report.ok
    assert [r.path for r in report.images] == inputs
    for r in report.images:
        assert r.status == "ok"
        assert r.output == tmp_path / "out" / f"{r.path.stem}.png"
        with PILImage.open(r.output) as written:
            assert written.size == (6, 6)
    assert report.posts[0]["status"] == "ok"
    assert (tmp_path / "out" / "Contact" / "ContactSheet.png").exists()


def test_failed_operation_does_not_stop_siblings(tmp_path: Path) -> None:
    small = write_png(tmp_path / "in" / "small.png", size=(4, 4))
    large = write_png(tmp_path / "in" / "large.png", size=(16, 16))
    pipeline = build_pipeline(["pixel[10,10,red]", "flip[v]"], ["combine"])
    report = run_batch([small, large], pipeline, config_for(tmp_path))

    assert not report.ok
    first, second = report.images
    assert first.status == "failed"
    assert first.errors[0]["op"] == "pixel"
    assert first.errors[0]["code"] == "GEOMETRY_ERROR"
    assert first.output is not None
    assert second.status == "ok"
    # Failed, not catastrophic: both images still feed the post-operation.
    assert report.posts[0]["frames"] == 2
    assert report.to_dict()["failed"] == 1


def test_crashing_operation_excludes_image_from_posts(tmp_path: Path, monkeypatch) -> None:
    inputs = [write_png(tmp_path / "in" / f"{name}.png") for name in ("a", "b")]

    def explode(op, image, context):  # noqa: ANN001
        if image.name == "a.png":
            raise RuntimeError("decoder went away")
        image.map_frames(lambda p: p[::-1])

    monkeypatch.setitem(operations._APPLIERS, OperationFlip, explode)
    pipeline = build_pipeline(["flip[v]"], ["combine"])
    report = run_batch(inputs, pipeline, config_for(tmp_path))

    assert report.images[0].status == "catastrophic"
    assert report.images[0].output is None
    assert report.images[1].status == "ok"
    assert report.posts[0]["frames"] == 1


def test_unreadable_inputs_skip_posts(tmp_path: Path) -> None:
    junk = tmp_path / "in" / "junk.png"
    junk.parent.mkdir(parents=True)
    junk.write_text("not an image", encoding="utf-8")
    missing = tmp_path / "in" / "missing.png"
    pipeline = build_pipeline([], ["contact"])
    report = run_batch([junk, missing], pipeline, config_for(tmp_path))

    assert [r.status for r in report.images] == ["catastrophic", "catastrophic"]
    assert report.images[0].errors[0]["code"] == "INVALID_INPUT"
    assert report.images[1].errors[0]["code"] == "NOT_FOUND"
    assert report.posts == [{"post": "contact", "status": "skipped"}]


def test_same_stem_outputs_collide(tmp_path: Path) -> None:
    first = write_png(tmp_path / "one" / "shot.png")
    second = write_png(tmp_path / "two" / "shot.png")
    report = run_batch([first, second], build_pipeline(), config_for(tmp_path, workers=1))

    assert report.images[0].status == "ok"
    assert report.images[1].status == "failed"
    assert report.images[1].errors[0]["code"] == "OUTPUT_COLLISION"


def test_existing_output_requires_overwrite(tmp_path: Path) -> None:
    source = write_png(tmp_path / "in" / "a.png")
    write_png(tmp_path / "out" / "a.png", colour=(0, 0, 0, 255))
    report = run_batch([source], build_pipeline(), config_for(tmp_path))
    assert report.images[0].errors[0]["code"] == "OUTPUT_COLLISION"

    report = run_batch([source], build_pipeline(), config_for(tmp_path, overwrite=True))
    assert report.ok
    with PILImage.open(tmp_path / "out" / "a.png") as written:
        assert np.array(written.convert("RGBA"))[0, 0].tolist() == [10, 200, 30, 255]


def test_no_save_keeps_images_in_memory(tmp_path: Path) -> None:
    source = write_png(tmp_path / "in" / "a.png")
    report = run_batch([source], build_pipeline(["flip[h]"]), config_for(tmp_path, save_images=False))
    assert report.ok
    assert report.images[0].output is None
    assert not (tmp_path / "out").exists()


def test_expand_inputs_sorts_directory_images(tmp_path: Path) -> None:
    write_png(tmp_path / "b.png")
    write_png(tmp_path / "a.png")
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
    (tmp_path / "nested").mkdir()
    loose = tmp_path / "loose.gif"
    assert expand_inputs([tmp_path, loose]) == [tmp_path / "a.png", tmp_path / "b.png", loose]


def test_presets_parse_cleanly() -> None:
    for name in PRESETS:
        assert build_pipeline(preset_specs(name)).is_valid, name
    with pytest.raises(OperationError) as exc:
        preset_specs("cinematic")
    assert exc.value.code == "INVALID_INPUT"


def test_load_ops_file(tmp_path: Path) -> None:
    path = tmp_path / "ops.json"
    path.write_text(json.dumps(["flip[h]", {"op": "resize[8,8]"}, {"post": "contact[2]"}]), encoding="utf-8")
    assert load_ops_file(path) == (["flip[h]", "resize[8,8]"], ["contact[2]"])

    path.write_text(json.dumps({"op": "flip"}), encoding="utf-8")
    with pytest.raises(OperationError):
        load_ops_file(path)
    path.write_text(json.dumps([{"method": "flip"}]), encoding="utf-8")
    with pytest.raises(OperationError):
        load_ops_file(path)
    with pytest.raises(OperationError) as exc:
        load_ops_file(tmp_path / "absent.json")
    assert exc.value.code == "NOT_FOUND"


def test_animated_input_keeps_all_frames_as_png(tmp_path: Path) -> None:
    source = write_gif(tmp_path / "in" / "blink.gif", [(255, 0, 0), (0, 255, 0), (0, 0, 255)])
    report = run_batch([source], build_pipeline(["flip[h]"]), config_for(tmp_path))

    result = report.images[0]
    assert result.status == "ok"
    assert result.frames == 3
    assert result.warnings == []
    assert result.output == tmp_path / "out" / "blink.png"
    with PILImage.open(result.output) as written:
        frames = [(np.array(f.convert("RGBA"))[0, 0].tolist(), f.info["duration"]) for f in ImageSequence.Iterator(written)]
    assert frames == [([255, 0, 0, 255], 80.0), ([0, 255, 0, 255], 80.0), ([0, 0, 255, 255], 80.0)]


def test_single_frame_format_reports_dropped_frames(tmp_path: Path) -> None:
    source = write_gif(tmp_path / "in" / "blink.gif", [(255, 0, 0), (0, 255, 0)])
    report = run_batch([source], build_pipeline(), config_for(tmp_path, out_type="bmp"))

    result = report.images[0]
    assert result.status == "ok"
    assert result.frames == 2
    assert result.warnings == ["blink.bmp holds 1 of 2 frame(s)"]
    assert report.to_dict()["images"][0]["warnings"] == result.warnings
