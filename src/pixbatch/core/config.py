import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_OUT_TYPE = "png"
DEFAULT_ANIM_TYPE = "apng"
ANIM_TYPES = {"apng", "gif", "webp"}


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_workers() -> int:
    env = os.getenv("PIXBATCH_WORKERS")
    if env:
        try:
            return max(1, int(env))
        except ValueError:
            pass
    return max(1, min(4, os.cpu_count() or 1))


@dataclass
class BatchConfig:
    output_dir: Path = field(default_factory=lambda: Path(os.getenv("PIXBATCH_OUTPUT_DIR") or Path.cwd()))
    out_type: str = field(default_factory=lambda: (os.getenv("PIXBATCH_OUT_TYPE") or DEFAULT_OUT_TYPE).lower().lstrip("."))
    anim_type: str = field(default_factory=lambda: (os.getenv("PIXBATCH_ANIM_TYPE") or DEFAULT_ANIM_TYPE).lower().lstrip("."))
    workers: int = field(default_factory=_default_workers)
    overwrite: bool = field(default_factory=lambda: _env_bool("PIXBATCH_OVERWRITE"))
    save_images: bool = True

    def with_overrides(self, **overrides: Optional[Any]) -> "BatchConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        if "output_dir" in values:
            values["output_dir"] = Path(values["output_dir"])
        for key in ("out_type", "anim_type"):
            if key in values:
                values[key] = str(values[key]).lower().lstrip(".")
        return replace(self, **values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outputDir": str(self.output_dir),
            "outType": self.out_type,
            "animType": self.anim_type,
            "workers": self.workers,
            "overwrite": self.overwrite,
            "saveImages": self.save_images,
        }
