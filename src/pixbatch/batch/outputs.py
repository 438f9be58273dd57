import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from pixbatch.core.config import BatchConfig
from pixbatch.core.errors import OutputCollisionError
from pixbatch.core.logger import get_logger

log = get_logger(__name__)


class OutputRegistry:
    """Serialises output path claims so no two writers in a batch share a file."""

    def __init__(self, overwrite: bool = False):
        self.overwrite = overwrite
        self._lock = threading.Lock()
        self._claimed: Dict[Path, str] = {}

    def claim(self, path: Path, owner: str) -> Path:
        path = Path(path)
        key = path.resolve()
        with self._lock:
            if key in self._claimed:
                raise OutputCollisionError(f"{path} is already written by {self._claimed[key]}")
            if key.exists() and not self.overwrite:
                raise OutputCollisionError(f"{path} already exists (pass --overwrite to replace it)")
            self._claimed[key] = owner
        log.debug("%s claimed %s", owner, path)
        return path

    def written(self) -> List[str]:
        with self._lock:
            return [str(p) for p in self._claimed]


@dataclass
class RunContext:
    config: BatchConfig = field(default_factory=BatchConfig)
    outputs: OutputRegistry = field(default_factory=OutputRegistry)

    @classmethod
    def from_config(cls, config: BatchConfig) -> "RunContext":
        return cls(config=config, outputs=OutputRegistry(overwrite=config.overwrite))
