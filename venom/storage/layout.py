"""Path helpers for the on-disk data directory."""
from __future__ import annotations

import base64
import uuid
from pathlib import Path


class DataLayout:
    """Computes structured output paths inside the data root."""

    def __init__(self, data_dir: Path) -> None:
        self.root = Path(data_dir)
        self.screenshots = self.root / "screenshots"
        self.metadata = self.root / "metadata"
        for path in (self.root, self.screenshots, self.metadata):
            path.mkdir(parents=True, exist_ok=True)

    def save_screenshot(self, data: bytes, *, suffix: str = ".png") -> Path:
        """Write screenshot bytes under a fresh name and return the path."""
        target = self.screenshots / f"{uuid.uuid4()}{suffix}"
        target.write_bytes(data)
        return target

    def read_screenshot_base64(self, path: str | Path) -> str:
        return base64.b64encode(Path(path).read_bytes()).decode("ascii")

    def storage_used(self) -> int:
        """Total bytes held by screenshots."""
        return sum(path.stat().st_size for path in self.screenshots.glob("*.png"))
