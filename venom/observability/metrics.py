"""In-process crawl statistics."""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

COUNTERS = (
    "urls_discovered",
    "urls_crawled",
    "urls_failed",
    "urls_skipped",
    "screenshots_taken",
    "captions_generated",
    "bytes_downloaded",
)


class CrawlStats:
    """Holds the counters for one crawl run; mutated only by its owner."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        for key in COUNTERS:
            self._counters[key] = 0
        self.start_time: datetime = datetime.now(timezone.utc)
        self.end_time: Optional[datetime] = None

    def incr(self, name: str, value: int = 1) -> None:
        """Increment the named counter by the supplied value."""
        self._counters[name] += value

    def get(self, name: str) -> int:
        """Return the current value for the counter, defaulting to zero."""
        return self._counters.get(name, 0)

    def start(self) -> None:
        self.start_time = datetime.now(timezone.utc)
        self.end_time = None

    def finish(self) -> None:
        self.end_time = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def snapshot(self) -> Dict[str, Union[int, str, None]]:
        """Return a copy of all counters and timestamps for reporting."""
        payload: Dict[str, Union[int, str, None]] = dict(self._counters)
        payload["start_time"] = self.start_time.isoformat()
        payload["end_time"] = self.end_time.isoformat() if self.end_time else None
        return payload

    def export(self, *, path: Path) -> Path:
        """Write the snapshot to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(orjson.dumps(self.snapshot(), option=orjson.OPT_INDENT_2))
        LOGGER.info("stats_exported", path=str(path))
        return path
