"""SQLite persistence for crawl jobs, captures and their links."""
from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import orjson
import structlog

from venom.fetch.snapshot import CaptionResult, ExtractedCss, ExtractedHtml, ExtractedLink, PageCapture
from venom.orchestrator.jobs import STATUSES, Job, utcnow

LOGGER = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS captures (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    normalized_url TEXT NOT NULL UNIQUE,
    domain TEXT NOT NULL,
    depth INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    screenshot_path TEXT NOT NULL,
    html_content TEXT NOT NULL,
    html_title TEXT NOT NULL,
    html_description TEXT,
    html_text_content TEXT NOT NULL,
    css_content TEXT NOT NULL,
    css_stylesheet_count INTEGER NOT NULL,
    css_original_size INTEGER NOT NULL DEFAULT 0,
    status_code INTEGER NOT NULL,
    final_url TEXT NOT NULL,
    load_time INTEGER NOT NULL,
    caption TEXT,
    caption_visual_elements TEXT,
    caption_page_type TEXT,
    caption_confidence REAL,
    caption_model TEXT,
    caption_timestamp TEXT,
    caption_tokens_used INTEGER
);

CREATE TABLE IF NOT EXISTS links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    capture_id TEXT NOT NULL REFERENCES captures(id),
    href TEXT NOT NULL,
    text TEXT NOT NULL,
    is_internal INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    normalized_url TEXT NOT NULL UNIQUE,
    depth INTEGER NOT NULL,
    parent_url TEXT,
    priority TEXT NOT NULL DEFAULT 'normal',
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_captures_domain ON captures(domain);
CREATE INDEX IF NOT EXISTS idx_captures_timestamp ON captures(timestamp);
CREATE INDEX IF NOT EXISTS idx_links_capture_id ON links(capture_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_priority ON jobs(priority);
"""

_PENDING_SQL = """
    SELECT * FROM jobs
    WHERE status = 'pending'
    ORDER BY
        CASE priority WHEN 'high' THEN 1 WHEN 'normal' THEN 2 ELSE 3 END,
        created_at ASC,
        rowid ASC
    LIMIT ?
"""


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class CaptureStore:
    """Thread-safe wrapper over a single SQLite connection.

    Calls are short and synchronous; async callers push them onto a worker
    thread, so every statement runs under ``self._lock``.
    """

    def __init__(self, db_path: Path) -> None:
        self._path = Path(db_path)
        if str(db_path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        LOGGER.info("database_ready", path=str(db_path))

    # ---- jobs ----

    def add_job_if_absent(self, job: Job, normalized_url: str) -> bool:
        """Insert ``job`` unless a job or capture already targets ``normalized_url``."""
        with self._lock:
            if self._url_exists(normalized_url):
                return False
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO jobs (
                    id, url, normalized_url, depth, parent_url, priority, status,
                    retry_count, error_message, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.url,
                    normalized_url,
                    job.depth,
                    job.parent_url,
                    job.priority,
                    job.status,
                    job.retry_count,
                    job.error_message,
                    _ts(job.created_at),
                    _ts(job.updated_at),
                ),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def pending_jobs(self, limit: int) -> List[Job]:
        """Pending jobs by priority tier, then creation order."""
        with self._lock:
            rows = self._conn.execute(_PENDING_SQL, (limit,)).fetchall()
        return [Job.from_row(row) for row in rows]

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    def update_job_status(self, job_id: str, status: str, error_message: Optional[str] = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        with self._lock:
            self._conn.execute(
                "UPDATE jobs SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
                (status, error_message, _ts(utcnow()), job_id),
            )
            self._conn.commit()

    def increment_job_retry(self, job_id: str) -> int:
        """Bump the retry counter and return its new value."""
        with self._lock:
            self._conn.execute(
                "UPDATE jobs SET retry_count = retry_count + 1, updated_at = ? WHERE id = ?",
                (_ts(utcnow()), job_id),
            )
            self._conn.commit()
            row = self._conn.execute("SELECT retry_count FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return int(row["retry_count"]) if row else 0

    def requeue_interrupted(self) -> int:
        """Return jobs left mid-flight by a previous process to the pending state."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE jobs SET status = 'pending', updated_at = ? "
                "WHERE status IN ('crawling', 'processing', 'captioning')",
                (_ts(utcnow()),),
            )
            self._conn.commit()
        return cursor.rowcount

    def url_exists(self, normalized_url: str) -> bool:
        with self._lock:
            return self._url_exists(normalized_url)

    def _url_exists(self, normalized_url: str) -> bool:
        job = self._conn.execute("SELECT 1 FROM jobs WHERE normalized_url = ? LIMIT 1", (normalized_url,)).fetchone()
        if job:
            return True
        capture = self._conn.execute(
            "SELECT 1 FROM captures WHERE normalized_url = ? LIMIT 1", (normalized_url,)
        ).fetchone()
        return capture is not None

    def job_stats(self) -> Dict[str, int]:
        """Job counts keyed by status, zero-filled."""
        stats = {status: 0 for status in STATUSES}
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status").fetchall()
        for row in rows:
            stats[row["status"]] = int(row["total"])
        return stats

    # ---- captures ----

    def save_capture(self, capture: PageCapture) -> None:
        caption = capture.caption
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO captures (
                    id, url, normalized_url, domain, depth, timestamp,
                    screenshot_path, html_content, html_title, html_description,
                    html_text_content, css_content, css_stylesheet_count, css_original_size,
                    status_code, final_url, load_time,
                    caption, caption_visual_elements, caption_page_type,
                    caption_confidence, caption_model, caption_timestamp, caption_tokens_used
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    capture.capture_id,
                    capture.url,
                    capture.normalized_url,
                    capture.domain,
                    capture.depth,
                    _ts(capture.timestamp),
                    capture.screenshot_path,
                    capture.html.html,
                    capture.html.title,
                    capture.html.description,
                    capture.html.text_content,
                    capture.css.css,
                    capture.css.stylesheet_count,
                    capture.css.original_size,
                    capture.status_code,
                    capture.final_url,
                    capture.load_time_ms,
                    caption.caption if caption else None,
                    orjson.dumps(caption.visual_elements).decode() if caption else None,
                    caption.page_type if caption else None,
                    caption.confidence if caption else None,
                    caption.model if caption else None,
                    _ts(caption.timestamp) if caption else None,
                    caption.tokens_used if caption else None,
                ),
            )
            self._conn.execute("DELETE FROM links WHERE capture_id = ?", (capture.capture_id,))
            self._conn.executemany(
                "INSERT INTO links (capture_id, href, text, is_internal) VALUES (?, ?, ?, ?)",
                [(capture.capture_id, link.href, link.text, int(link.is_internal)) for link in capture.html.links],
            )
            self._conn.commit()
        LOGGER.debug("capture_saved", capture_id=capture.capture_id, target=capture.url)

    def update_caption(self, capture_id: str, caption: CaptionResult) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE captures SET
                    caption = ?, caption_visual_elements = ?, caption_page_type = ?,
                    caption_confidence = ?, caption_model = ?, caption_timestamp = ?,
                    caption_tokens_used = ?
                WHERE id = ?
                """,
                (
                    caption.caption,
                    orjson.dumps(caption.visual_elements).decode(),
                    caption.page_type,
                    caption.confidence,
                    caption.model,
                    _ts(caption.timestamp),
                    caption.tokens_used,
                    capture_id,
                ),
            )
            self._conn.commit()

    def get_capture(self, capture_id: str) -> Optional[PageCapture]:
        return self._fetch_one("SELECT * FROM captures WHERE id = ?", (capture_id,))

    def get_capture_by_url(self, normalized_url: str) -> Optional[PageCapture]:
        return self._fetch_one("SELECT * FROM captures WHERE normalized_url = ?", (normalized_url,))

    def captures_by_domain(self, domain: str) -> List[PageCapture]:
        return self._fetch_many("SELECT * FROM captures WHERE domain = ? ORDER BY timestamp DESC", (domain,))

    def captures_without_captions(self, limit: int = 100) -> List[PageCapture]:
        return self._fetch_many("SELECT * FROM captures WHERE caption IS NULL LIMIT ?", (limit,))

    def capture_count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS total FROM captures").fetchone()
        return int(row["total"])

    def caption_count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS total FROM captures WHERE caption IS NOT NULL").fetchone()
        return int(row["total"])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        LOGGER.info("database_closed")

    def _fetch_one(self, sql: str, params: tuple) -> Optional[PageCapture]:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
            return self._row_to_capture(row) if row else None

    def _fetch_many(self, sql: str, params: tuple) -> List[PageCapture]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
            return [self._row_to_capture(row) for row in rows]

    def _row_to_capture(self, row: sqlite3.Row) -> PageCapture:
        link_rows = self._conn.execute("SELECT * FROM links WHERE capture_id = ? ORDER BY id", (row["id"],)).fetchall()
        capture = PageCapture(
            capture_id=row["id"],
            url=row["url"],
            normalized_url=row["normalized_url"],
            domain=row["domain"],
            depth=row["depth"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            screenshot_path=row["screenshot_path"],
            html=ExtractedHtml(
                html=row["html_content"],
                title=row["html_title"],
                description=row["html_description"],
                text_content=row["html_text_content"],
                links=[
                    ExtractedLink(href=link["href"], text=link["text"], is_internal=bool(link["is_internal"]))
                    for link in link_rows
                ],
            ),
            css=ExtractedCss(
                css=row["css_content"],
                stylesheet_count=row["css_stylesheet_count"],
                original_size=row["css_original_size"],
            ),
            status_code=row["status_code"],
            final_url=row["final_url"],
            load_time_ms=row["load_time"],
        )
        if row["caption"] is not None:
            capture.caption = CaptionResult(
                caption=row["caption"],
                visual_elements=orjson.loads(row["caption_visual_elements"]) if row["caption_visual_elements"] else [],
                page_type=row["caption_page_type"] or "",
                confidence=row["caption_confidence"] or 0.0,
                model=row["caption_model"] or "",
                tokens_used=row["caption_tokens_used"] or 0,
                timestamp=datetime.fromisoformat(row["caption_timestamp"]) if row["caption_timestamp"] else datetime.now(),
            )
        return capture
