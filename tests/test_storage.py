import orjson
import pytest

from venom.fetch.snapshot import CaptionResult, ExtractedCss, ExtractedHtml, ExtractedLink, PageCapture
from venom.observability.metrics import CrawlStats
from venom.orchestrator.jobs import STATUSES, Job
from venom.storage.database import CaptureStore
from venom.storage.layout import DataLayout


def _capture(url: str, domain: str = "site.test") -> PageCapture:
    return PageCapture(
        url=url,
        normalized_url=url,
        domain=domain,
        depth=1,
        screenshot_path="shot.png",
        html=ExtractedHtml(
            html="<p>hi</p>",
            title="Hi",
            text_content="hi",
            description="greeting",
            links=[ExtractedLink(href=f"{url}/next", text="next", is_internal=True)],
        ),
        css=ExtractedCss(css="p{}", stylesheet_count=1, original_size=3),
        status_code=200,
        final_url=url,
        load_time_ms=12,
        bytes_downloaded=9,
    )


def test_capture_roundtrip_with_links_and_caption(tmp_path):
    store = CaptureStore(tmp_path / "venom.db")
    capture = _capture("https://site.test/a")
    store.save_capture(capture)
    assert store.captures_without_captions() != []
    store.update_caption(
        capture.capture_id,
        CaptionResult(
            caption="A greeting",
            visual_elements=["paragraph"],
            page_type="article",
            confidence=0.7,
            model="m",
            tokens_used=3,
        ),
    )
    loaded = store.get_capture_by_url("https://site.test/a")
    assert loaded.html.description == "greeting"
    assert loaded.html.links[0].href == "https://site.test/a/next"
    assert loaded.css.stylesheet_count == 1
    assert loaded.caption.visual_elements == ["paragraph"]
    assert store.caption_count() == 1
    assert store.captures_without_captions() == []
    store.close()


def test_captures_by_domain_and_counts(tmp_path):
    store = CaptureStore(tmp_path / "venom.db")
    store.save_capture(_capture("https://site.test/a"))
    store.save_capture(_capture("https://site.test/b"))
    store.save_capture(_capture("https://other.test/c", domain="other.test"))
    assert len(store.captures_by_domain("site.test")) == 2
    assert store.capture_count() == 3
    assert store.url_exists("https://other.test/c")
    store.close()


def test_job_stats_are_zero_filled_and_status_checked(tmp_path):
    store = CaptureStore(tmp_path / "venom.db")
    job = Job(url="https://site.test/")
    assert store.add_job_if_absent(job, "https://site.test/")
    assert not store.add_job_if_absent(Job(url="https://site.test"), "https://site.test/")
    stats = store.job_stats()
    assert set(stats) == set(STATUSES)
    assert stats["pending"] == 1
    with pytest.raises(ValueError):
        store.update_job_status(job.job_id, "lost")
    store.close()


def test_layout_and_stats_export(tmp_path):
    layout = DataLayout(tmp_path / "data")
    shot = layout.save_screenshot(b"12345")
    assert shot.parent == layout.screenshots
    assert layout.storage_used() == 5
    stats = CrawlStats()
    stats.incr("urls_crawled", 2)
    stats.finish()
    stats.export(path=layout.metadata / "crawl-test.json")
    payload = orjson.loads((layout.metadata / "crawl-test.json").read_bytes())
    assert payload["urls_crawled"] == 2
    assert payload["end_time"] is not None
    assert stats.duration_seconds >= 0
