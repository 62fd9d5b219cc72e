import asyncio
import os
import time
from collections import Counter

import httpx
import pytest

from facesearch.core.errors import ErrorCode, FaceSearchError
from facesearch.services.thumbnail_pipeline import (
    PipelineCancelled,
    PipelineOptions,
    ThumbnailPipeline,
    thumbnail_path,
)
from tests.mocks import FakeEngine, encode_noise_image, make_candidate, make_face, no_sleep

THUMBNAIL = encode_noise_image(800, 600, seed=9)


def _candidates(count: int):
    return [make_candidate(f"site-1-{i + 1}") for i in range(count)]


class _Harness:
    """
    Runs a ThumbnailPipeline against an httpx mock transport. `responses`
    maps a thumbnail path ("/site-1-1.jpg") to a status code or a list of
    status codes served on successive requests.
    """

    def __init__(self, tmp_path, engine, responses=None, max_bytes=None):
        self.thumbnail_dir = str(tmp_path / "thumbs")
        self.engine = engine
        self.responses = responses or {}
        self.max_bytes = max_bytes
        self.requests = Counter()
        self.sleeps = []
        self.on_request = None

    def _handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests[path] += 1
        if self.on_request:
            self.on_request(path)

        planned = self.responses.get(path, 200)
        if isinstance(planned, list):
            planned = planned[min(self.requests[path], len(planned)) - 1]
        if isinstance(planned, bytes):
            return httpx.Response(200, content=planned)
        if planned != 200:
            return httpx.Response(planned)
        return httpx.Response(200, content=THUMBNAIL)

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)

    def run(self, candidates, embedding, threshold=0.7, options=None, cancel_event=None):
        async def scenario():
            transport = httpx.MockTransport(self._handler)
            async with httpx.AsyncClient(transport=transport) as client:
                pipeline = ThumbnailPipeline(
                    self.engine,
                    thumbnail_dir=self.thumbnail_dir,
                    client=client,
                    max_bytes=self.max_bytes,
                    sleep=self._sleep,
                )
                return await pipeline.run(candidates, embedding, threshold, options=options, cancel_event=cancel_event)

        return asyncio.run(scenario())

    def leftover_files(self):
        if not os.path.isdir(self.thumbnail_dir):
            return []
        return os.listdir(self.thumbnail_dir)


class TestPipelineScoring:
    """Happy-path scoring, filtering and stats."""

    def test_scores_filters_and_ranks(self, tmp_path, unit_vector_512, similar_vector_512, different_vector_512):
        engine = FakeEngine({
            "site-1-1": [make_face(different_vector_512)],
            "site-1-2": [make_face(similar_vector_512), make_face(different_vector_512)],
            "site-1-3": [],
            "site-1-4": [make_face(unit_vector_512)],
        })
        harness = _Harness(tmp_path, engine)

        result = harness.run(_candidates(4), unit_vector_512.tolist(), threshold=0.7)

        assert result.success
        assert [m.id for m in result.matches] == ["site-1-4", "site-1-2"]
        assert {m.id for m in result.scored} == {"site-1-1", "site-1-2", "site-1-4"}
        assert result.errors == []
        assert result.stats.to_dict() == {
            "totalProcessed": 4,
            "facesDetected": 3,
            "noFacesFound": 1,
            "processingErrors": 0,
        }
        assert sorted(engine.calls) == ["site-1-1", "site-1-2", "site-1-3", "site-1-4"]

    def test_thumbnails_removed_after_run(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine({"site-1-1": [make_face(unit_vector_512)]}))

        harness.run(_candidates(3), unit_vector_512.tolist())

        assert harness.leftover_files() == []

    def test_candidates_without_thumbnail_url_are_skipped(self, tmp_path, unit_vector_512):
        candidates = _candidates(2)
        candidates[1].thumbnail_url = ""
        harness = _Harness(tmp_path, FakeEngine())

        result = harness.run(candidates, unit_vector_512.tolist())

        assert result.stats.total_processed == 1
        assert sum(harness.requests.values()) == 1

    def test_batches_pause_between_each_other(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine())

        harness.run(_candidates(7), unit_vector_512.tolist(), options=PipelineOptions(batch_size=3, batch_pause=0.1))

        assert harness.sleeps == [0.1, 0.1]

    def test_invalid_threshold(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine())

        with pytest.raises(FaceSearchError) as exc_info:
            harness.run(_candidates(1), unit_vector_512.tolist(), threshold=1.5)

        assert exc_info.value.code == ErrorCode.INVALID_THRESHOLD


class TestPipelineFailures:
    """Per-item failures, retries and the skip_on_error switch."""

    def test_failed_download_retried_then_reported(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine({"site-1-1": [make_face(unit_vector_512)]}), {"/site-1-2.jpg": 404})

        result = harness.run(_candidates(3), unit_vector_512.tolist())

        assert result.success
        assert [m.id for m in result.matches] == ["site-1-1"]
        assert result.errors == ["Thumbnail download failed for site-1-2"]
        assert harness.requests["/site-1-2.jpg"] == 3
        assert harness.sleeps == [1.0, 2.0]
        assert result.stats.processing_errors == 1
        assert result.stats.total_processed == 3

    def test_transient_failure_recovers_on_retry(self, tmp_path, unit_vector_512):
        engine = FakeEngine({"site-1-1": [make_face(unit_vector_512)]})
        harness = _Harness(tmp_path, engine, {"/site-1-1.jpg": [503, 200]})

        result = harness.run(_candidates(1), unit_vector_512.tolist())

        assert result.errors == []
        assert [m.id for m in result.matches] == ["site-1-1"]
        assert result.stats.total_processed == 1

    def test_stop_on_first_error(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine(), {"/site-1-1.jpg": 500})

        result = harness.run(
            _candidates(3),
            unit_vector_512.tolist(),
            options=PipelineOptions(skip_on_error=False),
        )

        assert result.success is False
        assert result.matches == []
        assert len(result.errors) == 1
        assert harness.requests["/site-1-1.jpg"] == 1
        assert harness.leftover_files() == []

    def test_oversized_thumbnail(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine(), max_bytes=1024)

        result = harness.run(_candidates(1), unit_vector_512.tolist(), options=PipelineOptions(max_retries=0))

        assert result.errors == ["Thumbnail exceeds the maximum allowed size"]

    def test_undecodable_thumbnail(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine(), {"/site-1-1.jpg": b"<html>not an image</html>"})

        result = harness.run(_candidates(1), unit_vector_512.tolist(), options=PipelineOptions(max_retries=0))

        assert result.errors == ["Thumbnail for site-1-1 is not a valid image"]

    def test_detection_failure_does_not_leak_details(self, tmp_path, unit_vector_512):
        harness = _Harness(tmp_path, FakeEngine(failing=["site-1-1"]))

        result = harness.run(_candidates(2), unit_vector_512.tolist(), options=PipelineOptions(max_retries=1))

        assert result.errors == ["Face detection failed for site-1-1"]
        assert "exploded" not in " ".join(result.errors)
        assert harness.leftover_files() == []


class TestPipelineCancellation:
    """Cancellation through the session's cancel event."""

    def test_cancelled_before_start(self, tmp_path, unit_vector_512):
        event = asyncio.Event()
        event.set()
        harness = _Harness(tmp_path, FakeEngine())

        with pytest.raises(PipelineCancelled):
            harness.run(_candidates(2), unit_vector_512.tolist(), cancel_event=event)

        assert sum(harness.requests.values()) == 0

    def test_cancelled_mid_run_leaves_no_files(self, tmp_path, unit_vector_512):
        event = asyncio.Event()
        harness = _Harness(tmp_path, FakeEngine())
        harness.on_request = lambda path: event.set()

        with pytest.raises(PipelineCancelled):
            harness.run(_candidates(4), unit_vector_512.tolist(), cancel_event=event)

        assert harness.leftover_files() == []


class TestConcurrentRuns:
    """Two searches scoring the same candidate ids at the same time."""

    def test_runs_do_not_share_thumbnail_files(self, tmp_path, unit_vector_512):
        thumbnail_dir = str(tmp_path / "thumbs")
        seen_paths = {}

        class RecordingEngine(FakeEngine):
            def __init__(self, name, delay):
                super().__init__({"site-1-1": [make_face(unit_vector_512)]})
                self.name = name
                self.delay = delay

            def detect_faces_in_file(self, path):
                seen_paths[self.name] = path
                time.sleep(self.delay)
                return super().detect_faces_in_file(path)

        slow = RecordingEngine("slow", delay=0.3)
        fast = RecordingEngine("fast", delay=0.0)

        async def scenario():
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=THUMBNAIL))
            async with httpx.AsyncClient(transport=transport) as client:
                runs = [
                    ThumbnailPipeline(engine, thumbnail_dir=thumbnail_dir, client=client, sleep=no_sleep).run(
                        _candidates(1), unit_vector_512.tolist(), 0.7
                    )
                    for engine in (slow, fast)
                ]
                return await asyncio.gather(*runs)

        slow_result, fast_result = asyncio.run(scenario())

        # The fast run finishes and cleans up while the slow one is still scanning
        assert slow_result.errors == []
        assert [m.id for m in slow_result.matches] == ["site-1-1"]
        assert [m.id for m in fast_result.matches] == ["site-1-1"]
        assert seen_paths["slow"] != seen_paths["fast"]
        assert os.listdir(thumbnail_dir) == []


def test_thumbnail_path_is_sanitized(tmp_path):
    path = thumbnail_path(str(tmp_path), "../../etc/passwd")
    assert os.path.dirname(path) == str(tmp_path)
    assert os.path.basename(path) == "______etc_passwd-thumbnail.jpg"
