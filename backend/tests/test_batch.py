"""Tests for the batch queue and scheduler"""

import os

import pytest

from conftest import FakeTicker, make_jpeg
from image_optimizer.batch import (
    MAX_RETRY_ATTEMPTS,
    PROGRESS_KEY,
    QUEUE_KEY,
    BatchOptions,
    BatchScheduler,
    categorize_error,
    determine_priority,
    sort_tasks,
)
from image_optimizer.conversion.models import ConversionTask, Priority
from image_optimizer.errors import AlreadyRunning, EmptyQueue

SMALL = 100_000
LARGE = 2_200_000


def fill_library(media_root, small=3, large=0):
    for i in range(small):
        make_jpeg(media_root / f"small_{i:02d}.jpg", size=SMALL)
    for i in range(large):
        make_jpeg(media_root / f"large_{i:02d}.jpg", size=LARGE)


class TestQueueOrdering:
    @pytest.mark.parametrize(
        "size,priority",
        [(0, Priority.HIGH), (500 * 1024 - 1, Priority.HIGH), (500 * 1024, Priority.NORMAL),
         (2 * 1024 * 1024 - 1, Priority.NORMAL), (2 * 1024 * 1024, Priority.LOW), (None, Priority.NORMAL)],
    )
    def test_priority_by_size(self, size, priority):
        assert determine_priority(size) is priority

    def test_sort_is_stable_within_priority(self):
        tasks = [
            ConversionTask("c", priority=Priority.LOW, created_time=1.0),
            ConversionTask("a", priority=Priority.HIGH, created_time=5.0),
            ConversionTask("b", priority=Priority.HIGH, created_time=5.0),
            ConversionTask("d", priority=Priority.HIGH, created_time=2.0),
            ConversionTask("e", priority=Priority.NORMAL, created_time=0.0),
        ]
        assert [t.subject_id for t in sort_tasks(tasks)] == ["d", "a", "b", "e", "c"]

    def test_options_validation(self):
        with pytest.raises(ValueError):
            BatchOptions(format="jxl")
        with pytest.raises(ValueError):
            BatchOptions(limit=-1)
        with pytest.raises(ValueError):
            BatchOptions.from_dict({"subject_ids": "photo.jpg"})
        with pytest.raises(ValueError):
            BatchOptions.from_dict({"subject_ids": ["a.jpg", 7]})
        assert BatchOptions.from_dict({"subject_ids": ("a.jpg",)}).subject_ids == ["a.jpg"]
        assert BatchOptions.from_dict({"priority": "high"}).priority is Priority.HIGH
        assert BatchOptions.from_dict({"priority": 3}).priority is Priority.LOW


class TestStart:
    def test_start_builds_sorted_queue(self, scheduler, media_root, store):
        make_jpeg(media_root / "a_large.jpg", size=LARGE)
        make_jpeg(media_root / "b_small.jpg", size=SMALL)
        make_jpeg(media_root / "c_medium.jpg", size=600_000)

        progress = scheduler.start({"format": "webp"})

        assert progress.status == "running"
        assert progress.total == 3
        queue = store.get(QUEUE_KEY)
        assert [t["subject_id"] for t in queue] == ["b_small.jpg", "c_medium.jpg", "a_large.jpg"]
        assert scheduler.ticker.armed

    def test_limit_offset_and_explicit_ids(self, scheduler, media_root, store):
        fill_library(media_root, small=5)
        assert scheduler.start({"limit": 2, "offset": 1}).total == 2
        assert [t["subject_id"] for t in store.get(QUEUE_KEY)] == ["small_01.jpg", "small_02.jpg"]
        scheduler.cancel()
        progress = scheduler.start({"subject_ids": ["small_04.jpg"], "priority": "low"})
        assert progress.total == 1
        assert store.get(QUEUE_KEY)[0]["priority"] == Priority.LOW

    def test_already_running_does_not_mutate_state(self, scheduler, media_root, store):
        fill_library(media_root, small=2)
        scheduler.start()
        queue_before, progress_before = store.get(QUEUE_KEY), store.get(PROGRESS_KEY)
        make_jpeg(media_root / "later.jpg")

        with pytest.raises(AlreadyRunning):
            scheduler.start({"force": True})

        assert store.get(QUEUE_KEY) == queue_before
        assert store.get(PROGRESS_KEY) == progress_before

    def test_empty_queue(self, scheduler, store):
        with pytest.raises(EmptyQueue):
            scheduler.start()
        assert scheduler.progress()["status"] == "idle"
        assert store.get(QUEUE_KEY) is None

    def test_non_images_are_not_eligible(self, scheduler, media_root):
        (media_root / "notes.txt").write_text("hello")
        (media_root / "already.webp").write_bytes(b"w")
        with pytest.raises(EmptyQueue):
            scheduler.start()


class TestProcessBatch:
    def test_first_tick_processes_small_files_first(self, scheduler, media_root, fake_converter, store):
        # Large files interleaved by name so ordering comes from priority, not enumeration
        for i in range(12):
            size = LARGE if i in (2, 5, 8, 11) else SMALL
            make_jpeg(media_root / f"img_{i:02d}.jpg", size=size)
        fake_converter.output_size = 1_000
        scheduler.start({"format": "webp"})

        progress = scheduler.process_batch()

        assert progress.processed == 10
        assert progress.total == 12
        assert progress.successful == 10
        converted = [c[0].name for c in fake_converter.calls]
        small = [f"img_{i:02d}.jpg" for i in range(12) if i not in (2, 5, 8, 11)]
        assert converted == small + ["img_02.jpg", "img_05.jpg"]
        assert [t["subject_id"] for t in store.get(QUEUE_KEY)] == ["img_08.jpg", "img_11.jpg"]

        progress = scheduler.process_batch()
        assert progress.status == "completed"
        assert progress.processed == 12
        assert not scheduler.ticker.armed
        assert store.get(QUEUE_KEY) is None

    def test_not_running_is_noop(self, scheduler, fake_converter):
        assert scheduler.process_batch().status == "idle"
        assert fake_converter.calls == []

    def test_skips_already_converted(self, scheduler, media_root, fake_converter):
        make_jpeg(media_root / "done.jpg")
        (media_root / "done.webp").write_bytes(b"w")
        scheduler.start({"format": "webp"})
        progress = scheduler.process_batch()
        assert progress.skipped == 1
        assert progress.status == "completed"
        assert fake_converter.calls == []

    def test_force_reconverts(self, scheduler, media_root, fake_converter):
        make_jpeg(media_root / "done.jpg")
        (media_root / "done.webp").write_bytes(b"w")
        scheduler.start({"format": "webp", "force": True})
        assert scheduler.process_batch().successful == 1
        assert len(fake_converter.calls) == 1

    def test_only_missing_formats_are_converted(self, scheduler, media_root, fake_converter):
        make_jpeg(media_root / "half.jpg")
        (media_root / "half.webp").write_bytes(b"w")
        scheduler.start()
        scheduler.process_batch()
        assert [c[2] for c in fake_converter.calls] == ["avif"]

    def test_retryable_failure_backs_off(self, scheduler, media_root, fake_converter, store, clock):
        make_jpeg(media_root / "flaky.jpg")
        fake_converter.result = False
        scheduler.start({"format": "webp"})

        progress = scheduler.process_batch()

        assert progress.processed == 0
        assert progress.failed == 0
        [task] = store.get(QUEUE_KEY)
        assert task["retry_count"] == 1
        assert task["not_before"] == clock.now + 60
        assert task["priority"] == Priority.LOW
        assert "Failed to convert" in task["last_error"]
        assert len(fake_converter.calls) == 1

        # Not due yet: requeued without a codec call
        clock.advance(30)
        scheduler.process_batch()
        assert len(fake_converter.calls) == 1

        clock.advance(30)
        scheduler.process_batch()
        [task] = store.get(QUEUE_KEY)
        assert task["retry_count"] == 2
        assert task["not_before"] == clock.now + 120

    def test_retry_ceiling_fails_terminally(self, scheduler, media_root, fake_converter, clock):
        make_jpeg(media_root / "doomed.jpg")
        fake_converter.result = False
        scheduler.start({"format": "webp"})

        for attempt in range(MAX_RETRY_ATTEMPTS):
            scheduler.process_batch()
            clock.advance((attempt + 1) * 60)
        progress = scheduler.process_batch()

        assert len(fake_converter.calls) == MAX_RETRY_ATTEMPTS + 1
        assert progress.status == "completed"
        assert progress.failed == 1
        assert progress.processed == 1
        assert progress.errors[0]["code"] == "conversion_failed"

    def test_missing_file_is_not_retried(self, scheduler, store):
        scheduler.start({"subject_ids": ["vanished.jpg"]})
        progress = scheduler.process_batch()
        assert progress.failed == 1
        assert progress.status == "completed"
        assert progress.errors[0]["code"] == "file_not_found"
        assert store.get(QUEUE_KEY) is None

    def test_file_too_large_is_not_retried(self, scheduler, services, media_root, fake_converter):
        services.config.update({"max_file_size": 1024})
        make_jpeg(media_root / "huge.jpg", size=5_000)
        scheduler.start()
        progress = scheduler.process_batch()
        assert progress.failed == 1
        assert progress.errors[0]["code"] == "file_too_large"
        assert fake_converter.calls == []

    def test_unexpected_exception_is_folded_into_progress(self, scheduler, media_root, fake_converter, store, monkeypatch):
        make_jpeg(media_root / "weird.jpg")
        scheduler.start()

        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(scheduler.orchestrator, "missing_formats", explode)
        progress = scheduler.process_batch()
        assert progress.processed == 0
        assert store.get(QUEUE_KEY)[0]["last_error"] == "disk on fire"

    def test_time_ceiling_is_checked_between_tasks(self, scheduler, media_root, fake_converter, clock):
        fill_library(media_root, small=3)
        fake_converter.on_convert = lambda: clock.advance(30)
        scheduler.start({"format": "webp"})
        progress = scheduler.process_batch()
        assert progress.processed == 1

    def test_memory_threshold_stops_tick(self, store, services, media_root, fake_converter, clock):
        scheduler = BatchScheduler(
            store, services.orchestrator, services.media, ticker=FakeTicker(), clock=clock,
            memory_usage=lambda: 900, memory_limit=1000,
        )
        fill_library(media_root, small=2)
        scheduler.start()
        progress = scheduler.process_batch()
        assert progress.processed == 0
        assert fake_converter.calls == []
        assert services.sink.recent(1, "batch_processing")[0]["message"].startswith("Batch processing stopped")

    def test_progress_listener_called_on_flush(self, scheduler, media_root):
        fill_library(media_root, small=12)
        events = []
        scheduler.on_progress(lambda p: events.append(p.processed))
        scheduler.start({"format": "webp"})
        scheduler.process_batch()
        assert events == [5, 10, 10]

    def test_completion_listener(self, scheduler, media_root):
        fill_library(media_root, small=1)
        done = []
        scheduler.on_complete(done.append)
        scheduler.start()
        scheduler.process_batch()
        assert len(done) == 1
        assert done[0].status == "completed"


class TestCancelAndProgress:
    def test_cancel_without_batch(self, scheduler, store):
        assert scheduler.cancel() is False
        assert store.get(PROGRESS_KEY) is None
        assert store.get(QUEUE_KEY) is None

    def test_cancel_running_batch(self, scheduler, media_root, fake_converter, store, clock):
        fill_library(media_root, small=3)
        cancelled = []
        scheduler.on_cancel(cancelled.append)
        scheduler.start()
        clock.advance(5)

        assert scheduler.cancel() is True

        progress = scheduler.progress()
        assert progress["status"] == "cancelled"
        assert progress["end_time"] == clock.now
        assert store.get(QUEUE_KEY) is None
        assert not scheduler.ticker.armed
        assert len(cancelled) == 1
        assert scheduler.process_batch().status == "cancelled"
        assert fake_converter.calls == []
        assert scheduler.cancel() is False

    def test_cancel_during_tick_stops_further_work(self, scheduler, media_root, fake_converter):
        fill_library(media_root, small=4)
        scheduler.start({"format": "webp"})
        fake_converter.on_convert = lambda: scheduler.cancel() if len(fake_converter.calls) == 2 else None

        progress = scheduler.process_batch()

        assert len(fake_converter.calls) == 2
        assert progress.status == "cancelled"
        assert scheduler.progress()["status"] == "cancelled"

    def test_restart_during_tick_leaves_new_batch_alone(self, scheduler, media_root, fake_converter, store):
        fill_library(media_root, small=4)
        scheduler.start({"format": "webp"})
        old_batch = store.get(PROGRESS_KEY)["batch_id"]

        def cancel_and_restart():
            if len(fake_converter.calls) == 1:
                scheduler.cancel()
                scheduler.start({"subject_ids": ["small_03.jpg"], "format": "avif"})

        fake_converter.on_convert = cancel_and_restart

        progress = scheduler.process_batch()

        assert len(fake_converter.calls) == 1
        assert progress.status == "running"
        assert progress.batch_id != old_batch
        assert (progress.total, progress.processed) == (1, 0)
        queue = store.get(QUEUE_KEY)
        assert [(t["subject_id"], t["format"]) for t in queue] == [("small_03.jpg", "avif")]

        finished = scheduler.process_batch()
        assert finished.status == "completed"
        assert (finished.total, finished.successful) == (1, 1)
        assert [c[2] for c in fake_converter.calls] == ["webp", "avif"]

    def test_start_after_terminal_state(self, scheduler, media_root):
        fill_library(media_root, small=1)
        scheduler.start()
        scheduler.cancel()
        assert scheduler.start().status == "running"

    def test_percentage_and_eta(self, scheduler, media_root, clock):
        fill_library(media_root, small=12)
        scheduler.start({"format": "webp"})
        scheduler.process_batch()
        clock.advance(100)
        progress = scheduler.progress()
        assert progress["percentage"] == pytest.approx(83.33)
        assert progress["estimated_time_remaining"] == 20

    def test_idle_progress(self, scheduler):
        progress = scheduler.progress()
        assert progress["status"] == "idle"
        assert progress["percentage"] == 0
        assert "estimated_time_remaining" not in progress


class TestDiagnosticsAndMaintenance:
    def test_queue_status(self, scheduler, media_root):
        fill_library(media_root, small=8, large=4)
        scheduler.start({"format": "webp"})
        status = scheduler.queue_status()
        assert status["queue_length"] == 12
        assert status["is_running"] is True
        analysis = status["queue_analysis"]
        assert analysis["priority_breakdown"] == {"high": 8, "normal": 0, "low": 4}
        assert analysis["retry_breakdown"] == {"first_attempt": 12, "retries": 0}
        assert analysis["format_breakdown"] == {"webp": 12}
        assert analysis["estimated_processing_time"] == 8 * 2 + 4 * 10

    def test_detailed_statistics(self, scheduler, media_root, clock):
        assert scheduler.detailed_statistics()["status"] == "no_batch"
        make_jpeg(media_root / "ok.jpg")
        scheduler.start({"subject_ids": ["ok.jpg", "gone.jpg"]})
        clock.advance(60)
        scheduler.process_batch()
        stats = scheduler.detailed_statistics()
        assert stats["batch_info"]["status"] == "completed"
        assert stats["batch_info"]["success_rate"] == 50.0
        assert stats["error_analysis"]["error_categories"] == {"file_not_found": 1}
        assert stats["performance"]["items_per_minute"] == 2.0

    def test_categorize_error(self):
        assert categorize_error("Allowed memory size exhausted") == "memory_issues"
        assert categorize_error("File not found: x.jpg") == "file_not_found"
        assert categorize_error("Directory is not writable: permission denied") == "permission_issues"
        assert categorize_error("Failed to convert x.jpg") == "conversion_failures"
        assert categorize_error("Request timeout") == "timeout_issues"
        assert categorize_error("something else") == "other"

    def test_force_process(self, scheduler, media_root):
        assert scheduler.force_process() is None
        fill_library(media_root, small=1)
        scheduler.start()
        assert scheduler.force_process().status == "completed"

    def test_resume_rearms_ticker(self, store, services, media_root, clock):
        fill_library(media_root, small=2)
        services.scheduler.start()
        # Simulate a restart: fresh scheduler over the same store
        restarted = BatchScheduler(store, services.orchestrator, services.media, ticker=FakeTicker(), clock=clock)
        assert restarted.resume() is True
        assert restarted.ticker.armed
        assert restarted.process_batch().status == "completed"

    def test_resume_without_batch(self, scheduler):
        assert scheduler.resume() is False

    def test_cleanup_temporary_files(self, scheduler, media_root, store, clock):
        make_jpeg(media_root / "keep.jpg")
        (media_root / "keep.webp").write_bytes(b"w")
        (media_root / "orphan.webp").write_bytes(b"w")
        (media_root / "banner.webp").write_bytes(b"uploaded as webp")
        stale = media_root / "image-optimizer-temp-abc123-keep.webp.tmp"
        fresh = media_root / "image-optimizer-temp-def456-keep.avif.tmp"
        stale_upload = media_root / "uploads" / "upload.tmp"
        fresh_upload = media_root / "uploads" / "pending.tmp"
        stale_upload.parent.mkdir()
        for path in (stale, fresh, stale_upload, fresh_upload):
            path.write_bytes(b"t")
        for path in (stale, stale_upload):
            os.utime(path, (clock.now - 7200, clock.now - 7200))
        for path in (fresh, fresh_upload):
            os.utime(path, (clock.now, clock.now))
        store.set(
            "conversion_history:orphan.jpg",
            [{"conversions": {"webp": {"format": "webp", "converted_path": str(media_root / "orphan.webp")}}}],
        )
        store.set("conversion_history:keep.jpg", [{}])

        results = scheduler.cleanup_temporary_files()

        assert results["temp_files_deleted"] == 2
        assert results["orphaned_files_deleted"] == 1
        assert results["history_records_deleted"] == 1
        assert results["errors"] == []
        assert not stale.exists() and fresh.exists()
        assert not stale_upload.exists() and fresh_upload.exists()
        assert (media_root / "keep.webp").exists()
        assert not (media_root / "orphan.webp").exists()
        assert (media_root / "banner.webp").exists()
        assert store.keys("conversion_history:") == ["conversion_history:keep.jpg"]

    def test_cleanup_spares_webp_uploads(self, scheduler, media_root):
        (media_root / "banner.webp").write_bytes(b"w")
        (media_root / "hero.avif").write_bytes(b"a")
        results = scheduler.cleanup_temporary_files()
        assert results["orphaned_files_deleted"] == 0
        assert (media_root / "banner.webp").exists()
        assert (media_root / "hero.avif").exists()

    def test_cleanup_removes_artifacts_of_deleted_originals(self, scheduler, services, media_root):
        src = make_jpeg(media_root / "2024" / "deleted.jpg")
        services.orchestrator.convert_all(src)
        src.unlink()
        results = scheduler.cleanup_temporary_files()
        assert results["orphaned_files_deleted"] == 2
        assert results["history_records_deleted"] == 1
        assert list((media_root / "2024").iterdir()) == []
