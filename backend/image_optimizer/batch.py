"""Batch conversion queue and scheduler. Queue and progress are persisted as key/value records between ticks."""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import psutil

from image_optimizer.config import (
    BATCH_MAX_EXECUTION_TIME,
    BATCH_MEMORY_LIMIT,
    BATCH_MEMORY_THRESHOLD,
    BATCH_SIZE,
    BATCH_TICK_INTERVAL,
    OUTPUT_FORMATS,
)
from image_optimizer.conversion.models import ALL_FORMATS, ConversionTask, Priority, TaskOutcome, TaskStatus
from image_optimizer.conversion.service import HISTORY_PREFIX, ConversionOrchestrator
from image_optimizer.errors import AlreadyRunning, ConversionError, EmptyQueue, ErrorKind, ErrorSink, file_not_found, transient
from image_optimizer.media import MediaLibrary

logger = logging.getLogger("image_optimizer.batch")

QUEUE_KEY = "batch_queue"
PROGRESS_KEY = "batch_progress"

SMALL_FILE_SIZE = 500 * 1024
MEDIUM_FILE_SIZE = 2 * 1024 * 1024
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY = 60  # seconds per attempt
PROGRESS_FLUSH_EVERY = 5
MAX_RECENT_ERRORS = 50
TEMP_FILE_MAX_AGE = 3600
TEMP_FILE_PREFIX = "image-optimizer-temp-"
TEMP_FILE_PATTERN = "*.tmp"

# Rough per-item cost by priority tier, for queue estimates only
ESTIMATED_SECONDS = {Priority.HIGH: 2, Priority.NORMAL: 5, Priority.LOW: 10}

IDLE, RUNNING, COMPLETED, CANCELLED = "idle", "running", "completed", "cancelled"


def determine_priority(size: Optional[int]) -> Priority:
    """Small files first so progress moves early in a run."""
    if size is None:
        return Priority.NORMAL
    if size < SMALL_FILE_SIZE:
        return Priority.HIGH
    if size < MEDIUM_FILE_SIZE:
        return Priority.NORMAL
    return Priority.LOW


def sort_tasks(tasks: list[ConversionTask]) -> list[ConversionTask]:
    # sorted() is stable: equal keys keep their enumeration order
    return sorted(tasks, key=lambda t: t.sort_key())


def categorize_error(message: str) -> str:
    message = (message or "").lower()
    if "memory" in message:
        return "memory_issues"
    if "not found" in message or "not_found" in message:
        return "file_not_found"
    if "permission" in message:
        return "permission_issues"
    if "conversion" in message or "convert" in message:
        return "conversion_failures"
    if "timeout" in message or "time limit" in message:
        return "timeout_issues"
    return "other"


def process_memory_usage() -> int:
    return psutil.Process().memory_info().rss


@dataclass
class BatchOptions:
    format: str = ALL_FORMATS
    force: bool = False
    limit: int = 0
    offset: int = 0
    subject_ids: Optional[list[str]] = None
    priority: Optional[Priority] = None

    def __post_init__(self):
        self.format = (self.format or ALL_FORMATS).lower()
        if self.format != ALL_FORMATS and self.format not in OUTPUT_FORMATS:
            raise ValueError(f"Invalid format: {self.format}. Use 'all' or one of {', '.join(OUTPUT_FORMATS)}")
        if self.limit < 0 or self.offset < 0:
            raise ValueError("limit and offset must be non-negative")
        if self.subject_ids is not None:
            if not isinstance(self.subject_ids, (list, tuple)) or not all(isinstance(s, str) for s in self.subject_ids):
                raise ValueError("subject_ids must be a list of strings")
            self.subject_ids = list(self.subject_ids)
        if isinstance(self.priority, str) and not self.priority.isdigit():
            try:
                self.priority = Priority[self.priority.upper()]
            except KeyError:
                raise ValueError(f"Invalid priority: {self.priority}") from None
        elif self.priority is not None and not isinstance(self.priority, Priority):
            self.priority = Priority(int(self.priority))

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BatchOptions":
        data = data or {}
        return cls(
            format=data.get("format") or ALL_FORMATS,
            force=bool(data.get("force", False)),
            limit=int(data.get("limit") or 0),
            offset=int(data.get("offset") or 0),
            subject_ids=data.get("subject_ids"),
            priority=data.get("priority"),
        )


@dataclass
class BatchProgress:
    status: str = IDLE
    batch_id: Optional[str] = None
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    space_saved: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    errors: list[dict] = field(default_factory=list)

    def record_error(self, entry: dict) -> None:
        self.errors.append(entry)
        del self.errors[:-MAX_RECENT_ERRORS]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "batch_id": self.batch_id,
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "space_saved": self.space_saved,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BatchProgress":
        if not data:
            return cls()
        return cls(
            status=data.get("status", IDLE),
            batch_id=data.get("batch_id"),
            total=int(data.get("total", 0)),
            processed=int(data.get("processed", 0)),
            successful=int(data.get("successful", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            space_saved=int(data.get("space_saved", 0)),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            errors=list(data.get("errors") or []),
        )


class BatchTicker:
    """Periodic trigger. Calls the callback every interval while armed; runs on a daemon thread."""

    def __init__(self, callback: Callable[[], Any], interval: float = BATCH_TICK_INTERVAL):
        self.callback = callback
        self.interval = interval
        self._armed = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_run: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._armed.is_set()

    @property
    def next_run(self) -> Optional[float]:
        return self._next_run if self.armed else None

    def arm(self) -> None:
        self._armed.set()
        self._next_run = time.time() + self.interval
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="batch-ticker", daemon=True)
            self._thread.start()

    def disarm(self) -> None:
        self._armed.clear()
        self._next_run = None

    def stop(self) -> None:
        self.disarm()
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if not self._armed.is_set():
                continue
            self._next_run = time.time() + self.interval
            try:
                self.callback()
            except Exception:
                logger.exception("Batch tick failed")


class BatchScheduler:
    """
    Single global batch. QueueState and BatchProgress live in the store; this object only holds
    collaborators and budgets, so isolated instances can share nothing.
    """

    def __init__(
        self,
        store,
        orchestrator: ConversionOrchestrator,
        media: MediaLibrary,
        sink: Optional[ErrorSink] = None,
        ticker: Optional[BatchTicker] = None,
        clock: Callable[[], float] = time.time,
        memory_usage: Callable[[], int] = process_memory_usage,
        memory_limit: int = BATCH_MEMORY_LIMIT,
        batch_size: int = BATCH_SIZE,
        max_execution_time: float = BATCH_MAX_EXECUTION_TIME,
        memory_threshold: float = BATCH_MEMORY_THRESHOLD,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.media = media
        self.sink = sink or orchestrator.sink
        self.ticker = ticker if ticker is not None else BatchTicker(self.process_batch)
        self.clock = clock
        self.memory_usage = memory_usage
        self.memory_limit = memory_limit
        self.batch_size = batch_size
        self.max_execution_time = max_execution_time
        self.memory_threshold = memory_threshold
        self._start_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._listeners: dict[str, list[Callable[[BatchProgress], None]]] = {COMPLETED: [], CANCELLED: [], "progress": []}

    # Callbacks

    def on_complete(self, fn: Callable[[BatchProgress], None]) -> None:
        self._listeners[COMPLETED].append(fn)

    def on_cancel(self, fn: Callable[[BatchProgress], None]) -> None:
        self._listeners[CANCELLED].append(fn)

    def on_progress(self, fn: Callable[[BatchProgress], None]) -> None:
        """Called after each progress flush."""
        self._listeners["progress"].append(fn)

    def _notify(self, event: str, progress: BatchProgress) -> None:
        for fn in self._listeners[event]:
            try:
                fn(progress)
            except Exception:
                logger.exception("Batch %s listener failed", event)

    # Persistence

    def _load_progress(self) -> BatchProgress:
        return BatchProgress.from_dict(self.store.get(PROGRESS_KEY))

    def _load_queue(self) -> list[ConversionTask]:
        return [ConversionTask.from_dict(d) for d in self.store.get(QUEUE_KEY, []) or []]

    @staticmethod
    def _owns(stored: Optional[dict], progress: BatchProgress) -> bool:
        """The stored batch is still running and is the same batch this tick loaded."""
        current = BatchProgress.from_dict(stored)
        return current.status == RUNNING and current.batch_id == progress.batch_id

    def _is_current(self, progress: BatchProgress) -> bool:
        return self._owns(self.store.get(PROGRESS_KEY), progress)

    def _commit(self, queue: list[ConversionTask], progress: BatchProgress) -> bool:
        """Write queue and progress together unless the stored batch stopped running or was replaced."""
        written = self.store.update_many(
            [QUEUE_KEY, PROGRESS_KEY],
            lambda current: (
                {QUEUE_KEY: [t.to_dict() for t in queue], PROGRESS_KEY: progress.to_dict()}
                if self._owns(current[PROGRESS_KEY], progress)
                else {}
            ),
        )
        return bool(written)

    # Queue building

    def build_queue(self, options: BatchOptions) -> list[ConversionTask]:
        if options.subject_ids:
            subjects = [str(s) for s in options.subject_ids]
        else:
            subjects = self.media.list_subjects(limit=options.limit, offset=options.offset)
        tasks = []
        for subject_id in subjects:
            priority = options.priority or determine_priority(self.media.file_size(subject_id))
            tasks.append(
                ConversionTask(
                    subject_id=subject_id,
                    format=options.format,
                    force=options.force,
                    priority=priority,
                    created_time=self.clock(),
                )
            )
        return sort_tasks(tasks)

    # Control

    def start(self, options=None) -> BatchProgress:
        """Raises AlreadyRunning, EmptyQueue, or ValueError for bad options."""
        if not isinstance(options, BatchOptions):
            options = BatchOptions.from_dict(options)
        with self._start_lock:
            if self._load_progress().status == RUNNING:
                raise AlreadyRunning()
            tasks = self.build_queue(options)
            if not tasks:
                raise EmptyQueue()
            progress = BatchProgress(status=RUNNING, batch_id=uuid.uuid4().hex, total=len(tasks), start_time=self.clock())

            def begin(current):
                # Re-checked inside the transaction; raising rolls it back
                if BatchProgress.from_dict(current[PROGRESS_KEY]).status == RUNNING:
                    raise AlreadyRunning()
                return {QUEUE_KEY: [t.to_dict() for t in tasks], PROGRESS_KEY: progress.to_dict()}

            self.store.update_many([QUEUE_KEY, PROGRESS_KEY], begin)
            self._cancel_requested.clear()
        self.ticker.arm()
        logger.info("Batch conversion started with %d images (format=%s, force=%s)", len(tasks), options.format, options.force)
        return progress

    def cancel(self) -> bool:
        now = self.clock()
        self._cancel_requested.set()

        def stop(current):
            progress = BatchProgress.from_dict(current[PROGRESS_KEY])
            if progress.status != RUNNING:
                return {}
            progress.status = CANCELLED
            progress.end_time = now
            return {QUEUE_KEY: None, PROGRESS_KEY: progress.to_dict()}

        changes = self.store.update_many([QUEUE_KEY, PROGRESS_KEY], stop)
        if not changes:
            self._cancel_requested.clear()
            return False
        self.ticker.disarm()
        progress = BatchProgress.from_dict(changes[PROGRESS_KEY])
        logger.info("Batch conversion cancelled after %d/%d items", progress.processed, progress.total)
        self._notify(CANCELLED, progress)
        return True

    def is_running(self) -> bool:
        return self._load_progress().status == RUNNING

    def resume(self) -> bool:
        """Re-arm the ticker for a batch that was running when the process stopped."""
        if not self.is_running():
            return False
        logger.info("Resuming batch conversion with %d queued items", len(self._load_queue()))
        self.ticker.arm()
        return True

    def progress(self) -> dict[str, Any]:
        progress = self._load_progress()
        data = progress.to_dict()
        data["percentage"] = round(progress.processed / progress.total * 100, 2) if progress.total > 0 else 0
        if progress.status == RUNNING and progress.processed > 0 and progress.start_time:
            elapsed = self.clock() - progress.start_time
            remaining = progress.total - progress.processed
            data["estimated_time_remaining"] = round(elapsed / progress.processed * remaining)
        return data

    # Tick

    def _memory_ok(self) -> bool:
        if self.memory_limit <= 0:
            return True
        usage = self.memory_usage()
        if usage / self.memory_limit >= self.memory_threshold:
            self.sink.log(
                "Batch processing stopped due to memory threshold",
                "warning",
                "batch_processing",
                {"memory_usage": usage, "memory_limit": self.memory_limit},
            )
            return False
        return True

    def process_batch(self) -> Optional[BatchProgress]:
        """One bounded slice. Never raises for per-task failures; overlapping calls return None immediately."""
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Batch tick already in progress, skipping")
            return None
        try:
            return self._process_slice()
        finally:
            self._tick_lock.release()

    def _process_slice(self) -> Optional[BatchProgress]:
        progress = self._load_progress()
        if progress.status != RUNNING:
            return progress
        queue = self._load_queue()
        started = self.clock()
        handled = 0
        unflushed = 0
        deferred_in_row = 0

        while (
            queue
            and handled < self.batch_size
            and self.clock() - started < self.max_execution_time
            and not self._cancel_requested.is_set()
            and self._memory_ok()
        ):
            task = queue.pop(0)
            if task.not_before is not None and task.not_before > self.clock():
                queue.append(task)
                deferred_in_row += 1
                if deferred_in_row >= len(queue):
                    break
                continue
            deferred_in_row = 0
            handled += 1

            outcome = self.execute_task(task)
            if not self._is_current(progress):
                # Cancelled, or cancelled and restarted, while the task ran
                logger.info("Batch %s no longer current, dropping the rest of this tick", progress.batch_id)
                return self._load_progress()
            if outcome.status is TaskStatus.RETRY:
                queue.append(self._retry_task(task, outcome.error))
            else:
                self._apply_outcome(progress, outcome)
                unflushed += 1
            if unflushed >= PROGRESS_FLUSH_EVERY:
                unflushed = 0
                if not self._commit(queue, progress):
                    logger.info("Batch no longer running, stopping tick")
                    return self._load_progress()
                self._notify("progress", progress)

        if self._cancel_requested.is_set():
            return self._load_progress()
        if not queue:
            return self._complete(progress)
        if not self._commit(queue, progress):
            return self._load_progress()
        self._notify("progress", progress)
        return progress

    def _complete(self, progress: BatchProgress) -> BatchProgress:
        progress.status = COMPLETED
        progress.end_time = self.clock()
        changes = self.store.update_many(
            [QUEUE_KEY, PROGRESS_KEY],
            lambda current: (
                {QUEUE_KEY: None, PROGRESS_KEY: progress.to_dict()}
                if self._owns(current[PROGRESS_KEY], progress)
                else {}
            ),
        )
        if not changes:
            return self._load_progress()
        self.ticker.disarm()
        logger.info(
            "Batch conversion completed. Total: %d, Successful: %d, Failed: %d, Skipped: %d, Space saved: %d bytes",
            progress.total, progress.successful, progress.failed, progress.skipped, progress.space_saved,
        )
        self._notify(COMPLETED, progress)
        return progress

    def _apply_outcome(self, progress: BatchProgress, outcome: TaskOutcome) -> None:
        progress.processed += 1
        if outcome.status is TaskStatus.SUCCESS:
            progress.successful += 1
            progress.space_saved += outcome.space_saved
        elif outcome.status is TaskStatus.SKIPPED:
            progress.skipped += 1
        else:
            progress.failed += 1
            error = outcome.error
            progress.record_error({
                "subject_id": outcome.subject_id,
                "code": error.code if error else "unknown",
                "message": str(error) if error else (outcome.reason or "unknown error"),
                "time": self.clock(),
            })
            self.sink.log(
                error or (outcome.reason or "Batch item failed"),
                "error",
                "batch_processing",
                {"subject_id": outcome.subject_id, "batch_progress": f"{progress.processed}/{progress.total}"},
            )

    def _retry_task(self, task: ConversionTask, error: Optional[ConversionError]) -> ConversionTask:
        retry_count = task.retry_count + 1
        retried = ConversionTask(
            subject_id=task.subject_id,
            format=task.format,
            force=task.force,
            priority=Priority.LOW,
            retry_count=retry_count,
            not_before=self.clock() + retry_count * RETRY_DELAY,
            created_time=task.created_time,
            last_error=str(error) if error else task.last_error,
        )
        self.sink.log(
            f"Item {task.subject_id} queued for retry (attempt {retry_count}/{MAX_RETRY_ATTEMPTS}): {error}",
            "warning",
            "batch_processing",
            {"code": error.code if error else None},
        )
        return retried

    def should_retry(self, task: ConversionTask, error: ConversionError) -> bool:
        return error.retryable and task.retry_count < MAX_RETRY_ATTEMPTS

    def execute_task(self, task: ConversionTask) -> TaskOutcome:
        """Run one task. Exceptions are folded into a transient failure."""
        try:
            outcome = self._execute(task)
        except Exception as e:
            logger.exception("Unexpected error processing %s", task.subject_id)
            outcome = TaskOutcome(TaskStatus.FAILED, task.subject_id, error=transient("processing_exception", str(e)))
        if outcome.status is TaskStatus.FAILED and outcome.error and self.should_retry(task, outcome.error):
            outcome.status = TaskStatus.RETRY
        return outcome

    def _execute(self, task: ConversionTask) -> TaskOutcome:
        path = self.media.resolve(task.subject_id)
        if path is None:
            return TaskOutcome(TaskStatus.FAILED, task.subject_id, error=file_not_found(task.subject_id))

        if task.force:
            targets = task.target_formats
        else:
            targets = self.orchestrator.missing_formats(path, task.target_formats)
            if not targets:
                return TaskOutcome(TaskStatus.SKIPPED, task.subject_id, reason="already_converted", path=path)

        report = self.orchestrator.convert_all(path, targets)
        if report.complete_failure:
            return TaskOutcome(TaskStatus.FAILED, task.subject_id, error=report.first_error(), path=path)
        if not report.conversions:
            error = ConversionError(ErrorKind.UNSUPPORTED, "format_disabled", f"No enabled format to convert {task.subject_id} to.")
            return TaskOutcome(TaskStatus.FAILED, task.subject_id, error=error, path=path)
        return TaskOutcome(TaskStatus.SUCCESS, task.subject_id, space_saved=report.space_saved, path=path)

    # Diagnostics

    def queue_status(self) -> dict[str, Any]:
        queue = self._load_queue()
        analysis = {
            "priority_breakdown": {"high": 0, "normal": 0, "low": 0},
            "retry_breakdown": {"first_attempt": 0, "retries": 0},
            "format_breakdown": {},
            "estimated_processing_time": 0,
        }
        for task in queue:
            analysis["priority_breakdown"][task.priority.name.lower()] += 1
            analysis["retry_breakdown"]["retries" if task.retry_count > 0 else "first_attempt"] += 1
            analysis["format_breakdown"][task.format] = analysis["format_breakdown"].get(task.format, 0) + 1
            analysis["estimated_processing_time"] += ESTIMATED_SECONDS[task.priority]
        return {
            "queue_length": len(queue),
            "is_running": self.is_running(),
            "progress": self.progress(),
            "next_scheduled": self.ticker.next_run,
            "queue_analysis": analysis,
        }

    def detailed_statistics(self) -> dict[str, Any]:
        progress = self.progress()
        if progress["status"] == IDLE:
            return {"status": "no_batch", "message": "No batch processing data available."}
        start = progress["start_time"] or self.clock()
        end = progress["end_time"] or self.clock()
        elapsed = max(0.0, end - start)
        processed, total = progress["processed"], progress["total"]
        categories: dict[str, int] = {}
        for entry in progress["errors"]:
            category = categorize_error(entry.get("message", ""))
            categories[category] = categories.get(category, 0) + 1
        return {
            "batch_info": {
                "status": progress["status"],
                "total_items": total,
                "processed_items": processed,
                "success_rate": round(progress["successful"] / total * 100, 2) if total > 0 else 0,
                "completion_percentage": progress["percentage"],
            },
            "performance": {
                "elapsed_time": round(elapsed, 2),
                "items_per_minute": round(processed / elapsed * 60, 2) if processed > 0 and elapsed > 0 else 0,
                "average_time_per_item": round(elapsed / processed, 2) if processed > 0 else 0,
                "estimated_completion": progress.get("estimated_time_remaining"),
                "space_saved": progress["space_saved"],
            },
            "error_analysis": {
                "total_errors": len(progress["errors"]),
                "error_categories": categories,
                "error_rate": round(len(progress["errors"]) / total * 100, 2) if total > 0 else 0,
            },
            "queue_status": self.queue_status(),
        }

    def force_process(self) -> Optional[BatchProgress]:
        """Run a tick now instead of waiting for the ticker. None if no batch is running."""
        if not self.is_running():
            return None
        return self.process_batch()

    def cleanup_temporary_files(self, max_age: float = TEMP_FILE_MAX_AGE) -> dict[str, Any]:
        """Stale temp outputs, then orphaned artifacts, then history for subjects that no longer exist."""
        results: dict[str, Any] = {"temp_files_deleted": 0, "orphaned_files_deleted": 0, "history_records_deleted": 0, "errors": []}
        root: Path = self.media.root
        cutoff = self.clock() - max_age
        if root.is_dir():
            stale_candidates = set(root.rglob(f"{TEMP_FILE_PREFIX}*")) | set(root.rglob(TEMP_FILE_PATTERN))
            for tmp in sorted(stale_candidates):
                try:
                    if tmp.is_file() and tmp.stat().st_mtime < cutoff:
                        tmp.unlink()
                        results["temp_files_deleted"] += 1
                except OSError as e:
                    results["errors"].append(f"Failed to delete temporary file {tmp}: {e}")

        # Orphans come from history, so this runs before history records are pruned
        produced = self.orchestrator.produced_artifacts()
        deleted, errors = self.orchestrator.artifacts().cleanup_orphans(produced)
        results["orphaned_files_deleted"] = len(deleted)
        results["errors"].extend(errors)

        for key in self.store.keys(HISTORY_PREFIX):
            subject_id = key[len(HISTORY_PREFIX):]
            if self.media.resolve(subject_id) is None:
                self.store.delete(key)
                results["history_records_deleted"] += 1

        logger.info(
            "Cleanup finished: %d temp files, %d orphaned artifacts, %d history records removed",
            results["temp_files_deleted"], results["orphaned_files_deleted"], results["history_records_deleted"],
        )
        return results
