"""Background ingestion of uploaded item images.

The request handler drains every multipart file into memory, hands the batch
to `IngestionPipeline.submit` and answers 202 immediately. Each batch then runs
as an upload job on a worker thread: files are validated, optionally
normalized, stored in the media store and recorded as image rows, one by one
in the order received. A failing file is logged, noted on the job and skipped;
it never aborts the rest of the batch.

Order indices continue after the item's current highest index. Batches for the
same item are serialized by a per-item lock so concurrent uploads in this
process never read the same starting index.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence

from starlette.datastructures import FormData, UploadFile

from errors import AppError, BadRequestError
from utils.image_processing import normalize_image
from utils.image_validation import (
    CONTENT_TYPE_TO_EXTENSION,
    DEFAULT_MAX_FILE_SIZE_BYTES,
    resolve_content_type,
    validate_image_file,
)
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safer logging and extension lookup."""
    clean_name = re.sub(r"[^a-zA-Z0-9_.-]", "_", filename)
    return clean_name or f"image_{uuid.uuid4().hex}.jpg"


def storage_extension(filename: str, content_type: str) -> str:
    suffix = Path(filename).suffix.lstrip(".").lower()
    if suffix and suffix.isalnum() and len(suffix) <= 5:
        return suffix
    return CONTENT_TYPE_TO_EXTENSION.get(content_type.lower(), "jpg")


def build_storage_path(user_id: str, item_id: str, image_id: str, extension: str) -> str:
    return f"{user_id}/{item_id}/original_{image_id}.{extension}"


async def read_upload_files(form: FormData, max_file_size_bytes: int) -> List[UploadedFile]:
    """Drain every file part of a parsed multipart form into memory.

    Parts over the size ceiling are dropped here and never reach a job.
    """
    files: List[UploadedFile] = []

    for field_name, value in form.multi_items():
        if not isinstance(value, UploadFile):
            continue

        file_name = sanitize_filename(value.filename or "image.jpg")
        content_type = resolve_content_type(value.content_type, file_name)
        try:
            raw_bytes = await value.read(max_file_size_bytes + 1)
        finally:
            await value.close()

        if len(raw_bytes) > max_file_size_bytes:
            logger.warning(
                "Dropping oversized upload field=%s file=%s limit_bytes=%s",
                field_name,
                file_name,
                max_file_size_bytes,
            )
            continue

        files.append(UploadedFile(filename=file_name, content_type=content_type, data=raw_bytes))

    return files


def _job_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class UploadJobTracker:
    """Lock-protected table of upload jobs with time-based retention."""

    def __init__(self, retention_minutes: int = 60) -> None:
        self.retention_seconds = retention_minutes * 60
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = Lock()

    def _cleanup_old_jobs_unlocked(self) -> None:
        cutoff = time.time() - self.retention_seconds
        stale_ids = [
            job_id
            for job_id, job in self._jobs.items()
            if job["status"] in {"completed", "failed"} and job["_updated_unix"] < cutoff
        ]
        for job_id in stale_ids:
            self._jobs.pop(job_id, None)
            self._futures.pop(job_id, None)

    def create(self, *, item_id: str, user_id: str, total_files: int) -> str:
        job_id = uuid.uuid4().hex
        now_iso = _job_iso_now()
        with self._lock:
            self._cleanup_old_jobs_unlocked()
            self._jobs[job_id] = {
                "job_id": job_id,
                "item_id": item_id,
                "status": "queued",
                "message": "Job queued.",
                "total_files": total_files,
                "processed_files": 0,
                "succeeded_files": 0,
                "failed_files": 0,
                "progress_percent": 0,
                "image_ids": [],
                "errors": [],
                "error": None,
                "created_at": now_iso,
                "started_at": None,
                "completed_at": None,
                "updated_at": now_iso,
                "_user_id": user_id,
                "_updated_unix": time.time(),
            }
        return job_id

    def update(self, job_id: str, **updates: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.update(updates)
            job["updated_at"] = _job_iso_now()
            job["_updated_unix"] = time.time()

    def record_file_result(
        self,
        job_id: str,
        *,
        index: int,
        file_name: str,
        image_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job["processed_files"] += 1
            if error is None:
                job["succeeded_files"] += 1
                job["image_ids"].append(image_id)
            else:
                job["failed_files"] += 1
                job["errors"].append({"index": index, "file_name": file_name, "error": error})
            total = job["total_files"]
            job["progress_percent"] = int((job["processed_files"] / total) * 100) if total else 100
            job["message"] = f"Processed {job['processed_files']}/{total} files."
            job["updated_at"] = _job_iso_now()
            job["_updated_unix"] = time.time()

    def attach_future(self, job_id: str, future: Future) -> None:
        with self._lock:
            self._futures[job_id] = future

    def snapshot(self, job_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Fetch a JSON-serializable job snapshot, optionally scoped to its owner."""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or (user_id is not None and job["_user_id"] != user_id):
                return None
            snapshot = {key: value for key, value in job.items() if not key.startswith("_")}
            snapshot["image_ids"] = list(job["image_ids"])
            snapshot["errors"] = [dict(error) for error in job["errors"]]
            return snapshot

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until the job's worker finishes, then return its snapshot."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.snapshot(job_id)


class IngestionPipeline:
    def __init__(
        self,
        store: Any,
        media_store: Any,
        *,
        max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
        process_uploads: bool = True,
        max_image_dimension: int = 2048,
        workers: int = 2,
        executor: Optional[Executor] = None,
        tracker: Optional[UploadJobTracker] = None,
    ) -> None:
        self.store = store
        self.media_store = media_store
        self.max_file_size_bytes = max_file_size_bytes
        self.process_uploads = process_uploads
        self.max_image_dimension = max_image_dimension
        self.executor = executor or ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest")
        self.tracker = tracker or UploadJobTracker()
        self._item_locks = KeyedLock()

    def submit(self, item_id: str, user_id: str, files: Sequence[UploadedFile]) -> str:
        """Queue a batch for background processing and return its job id."""
        if not files:
            raise BadRequestError("No files found in request.")

        batch = list(files)
        job_id = self.tracker.create(item_id=item_id, user_id=user_id, total_files=len(batch))
        future = self.executor.submit(self.run_job, job_id, item_id, user_id, batch)
        self.tracker.attach_future(job_id, future)
        logger.info("Upload job queued job_id=%s item_id=%s file_count=%s", job_id, item_id, len(batch))
        return job_id

    def run_job(self, job_id: str, item_id: str, user_id: str, files: List[UploadedFile]) -> None:
        """Process one batch. Outcomes go to the job table and the log only."""
        started_at = time.perf_counter()
        self.tracker.update(job_id, status="processing", message="Storing images...", started_at=_job_iso_now())

        try:
            with self._item_locks.hold(item_id):
                next_index = self.store.get_max_order_index(item_id) + 1
                for index, upload in enumerate(files):
                    try:
                        row = self.ingest_file(item_id, user_id, upload, next_index)
                    except AppError as exc:
                        logger.warning(
                            "Rejected image job_id=%s item_id=%s index=%s file=%s code=%s error=%s",
                            job_id,
                            item_id,
                            index,
                            upload.filename,
                            exc.code,
                            exc.message,
                        )
                        self.tracker.record_file_result(
                            job_id, index=index, file_name=upload.filename, error=exc.message
                        )
                        continue
                    except Exception as exc:
                        logger.exception(
                            "Failed to process image job_id=%s item_id=%s index=%s file=%s",
                            job_id,
                            item_id,
                            index,
                            upload.filename,
                        )
                        self.tracker.record_file_result(
                            job_id, index=index, file_name=upload.filename, error=str(exc) or type(exc).__name__
                        )
                        continue

                    next_index += 1
                    self.tracker.record_file_result(
                        job_id, index=index, file_name=upload.filename, image_id=row["id"]
                    )
        except Exception as exc:
            logger.exception("Background upload job failed job_id=%s item_id=%s", job_id, item_id)
            self.tracker.update(
                job_id,
                status="failed",
                message="Processing failed unexpectedly.",
                completed_at=_job_iso_now(),
                error=str(exc),
            )
            return

        snapshot = self.tracker.snapshot(job_id) or {}
        logger.info(
            "Image ingestion completed job_id=%s item_id=%s total=%s successful=%s failed=%s duration_ms=%.2f",
            job_id,
            item_id,
            len(files),
            snapshot.get("succeeded_files"),
            snapshot.get("failed_files"),
            (time.perf_counter() - started_at) * 1000,
        )
        succeeded = int(snapshot.get("succeeded_files") or 0)
        self.tracker.update(
            job_id,
            status="completed" if succeeded else "failed",
            message="Processing completed." if succeeded else "No images were stored.",
            progress_percent=100,
            completed_at=_job_iso_now(),
        )

    def ingest_file(self, item_id: str, user_id: str, upload: UploadedFile, order_index: int) -> Dict[str, Any]:
        """Validate, store and record one file; raises on any failure."""
        image_id = str(uuid.uuid4())
        validate_image_file(upload.content_type, len(upload.data), self.max_file_size_bytes)
        if not upload.data:
            raise BadRequestError("File is empty.")

        data = upload.data
        if self.process_uploads:
            data = normalize_image(data, upload.content_type, max_dimension=self.max_image_dimension)

        storage_path = build_storage_path(
            user_id, item_id, image_id, storage_extension(upload.filename, upload.content_type)
        )
        self.media_store.upload_image(storage_path, data, upload.content_type)
        # A failed insert below leaves the stored object orphaned; not compensated.
        return self.store.insert_image(image_id, item_id, storage_path, order_index)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
