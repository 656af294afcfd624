import asyncio
import io

import pytest
from PIL import Image
from starlette.datastructures import FormData, Headers, UploadFile

from conftest import USER_A, make_image_bytes
import ingestion
from errors import BadRequestError
from ingestion import (
    IngestionPipeline,
    UploadedFile,
    UploadJobTracker,
    build_storage_path,
    read_upload_files,
    sanitize_filename,
    storage_extension,
)


def _jpeg(name="photo.jpg", **kwargs):
    return UploadedFile(filename=name, content_type="image/jpeg", data=make_image_bytes(**kwargs))


@pytest.fixture
def pipeline(records, media):
    built = IngestionPipeline(records, media, max_file_size_bytes=1024 * 1024, workers=1)
    yield built
    built.shutdown()


@pytest.fixture
def item(records):
    return records.create_item(USER_A)


def _run(pipeline, item, files):
    job_id = pipeline.submit(item["id"], USER_A, files)
    return pipeline.tracker.wait(job_id, timeout=10)


def test_storage_path_is_scoped_by_user_and_item():
    assert build_storage_path("u1", "i1", "img1", "png") == "u1/i1/original_img1.png"


def test_storage_extension_prefers_filename_then_type():
    assert storage_extension("shoe.JPEG", "image/jpeg") == "jpeg"
    assert storage_extension("blob", "image/webp") == "webp"
    assert storage_extension("weird.j p g", "image/png") == "png"


def test_sanitize_filename_replaces_unsafe_characters():
    assert sanitize_filename("my photo (1).jpg") == "my_photo__1_.jpg"


def test_batch_creates_one_record_per_file_in_order(pipeline, records, media, item):
    snapshot = _run(pipeline, item, [_jpeg("a.jpg"), _jpeg("b.jpg"), _jpeg("c.jpg")])

    images = records.list_item_images(item["id"], USER_A)
    assert [image["order_index"] for image in images] == [0, 1, 2]
    assert len({image["storage_path"] for image in images}) == 3
    assert all(path.startswith(f"{USER_A}/{item['id']}/original_") for path in media.objects)
    assert snapshot["status"] == "completed"
    assert snapshot["succeeded_files"] == 3
    assert snapshot["image_ids"] == [image["id"] for image in images]


def test_failed_files_are_skipped_without_aborting_batch(pipeline, records, media, item):
    media.fail_upload_calls = {2}
    files = [
        _jpeg("a.jpg"),
        UploadedFile("doc.pdf", "application/pdf", b"%PDF-1.4"),
        _jpeg("b.jpg"),
        UploadedFile("broken.jpg", "image/jpeg", b"not really a jpeg"),
        _jpeg("c.jpg"),
    ]

    snapshot = _run(pipeline, item, files)

    images = records.list_item_images(item["id"], USER_A)
    assert len(images) == 2
    assert [image["order_index"] for image in images] == [0, 1]
    assert snapshot["status"] == "completed"
    assert snapshot["processed_files"] == 5
    assert snapshot["succeeded_files"] == 2
    assert snapshot["failed_files"] == 3
    assert [error["file_name"] for error in snapshot["errors"]] == ["doc.pdf", "b.jpg", "broken.jpg"]


def test_unsupported_type_never_reaches_storage(pipeline, media, item):
    snapshot = _run(pipeline, item, [UploadedFile("anim.gif", "image/gif", b"GIF89a")])

    assert media.objects == {}
    assert snapshot["status"] == "failed"
    assert snapshot["message"] == "No images were stored."
    assert snapshot["failed_files"] == 1


def test_record_failure_leaves_orphaned_object(pipeline, records, media, item):
    records.fail_insert_calls = {1}

    snapshot = _run(pipeline, item, [_jpeg("a.jpg")])

    assert snapshot["failed_files"] == 1
    assert snapshot["status"] == "failed"
    assert records.list_item_images(item["id"], USER_A) == []
    assert len(media.objects) == 1


def test_second_batch_continues_order_index(pipeline, records, item):
    _run(pipeline, item, [_jpeg(), _jpeg(), _jpeg()])
    _run(pipeline, item, [_jpeg(), _jpeg()])

    images = records.list_item_images(item["id"], USER_A)
    assert [image["order_index"] for image in images] == [0, 1, 2, 3, 4]


def test_concurrent_batches_for_one_item_get_distinct_indices(records, media, item):
    pipeline = IngestionPipeline(records, media, workers=4)
    try:
        job_ids = [pipeline.submit(item["id"], USER_A, [_jpeg(), _jpeg()]) for _ in range(4)]
        for job_id in job_ids:
            pipeline.tracker.wait(job_id, timeout=10)
    finally:
        pipeline.shutdown()

    indices = [image["order_index"] for image in records.list_item_images(item["id"], USER_A)]
    assert sorted(indices) == list(range(8))


def test_images_are_normalized_before_storage(records, media, item):
    pipeline = IngestionPipeline(records, media, max_image_dimension=256, workers=1)
    try:
        job_id = pipeline.submit(item["id"], USER_A, [_jpeg(size=(1024, 512))])
        pipeline.tracker.wait(job_id, timeout=10)
    finally:
        pipeline.shutdown()

    (stored,) = media.objects.values()
    assert Image.open(io.BytesIO(stored)).size == (256, 128)


def test_raw_bytes_stored_when_processing_disabled(records, media, item):
    upload = _jpeg(size=(1024, 512))
    pipeline = IngestionPipeline(records, media, process_uploads=False, workers=1)
    try:
        job_id = pipeline.submit(item["id"], USER_A, [upload])
        pipeline.tracker.wait(job_id, timeout=10)
    finally:
        pipeline.shutdown()

    assert list(media.objects.values()) == [upload.data]


def test_empty_batch_is_rejected(pipeline, item):
    with pytest.raises(BadRequestError):
        pipeline.submit(item["id"], USER_A, [])


def test_store_failure_before_first_file_fails_job(pipeline, records, item, monkeypatch):
    def broken(item_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(records, "get_max_order_index", broken)

    snapshot = _run(pipeline, item, [_jpeg()])

    assert snapshot["status"] == "failed"
    assert snapshot["error"] == "database unavailable"


def test_job_snapshot_is_scoped_to_owner():
    tracker = UploadJobTracker()
    job_id = tracker.create(item_id="item-1", user_id="owner", total_files=2)

    assert tracker.snapshot(job_id, user_id="someone-else") is None
    snapshot = tracker.snapshot(job_id, user_id="owner")
    assert snapshot["status"] == "queued"
    assert "_user_id" not in snapshot


def test_finished_jobs_are_pruned_after_retention(monkeypatch):
    tracker = UploadJobTracker(retention_minutes=5)
    old_job = tracker.create(item_id="item-1", user_id="owner", total_files=1)
    tracker.update(old_job, status="completed")

    real_time = ingestion.time.time
    monkeypatch.setattr(ingestion.time, "time", lambda: real_time() + 3600)
    tracker.create(item_id="item-2", user_id="owner", total_files=1)

    assert tracker.snapshot(old_job) is None


def test_read_upload_files_drops_oversized_parts():
    async def scenario():
        small = UploadFile(
            file=io.BytesIO(b"x" * 10),
            filename="small photo.jpg",
            headers=Headers({"content-type": "image/jpeg"}),
        )
        large = UploadFile(
            file=io.BytesIO(b"x" * 100),
            filename="large.jpg",
            headers=Headers({"content-type": "image/jpeg"}),
        )
        untyped = UploadFile(file=io.BytesIO(b"y" * 5), filename="noheader.png")
        form = FormData([("file", small), ("files", large), ("note", "hello"), ("extra", untyped)])
        return await read_upload_files(form, max_file_size_bytes=50)

    files = asyncio.run(scenario())

    assert [(upload.filename, upload.content_type, len(upload.data)) for upload in files] == [
        ("small_photo.jpg", "image/jpeg", 10),
        ("noheader.png", "image/png", 5),
    ]
