from dataclasses import replace

import pytest

from dupkite.errors import BackendFailure
from dupkite.models import ImageUpload
from dupkite.validation import validate_fields
from dupkite.verification import hash_value
from dupkite.writer import Compensation, ReportWriter, storage_path

from .conftest import make_image, make_jpeg


def submission(settings, **overrides):
    fields = {
        "lat": "43.14",
        "lng": "24.71",
        "severity": "3",
        "first_name": "Ivan",
        "last_name": "Petrov",
        "comment": "Дупка до училището",
    }
    fields.update(overrides)
    return validate_fields(fields, settings)


def uploads(count):
    return [ImageUpload(f"IMG_{i}.JPG", "image/jpeg", make_jpeg()) for i in range(count)]


@pytest.fixture
def writer(store, storage, settings, clock, notifier):
    return ReportWriter(store, storage, settings, clock=clock, notifier=notifier)


async def test_submit_creates_visible_report_with_ordered_photos(writer, store, storage, settings, clock):
    report = await writer.submit(submission(settings), uploads(3))

    assert report.severity == 3
    assert report.comment == "Дупка до училището"
    assert [p.storage_path for p in report.photos] == [
        storage_path(report.id, int(clock().timestamp() * 1000), i, "x.jpg") for i in range(3)
    ]
    assert all(p.storage_path.startswith(f"{report.id}/") for p in report.photos)
    assert report.photos[0].url == f"https://storage.test/pothole-photos/{report.photos[0].storage_path}"

    row = store.reports[report.id]
    assert row["verified"] is True
    assert row["verify_token_hash"] is None
    assert row["email_hash"] == hash_value("Ivan|Petrov")
    assert len(store.photos) == 3
    assert len(storage.objects) == 3


async def test_missing_bucket_is_created_once(writer, storage, settings):
    await writer.submit(submission(settings), uploads(1))
    await writer.submit(submission(settings), uploads(1))
    assert storage.created == [("pothole-photos", settings.max_image_bytes)]


async def test_insert_failure_writes_nothing(writer, store, storage, settings):
    store.fail_on.add("insert_report")
    with pytest.raises(BackendFailure):
        await writer.submit(submission(settings), uploads(1))
    assert store.reports == {}
    assert storage.upload_calls == 0


async def test_bucket_failure_deletes_report(writer, store, storage, settings):
    storage.fail_create_bucket = True
    with pytest.raises(BackendFailure) as excinfo:
        await writer.submit(submission(settings), uploads(2))
    assert excinfo.value.status_code == 500
    assert store.reports == {}
    assert storage.upload_calls == 0


async def test_upload_failure_rolls_back_report_and_uploaded_blobs(writer, store, storage, settings):
    storage.fail_upload_at = 2
    with pytest.raises(BackendFailure) as excinfo:
        await writer.submit(submission(settings), uploads(4))

    assert excinfo.value.message == "Грешка при качване на снимки."
    assert store.reports == {}
    assert store.photos == []
    assert storage.objects == {}
    assert len(storage.removed) == 2
    # Uploads stop at the first failure
    assert storage.upload_calls == 3


async def test_photo_row_failure_rolls_back(writer, store, storage, settings):
    store.fail_on.add("insert_photos")
    with pytest.raises(BackendFailure):
        await writer.submit(submission(settings), uploads(2))
    assert store.reports == {}
    assert storage.objects == {}


async def test_compensation_failure_still_surfaces_backend_failure(writer, store, storage, settings):
    storage.fail_upload_at = 0
    store.fail_on.add("delete_report")
    with pytest.raises(BackendFailure):
        await writer.submit(submission(settings), uploads(1))


async def test_verification_mode_hides_report_and_sends_token(store, storage, settings, clock, notifier):
    strict = replace(settings, require_verification=True, verify_base_url="https://dupkite.test/verify")
    writer = ReportWriter(store, storage, strict, clock=clock, notifier=notifier)

    report = await writer.submit(
        submission(strict, first_name="", last_name="", email="Ivan@Example.bg"), uploads(1)
    )

    row = store.reports[report.id]
    assert row["verified"] is False
    assert row["email_hash"] == hash_value("ivan@example.bg")

    [(report_id, email, link)] = notifier.sent
    assert report_id == report.id
    assert email == "Ivan@Example.bg"
    token = link.split("token=", 1)[1]
    assert link.startswith("https://dupkite.test/verify?token=")
    assert row["verify_token_hash"] == hash_value(token)


async def test_compensation_unwinds_in_reverse_and_continues_past_failures():
    calls = []

    async def record(name):
        calls.append(name)

    async def explode():
        calls.append("explode")
        raise RuntimeError("undo failed")

    compensation = Compensation("r-1")
    compensation.push("first", lambda: record("first"))
    compensation.push("broken", explode)
    compensation.push("third", lambda: record("third"))

    await compensation.unwind()

    assert calls == ["third", "explode", "first"]
    assert len(compensation) == 0


def test_storage_path_extension_falls_back_to_detected_format():
    assert storage_path("r1", 1000, 0, "IMG_1.HEIC", "png") == "r1/1000-0.heic"
    assert storage_path("r1", 1000, 2, "blob", "png") == "r1/1000-2.png"
    assert storage_path("r1", 1000, 1, "blob") == "r1/1000-1.jpg"


async def test_png_without_extension_is_stored_as_png(writer, storage, settings):
    upload = ImageUpload("blob", "image/png", make_image("PNG"), extension="png")
    report = await writer.submit(submission(settings), [upload])

    [photo] = report.photos
    assert photo.storage_path.endswith("-0.png")
    assert storage.objects[("pothole-photos", photo.storage_path)][1] == "image/png"
