import io
import os
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

# Keep test runs off the filesystem and away from any local .env backends
os.environ["ENABLE_FILE_LOGS"] = "false"
os.environ["ENABLE_JSON_LOGS"] = "false"
os.environ["APP_ENV"] = "production"

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from dupkite.app import app, get_clock, get_notifier, get_rate_gate, get_settings, get_storage, get_store, limiter
from dupkite.config import Settings
from dupkite.database import REPORT_COLUMNS, ReportStore
from dupkite.rate_gate import MemoryKeyValueStore, RateGate
from dupkite.storage import PhotoStorage, StorageError
from dupkite.verification import VerificationNotifier

REPORT_FIELDS = [column.strip() for column in REPORT_COLUMNS.split(",")]


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class InMemoryReportStore(ReportStore):
    def __init__(self, clock):
        self.clock = clock
        self.reports = {}
        self.photos = []
        self.fail_on = set()

    def _check(self, operation):
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} failed")

    @staticmethod
    def _public(row):
        return {key: row[key] for key in REPORT_FIELDS}

    def add(self, created_at=None, verified=True, **overrides):
        """Seed a report row directly"""
        row = {
            "id": str(uuid.uuid4()),
            "city": "Lovech",
            "lat": 43.14,
            "lng": 24.71,
            "severity": 1,
            "comment": None,
            "first_name": "Ivan",
            "last_name": "Petrov",
            "email_hash": None,
            "verify_token_hash": None,
            "verified": verified,
            "municipality": "Lovech",
            "settlement": "Lovech",
            "category": "pothole",
            "status": "new",
            "metadata": {},
            "created_at": created_at or self.clock(),
            "updated_at": None,
            "resolved_at": None,
        }
        row.update(overrides)
        self.reports[row["id"]] = row
        return row

    def add_photo(self, report_id, storage_path):
        self.photos.append({"report_id": report_id, "storage_path": storage_path})

    async def insert_report(self, values):
        self._check("insert_report")
        row = dict(values, id=str(uuid.uuid4()), created_at=self.clock(), updated_at=None, resolved_at=None)
        self.reports[row["id"]] = row
        return self._public(row)

    async def delete_report(self, report_id):
        self._check("delete_report")
        self.photos = [p for p in self.photos if p["report_id"] != report_id]
        self.reports.pop(report_id, None)

    async def insert_photos(self, report_id, storage_paths):
        self._check("insert_photos")
        for path in storage_paths:
            self.add_photo(report_id, path)

    async def fetch_visible_reports(self, category=None, settlement=None, municipality=None, limit=1000):
        self._check("fetch_visible_reports")
        rows = [
            r for r in self.reports.values()
            if r["verified"]
            and (category is None or r["category"] == category)
            and (settlement is None or r["settlement"] == settlement)
            and (municipality is None or r["municipality"] == municipality)
        ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._public(r) for r in rows[:limit]]

    async def fetch_photos(self, report_ids):
        self._check("fetch_photos")
        return [dict(p) for p in self.photos if p["report_id"] in set(report_ids)]

    async def consume_verification_token(self, token_hash):
        for row in self.reports.values():
            if row["verify_token_hash"] and row["verify_token_hash"] == token_hash:
                row["verified"] = True
                row["verify_token_hash"] = None
                return row["id"]
        return None

    async def fetch_stale_unverified(self, cutoff):
        return [r["id"] for r in self.reports.values() if not r["verified"] and r["created_at"] < cutoff]

    async def delete_photos(self, report_ids):
        self.photos = [p for p in self.photos if p["report_id"] not in set(report_ids)]

    async def delete_reports(self, report_ids):
        deleted = 0
        for report_id in report_ids:
            if self.reports.pop(report_id, None) is not None:
                deleted += 1
        return deleted

    async def update_status(self, report_id, status, now):
        row = self.reports.get(report_id)
        if row is None:
            return None
        row["status"] = status
        row["updated_at"] = now
        row["resolved_at"] = now if status == "resolved" else None
        return self._public(row)

    async def ping(self):
        self._check("ping")


class InMemoryPhotoStorage(PhotoStorage):
    def __init__(self):
        self.buckets = set()
        self.created = []
        self.objects = {}
        self.removed = []
        self.fail_create_bucket = False
        self.fail_upload_at = None
        self.upload_calls = 0

    async def bucket_exists(self, bucket):
        return bucket in self.buckets

    async def create_bucket(self, bucket, size_limit):
        if self.fail_create_bucket:
            raise StorageError("403: not allowed")
        self.buckets.add(bucket)
        self.created.append((bucket, size_limit))

    async def upload(self, bucket, path, data, content_type):
        index = self.upload_calls
        self.upload_calls += 1
        if self.fail_upload_at is not None and index >= self.fail_upload_at:
            raise StorageError("500: upload failed")
        self.objects[(bucket, path)] = (data, content_type)

    async def remove(self, bucket, paths):
        for path in paths:
            self.removed.append(path)
            self.objects.pop((bucket, path), None)

    def public_url(self, bucket, path):
        return f"https://storage.test/{bucket}/{path}"


class RecordingNotifier(VerificationNotifier):
    def __init__(self):
        self.sent = []

    async def send(self, report_id, email, link):
        self.sent.append((report_id, email, link))


def make_image(image_format="JPEG", size=(32, 24), color=(200, 40, 40)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


def make_jpeg(size=(32, 24), color=(200, 40, 40)):
    return make_image("JPEG", size, color)


@pytest.fixture
def jpeg_bytes():
    return make_jpeg()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryReportStore(clock)


@pytest.fixture
def storage():
    return InMemoryPhotoStorage()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return Settings(
        postgres_url="postgresql://test/dupkite",
        supabase_url="https://project.supabase.test",
        supabase_service_key="service-key",
        enable_file_logs=False,
        enable_json_logs=False,
    )


@pytest.fixture
def gate(clock, settings):
    return RateGate(
        MemoryKeyValueStore(clock),
        window_seconds=settings.rate_limit_window_seconds,
        clock=clock,
    )


@pytest.fixture
def make_client(store, storage, gate, clock, notifier, settings):
    """Build a TestClient wired to the in-memory backends; keyword args replace settings fields"""

    def _make(**overrides):
        effective = replace(settings, **overrides)
        app.dependency_overrides[get_settings] = lambda: effective
        app.dependency_overrides[get_store] = lambda: store if effective.database_configured else None
        app.dependency_overrides[get_storage] = lambda: storage if effective.storage_configured else None
        app.dependency_overrides[get_rate_gate] = lambda: gate
        app.dependency_overrides[get_clock] = lambda: clock
        app.dependency_overrides[get_notifier] = lambda: notifier
        return TestClient(app, raise_server_exceptions=False)

    limiter.reset()
    yield _make
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client):
    return make_client()
