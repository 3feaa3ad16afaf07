# dupkite/writer.py
# Submission workflow: insert report, ensure bucket, upload photos, record photo rows

from typing import Awaitable, Callable, List, Optional, Tuple

from .clock import Clock, now_ms, utcnow
from .config import Settings
from .database import ReportStore
from .errors import BackendFailure
from .logging_config import get_logger
from .models import ImageUpload, PhotoRef, ReportSubmission, ReportWithPhotos, Status
from .storage import PhotoStorage
from .validation import safe_extension
from .verification import LoggingNotifier, VerificationNotifier, generate_token, hash_value, verification_link

logger = get_logger(__name__)

MSG_INSERT_FAILED = "Грешка при запис. Опитайте отново."
MSG_BUCKET_FAILED = "Грешка при създаване на хранилище за снимки."
MSG_UPLOAD_FAILED = "Грешка при качване на снимки."

UndoAction = Callable[[], Awaitable[None]]


class Compensation:
    """Stack of undo actions for a multi-step write, unwound in reverse on failure"""

    def __init__(self, report_id: Optional[str] = None):
        self.report_id = report_id
        self._actions: List[Tuple[str, UndoAction]] = []

    def push(self, description: str, action: UndoAction) -> None:
        self._actions.append((description, action))

    def __len__(self) -> int:
        return len(self._actions)

    async def unwind(self) -> None:
        while self._actions:
            description, action = self._actions.pop()
            try:
                await action()
                logger.info(f"Compensation done: {description}", extra={"report_id": self.report_id})
            except Exception as e:
                # Undo failures never change the response; operators sweep leftovers
                logger.error(
                    f"Compensation failed: {description}: {e}",
                    extra={"report_id": self.report_id},
                    exc_info=True
                )


def storage_path(report_id: str, upload_ms: int, index: int, filename: Optional[str],
                 fallback_extension: Optional[str] = None) -> str:
    return f"{report_id}/{upload_ms}-{index}.{safe_extension(filename, fallback_extension or 'jpg')}"


class ReportWriter:
    def __init__(
        self,
        store: ReportStore,
        storage: PhotoStorage,
        settings: Settings,
        clock: Clock = utcnow,
        notifier: Optional[VerificationNotifier] = None,
    ):
        self.store = store
        self.storage = storage
        self.settings = settings
        self.clock = clock
        self.notifier = notifier or LoggingNotifier()

    def _row_values(self, submission: ReportSubmission, token_hash: Optional[str]) -> dict:
        if self.settings.require_verification:
            email_hash = hash_value(submission.email or "")
        else:
            email_hash = hash_value(f"{submission.first_name}|{submission.last_name}")

        return {
            "city": submission.settlement,
            "lat": submission.lat,
            "lng": submission.lng,
            "severity": int(submission.severity),
            "comment": submission.comment,
            "first_name": submission.first_name or None,
            "last_name": submission.last_name or None,
            "email_hash": email_hash,
            "verify_token_hash": token_hash,
            "verified": not self.settings.require_verification,
            "municipality": submission.municipality,
            "settlement": submission.settlement,
            "category": submission.category.value,
            "status": Status.NEW.value,
            "metadata": submission.metadata,
        }

    async def _ensure_bucket(self) -> None:
        bucket = self.settings.storage_bucket
        if not await self.storage.bucket_exists(bucket):
            await self.storage.create_bucket(bucket, self.settings.max_image_bytes)

    async def submit(self, submission: ReportSubmission, images: List[ImageUpload]) -> ReportWithPhotos:
        """Persist a validated submission; any failed step unwinds the earlier ones"""
        bucket = self.settings.storage_bucket
        token = generate_token() if self.settings.require_verification else None

        try:
            report = await self.store.insert_report(
                self._row_values(submission, hash_value(token) if token else None)
            )
        except Exception as e:
            logger.error(f"Report insert failed: {e}", exc_info=True)
            raise BackendFailure(MSG_INSERT_FAILED) from e

        report_id = report["id"]
        compensation = Compensation(report_id)
        compensation.push("delete report row", lambda: self.store.delete_report(report_id))

        try:
            await self._ensure_bucket()
        except Exception as e:
            logger.error(f"Bucket provisioning failed: {e}", extra={"report_id": report_id}, exc_info=True)
            await compensation.unwind()
            raise BackendFailure(MSG_BUCKET_FAILED) from e

        paths: List[str] = []
        for index, image in enumerate(images):
            path = storage_path(report_id, now_ms(self.clock), index, image.filename, image.extension)
            try:
                await self.storage.upload(bucket, path, image.data, image.content_type or "image/jpeg")
            except Exception as e:
                logger.error(
                    f"Photo upload failed: {e}",
                    extra={"report_id": report_id, "storage_path": path},
                    exc_info=True
                )
                await compensation.unwind()
                raise BackendFailure(MSG_UPLOAD_FAILED) from e
            paths.append(path)
            compensation.push(f"remove blob {path}", lambda p=path: self.storage.remove(bucket, [p]))

        try:
            await self.store.insert_photos(report_id, paths)
        except Exception as e:
            logger.error(f"Photo rows insert failed: {e}", extra={"report_id": report_id}, exc_info=True)
            await compensation.unwind()
            raise BackendFailure(MSG_INSERT_FAILED) from e

        if token:
            link = verification_link(self.settings.verify_base_url, token)
            try:
                await self.notifier.send(report_id, submission.email or "", link)
            except Exception as e:
                logger.error(f"Verification notice failed: {e}", extra={"report_id": report_id}, exc_info=True)

        logger.info(
            "Report submitted",
            extra={"report_id": report_id, "photo_count": len(paths)}
        )
        return ReportWithPhotos(
            **report,
            photos=[PhotoRef(storage_path=p, url=self.storage.public_url(bucket, p)) for p in paths],
        )
