# dupkite/cleanup.py
# Scheduled removal of unverified reports that were never confirmed

import hmac
from datetime import timedelta
from typing import Optional

from .clock import Clock, utcnow
from .database import ReportStore
from .errors import Unauthorized
from .logging_config import get_logger
from .storage import PhotoStorage

logger = get_logger(__name__)


def authorize(secret: Optional[str], authorization: Optional[str]) -> None:
    """Require ``Bearer <secret>`` when a secret is configured; open otherwise"""
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not hmac.compare_digest((authorization or "").encode(), expected.encode()):
        raise Unauthorized()


async def cleanup(
    store: ReportStore,
    storage: PhotoStorage,
    bucket: str,
    max_age_hours: float = 48,
    clock: Clock = utcnow,
) -> int:
    """Delete unverified reports strictly older than the threshold; returns the count"""
    cutoff = clock() - timedelta(hours=max_age_hours)
    report_ids = await store.fetch_stale_unverified(cutoff)
    if not report_ids:
        logger.info("Cleanup found no stale reports")
        return 0

    photos = await store.fetch_photos(report_ids)
    paths = [photo["storage_path"] for photo in photos]
    if paths:
        await storage.remove(bucket, paths)

    await store.delete_photos(report_ids)
    deleted = await store.delete_reports(report_ids)
    logger.info(f"Cleanup deleted {deleted} stale reports ({len(paths)} photos)")
    return deleted
