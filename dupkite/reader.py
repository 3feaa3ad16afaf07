# dupkite/reader.py
# Public read path: verified reports, newest first, with their photos

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from .database import ReportStore
from .logging_config import get_logger
from .models import Category, PhotoRef, ReportWithPhotos
from .storage import PhotoStorage

logger = get_logger(__name__)


@dataclass
class ReportFilters:
    category: Optional[str] = None
    settlement: Optional[str] = None
    municipality: Optional[str] = None

    @classmethod
    def from_query(cls, category: Optional[str], settlement: Optional[str],
                   municipality: Optional[str]) -> "ReportFilters":
        """Unknown categories and blank place names are ignored, not rejected"""
        parsed = Category.parse(category)
        return cls(
            category=parsed.value if parsed else None,
            settlement=(settlement or "").strip() or None,
            municipality=(municipality or "").strip() or None,
        )


class ReportReader:
    def __init__(self, store: ReportStore, storage: Optional[PhotoStorage], bucket: str, limit: int = 1000):
        self.store = store
        self.storage = storage
        self.bucket = bucket
        self.limit = limit

    def _photo_ref(self, path: str) -> PhotoRef:
        url = self.storage.public_url(self.bucket, path) if self.storage else None
        return PhotoRef(storage_path=path, url=url)

    async def list(self, filters: ReportFilters) -> List[ReportWithPhotos]:
        """Store errors on the report query propagate; photo query errors degrade to empty photo lists"""
        rows = await self.store.fetch_visible_reports(
            category=filters.category,
            settlement=filters.settlement,
            municipality=filters.municipality,
            limit=self.limit,
        )
        if not rows:
            return []

        photos_by_report: Dict[str, List[PhotoRef]] = defaultdict(list)
        try:
            photos = await self.store.fetch_photos([row["id"] for row in rows])
        except Exception as e:
            logger.warning(f"Photo lookup failed, returning reports without photos: {e}")
            photos = []
        for photo in photos:
            photos_by_report[photo["report_id"]].append(self._photo_ref(photo["storage_path"]))

        return [ReportWithPhotos(**row, photos=photos_by_report.get(row["id"], [])) for row in rows]
