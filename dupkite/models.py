# dupkite/models.py
# Shared enumerations, submission validation models and response shapes

import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationInfo, computed_field, field_validator, model_validator

# --- Enumerations ---

class Category(str, Enum):
    POTHOLE = "pothole"
    FALLEN_TREE = "fallen_tree"
    ROAD_MARKING = "road_marking"
    STREET_LIGHT = "street_light"
    TRAFFIC_SIGN = "traffic_sign"
    HAZARD = "hazard"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Category"]:
        """Return the matching category or None for unknown values"""
        try:
            return cls((value or "").strip())
        except ValueError:
            return None


class Severity(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class Status(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


CATEGORY_LABELS: Dict[Category, str] = {
    Category.POTHOLE: "Пътни неравности / дупки",
    Category.FALLEN_TREE: "Паднали клони / дървета",
    Category.ROAD_MARKING: "Изтрита маркировка / пешеходна пътека",
    Category.STREET_LIGHT: "Несветеща / повредена лампа",
    Category.TRAFFIC_SIGN: "Паднал / липсващ знак",
    Category.HAZARD: "Опасен участък / срутване",
}

# Severity meaning depends on the category
CATEGORY_SEVERITY_LABELS: Dict[Category, Dict[Severity, str]] = {
    Category.POTHOLE: {
        Severity.LOW: "До 3 см",
        Severity.MEDIUM: "3–7 см",
        Severity.HIGH: "Над 7 см",
    },
    Category.FALLEN_TREE: {
        Severity.LOW: "Малки клони (частично на пътя)",
        Severity.MEDIUM: "Големи клони (пречи на преминаване)",
        Severity.HIGH: "Паднало дърво / блокира пътя",
    },
    Category.ROAD_MARKING: {
        Severity.LOW: "Частично изтрита (все още се вижда)",
        Severity.MEDIUM: "Почти невидима",
        Severity.HIGH: "Липсва напълно / опасно",
    },
    Category.STREET_LIGHT: {
        Severity.LOW: "Примигва / слаба светлина",
        Severity.MEDIUM: "Не свети (1 лампа)",
        Severity.HIGH: "Не свети (цял участък / много лампи)",
    },
    Category.TRAFFIC_SIGN: {
        Severity.LOW: "Повреден, но видим",
        Severity.MEDIUM: "Паднал / обърнат",
        Severity.HIGH: "Липсва критичен знак (STOP/ОПАСНОСТ)",
    },
    Category.HAZARD: {
        Severity.LOW: "Локален риск (може да се мине)",
        Severity.MEDIUM: "Опасно при преминаване (особено нощем/дъжд)",
        Severity.HIGH: "Висок риск / участъкът е компрометиран",
    },
}

STATUS_LABELS: Dict[Status, str] = {
    Status.NEW: "Нов",
    Status.IN_PROGRESS: "В процес",
    Status.RESOLVED: "Решен",
}

OTHER_SETTLEMENT = "Other"

# --- Validation messages ---

MSG_INVALID_FIELDS = "Липсват задължителни полета или невалидни данни."
MSG_OTHER_SETTLEMENT = 'При избор "Друго" въведете населено място.'
MSG_INVALID_EMAIL = "Въведете валиден имейл адрес."
MSG_COMMENT_TOO_LONG = "Коментарът е твърде дълъг (максимум {limit} символа)."

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_finite(value: Any) -> Optional[float]:
    """Parse a form value as a finite float, None when unparsable"""
    if isinstance(value, bool):
        return None
    try:
        number = float(_clean(value)) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class ReportSubmission(BaseModel):
    """Validated fields of a report submission

    Validation context keys: ``comment_max_length``, ``default_settlement``,
    ``default_municipality`` and ``require_email``.
    """

    lat: float
    lng: float
    severity: Severity
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    comment: Optional[str] = None
    category: Category = Category.POTHOLE
    settlement: str = Field(default="", validate_default=True)
    settlement_custom: str = ""
    municipality: str = Field(default="", validate_default=True)

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def validate_coordinate(cls, v, info: ValidationInfo):
        value = _parse_finite(v)
        bound = 90.0 if info.field_name == "lat" else 180.0
        if value is None or not -bound <= value <= bound:
            raise ValueError(MSG_INVALID_FIELDS)
        return value

    @field_validator("severity", mode="before")
    @classmethod
    def validate_severity(cls, v):
        try:
            return Severity(int(_clean(v)))
        except ValueError:
            raise ValueError(MSG_INVALID_FIELDS)

    @field_validator("first_name", "last_name", "settlement_custom", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _clean(v)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _clean(v) or None

    @field_validator("comment", mode="before")
    @classmethod
    def validate_comment(cls, v, info: ValidationInfo):
        comment = _clean(v)
        if not comment:
            return None
        limit = (info.context or {}).get("comment_max_length", 500)
        if len(comment) > limit:
            raise ValueError(MSG_COMMENT_TOO_LONG.format(limit=limit))
        return comment

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v):
        return Category.parse(v) or Category.POTHOLE

    @field_validator("settlement", mode="before")
    @classmethod
    def default_settlement(cls, v, info: ValidationInfo):
        return _clean(v) or (info.context or {}).get("default_settlement", "Lovech")

    @field_validator("municipality", mode="before")
    @classmethod
    def default_municipality(cls, v, info: ValidationInfo):
        return _clean(v) or (info.context or {}).get("default_municipality", "Lovech")

    @model_validator(mode="before")
    @classmethod
    def check_custom_settlement(cls, data):
        # Reported ahead of any field error
        if isinstance(data, dict) and _clean(data.get("settlement")) == OTHER_SETTLEMENT:
            if not _clean(data.get("settlement_custom")):
                raise ValueError(MSG_OTHER_SETTLEMENT)
        return data

    @model_validator(mode="after")
    def check_identity(self, info: ValidationInfo):
        if (info.context or {}).get("require_email"):
            if not self.email or not EMAIL_PATTERN.match(self.email):
                raise ValueError(MSG_INVALID_EMAIL)
        elif not self.first_name or not self.last_name:
            raise ValueError(MSG_INVALID_FIELDS)
        return self

    @property
    def metadata(self) -> Dict[str, Any]:
        if self.settlement == OTHER_SETTLEMENT:
            return {"settlement_custom": self.settlement_custom}
        return {}


@dataclass
class ImageUpload:
    """One uploaded image as read from the multipart body"""

    filename: str
    content_type: Optional[str]
    data: bytes
    extension: Optional[str] = None  # from the sniffed format

    @property
    def size(self) -> int:
        return len(self.data)


# --- Response shapes ---

class PhotoRef(BaseModel):
    storage_path: str
    url: Optional[str] = None


class Report(BaseModel):
    id: str
    city: Optional[str] = None
    lat: float
    lng: float
    severity: Severity
    comment: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime
    municipality: Optional[str] = None
    settlement: Optional[str] = None
    category: Category = Category.POTHOLE
    status: Status = Status.NEW
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def category_label(self) -> str:
        return CATEGORY_LABELS[self.category]

    @computed_field
    @property
    def severity_label(self) -> str:
        return CATEGORY_SEVERITY_LABELS[self.category][self.severity]

    @computed_field
    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]


class ReportWithPhotos(Report):
    photos: List[PhotoRef] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: Status
