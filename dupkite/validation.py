# dupkite/validation.py
# Submission validation: form fields through pydantic, images by count, size and content

import io
import re
from typing import Any, Dict, List, Optional

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from .config import Settings
from .errors import SubmissionInvalid
from .logging_config import get_logger
from .models import ImageUpload, ReportSubmission

logger = get_logger(__name__)

MSG_IMAGE_COUNT = "Добавете между 1 и {limit} снимки."
MSG_IMAGE_TOO_LARGE = "Снимката е твърде голяма. Моля, използвайте по-малка снимка."
MSG_IMAGE_INVALID = "Файлът не е валидно изображение."

# Pillow format name -> (mime type, file extension)
IMAGE_FORMATS = {
    "JPEG": ("image/jpeg", "jpg"),
    "PNG": ("image/png", "png"),
    "WEBP": ("image/webp", "webp"),
    "GIF": ("image/gif", "gif"),
    "BMP": ("image/bmp", "bmp"),
    "HEIF": ("image/heic", "heic"),
    "MPO": ("image/jpeg", "jpg"),
}


def first_error_message(exc: ValidationError) -> str:
    """Pick the human-readable message of the first failing rule"""
    for error in exc.errors():
        cause = (error.get("ctx") or {}).get("error")
        if cause is not None:
            return str(cause)
    return SubmissionInvalid.default_message


def validate_fields(fields: Dict[str, Any], settings: Settings) -> ReportSubmission:
    """Validate submit form fields, raising SubmissionInvalid on the first violation"""
    context = {
        "comment_max_length": settings.comment_max_length,
        "default_settlement": settings.default_settlement,
        "default_municipality": settings.default_municipality,
        "require_email": settings.require_verification,
    }
    try:
        return ReportSubmission.model_validate(fields, context=context)
    except ValidationError as exc:
        message = first_error_message(exc)
        logger.info(f"Submission rejected: {message}", extra={"endpoint": "/reports/submit"})
        raise SubmissionInvalid(message)


def detect_image_format(data: bytes) -> Optional[str]:
    """Return the Pillow format name of an image payload, None if unrecognized"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            return img.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError):
        return None


def validate_images(images: List[ImageUpload], settings: Settings) -> List[ImageUpload]:
    """Check image count, per-file size ceiling and that each file decodes as an image

    Files come back with their content type replaced by the sniffed one.
    """
    if not images or len(images) > settings.max_images:
        raise SubmissionInvalid(MSG_IMAGE_COUNT.format(limit=settings.max_images))

    for image in images:
        if image.size > settings.max_image_bytes:
            logger.info(
                f"Image over size ceiling: {image.filename} ({image.size} bytes)",
                extra={"endpoint": "/reports/submit"}
            )
            raise SubmissionInvalid(MSG_IMAGE_TOO_LARGE)

    accepted = []
    for image in images:
        image_format = detect_image_format(image.data)
        if image_format is None:
            logger.info(f"Unrecognized image payload: {image.filename}")
            raise SubmissionInvalid(MSG_IMAGE_INVALID)
        mime_type, extension = IMAGE_FORMATS.get(image_format, (image.content_type or "image/jpeg", "jpg"))
        accepted.append(ImageUpload(
            filename=image.filename,
            content_type=mime_type,
            data=image.data,
            extension=extension,
        ))
    return accepted


def safe_extension(filename: Optional[str], fallback: str = "jpg") -> str:
    """Lowercase alphanumeric extension of a filename, the fallback when absent"""
    name = filename or ""
    suffix = name.rsplit(".", 1)[-1] if "." in name else ""
    ext = re.sub(r"[^a-z0-9]", "", suffix.lower())
    return ext or fallback
