"""
Multipart image uploads: content-type gate, resize to JPEG, write under MEDIA_ROOT.
"""
import asyncio
import io
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from fastapi import Request, UploadFile
from PIL import Image, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from tourbook.core.errors import ValidationFailed

logger = structlog.get_logger(__name__)

NOT_AN_IMAGE = "Not an image. Please upload only images"
USER_PHOTO_SIZE = (500, 500)
TOUR_COVER_SIZE = (2000, 1333)
TOUR_IMAGE_SIZE = (2000, 1333)
JPEG_QUALITY = 90
MAX_TOUR_IMAGES = 3


def image_file_filter(content_type: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Accept only image/* uploads; runs before any bytes are read."""
    if content_type and content_type.lower().startswith("image/"):
        return True, None
    return False, NOT_AN_IMAGE


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


async def collect_uploads(request: Request, field: str, max_count: int) -> List[UploadFile]:
    """Files posted under ``field`` in a multipart body, each passed through the filter."""
    if not request.headers.get("content-type", "").lower().startswith("multipart/form-data"):
        return []
    form = await request.form()
    files = [value for value in form.getlist(field) if not isinstance(value, str)]
    if len(files) > max_count:
        raise ValidationFailed(f"Unexpected field: {field}")
    for upload in files:
        accepted, reason = image_file_filter(upload.content_type)
        if not accepted:
            raise ValidationFailed(reason)
    return files


def _resize(data: bytes, size: Tuple[int, int], destination: Path, quality: int) -> None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.mode != "RGB":
                img = img.convert("RGB")
            resized = ImageOps.fit(img, size)
            destination.parent.mkdir(parents=True, exist_ok=True)
            resized.save(destination, format="JPEG", quality=quality)
    except UnidentifiedImageError:
        raise ValidationFailed(NOT_AN_IMAGE)


async def resize_upload(upload: UploadFile, size: Tuple[int, int], destination: Path) -> None:
    data = await upload.read()
    await run_in_threadpool(_resize, data, size, destination, JPEG_QUALITY)


async def process_user_photo(upload: UploadFile, user_id: UUID, media_root: str) -> str:
    filename = f"user-{user_id}-{_timestamp_ms()}.jpeg"
    await resize_upload(upload, USER_PHOTO_SIZE, Path(media_root) / "img" / "users" / filename)
    logger.info("user_photo_processed", user_id=str(user_id), filename=filename)
    return filename


async def process_tour_images(
    tour_id: UUID,
    media_root: str,
    cover: Optional[UploadFile] = None,
    images: Optional[List[UploadFile]] = None,
) -> Dict[str, object]:
    """Resize whichever of cover/gallery was sent; returns the tour fields to update."""
    folder = Path(media_root) / "img" / "tours"
    stamp = _timestamp_ms()
    fields: Dict[str, object] = {}

    if cover is not None:
        filename = f"tour-{tour_id}-{stamp}-cover.jpeg"
        await resize_upload(cover, TOUR_COVER_SIZE, folder / filename)
        fields["image_cover"] = filename

    if images:
        filenames = [f"tour-{tour_id}-{stamp}-{i}.jpeg" for i, _ in enumerate(images, start=1)]
        await asyncio.gather(
            *(resize_upload(upload, TOUR_IMAGE_SIZE, folder / name) for upload, name in zip(images, filenames))
        )
        fields["images"] = filenames

    if fields:
        logger.info("tour_images_processed", tour_id=str(tour_id), fields=sorted(fields))
    return fields
