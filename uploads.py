from __future__ import annotations

import hashlib
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Iterable, Optional

from itsdangerous import BadSignature, URLSafeSerializer
from PIL import Image, ImageOps, UnidentifiedImageError
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import AccessDeniedError, NotFoundError, SecurityError, ValidationError
from models import StoredFile
from services import get_current_user_id


logger = logging.getLogger(__name__)

MB = 1024 * 1024
IMAGE_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
DOCUMENT_MIME_TYPES = (
    "application/pdf",
    "text/csv",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
)
MIME_EXTENSIONS = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/jpg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/webp": (".webp",),
    "application/pdf": (".pdf",),
    "text/csv": (".csv",),
    "application/vnd.ms-excel": (".xls",),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (".xlsx",),
    "text/plain": (".txt",),
}

MIN_IMAGE_DIMENSION = 50
MAX_IMAGE_DIMENSION = 10000
PROCESSED_MAX_DIMENSION = 2048
PROCESSED_QUALITY = 85
THUMBNAIL_SIZES = (150, 300, 600)
THUMBNAIL_QUALITY = 80

EXECUTABLE_SIGNATURES = (b"MZ", b"#!/bin/sh", b"#!/bin/bash")
SCRIPT_PATTERN = re.compile(
    rb"<script|javascript:|vbscript:|\bon\w+\s*=", re.IGNORECASE
)
UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass(frozen=True)
class UploadRule:
    max_size: int
    mime_types: tuple[str, ...]


UPLOAD_RULES = {
    "image": UploadRule(5 * MB, IMAGE_MIME_TYPES),
    "avatar": UploadRule(3 * MB, IMAGE_MIME_TYPES),
    "document": UploadRule(10 * MB, DOCUMENT_MIME_TYPES),
}
IMAGE_UPLOAD_TYPES = ("image", "avatar")


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    content: bytes
    mime_type: str


def checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def sanitize_basename(filename: str) -> str:
    stem = UNSAFE_NAME_CHARS.sub("_", Path(filename or "").stem)
    return stem[:50] or "file"


def _rgb(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "L"):
        return image
    return image.convert("RGB")


class FileService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        upload_dir: Optional[Path] = None,
        base_url: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        if base_url is None:
            base_url = settings.upload_base_url
        self.base_url = base_url.rstrip("/")
        self.secret_key = settings.secret_key

    def validate_file(
        self, content: bytes, filename: str, mime_type: str, upload_type: str
    ) -> Optional[tuple[int, int]]:
        """Raises ValidationError on the first failed check; returns image dimensions."""
        rule = UPLOAD_RULES.get(upload_type)
        if rule is None:
            raise ValidationError(f"Unknown upload type: {upload_type}")
        if not content:
            raise ValidationError("File is empty")
        if len(content) > rule.max_size:
            raise ValidationError(
                f"File exceeds the {rule.max_size // MB}MB limit for {upload_type} uploads"
            )
        mime_type = (mime_type or "").lower()
        if mime_type not in rule.mime_types:
            raise ValidationError(f"File type {mime_type or 'unknown'} is not allowed")
        extension = Path(filename or "").suffix.lower()
        if extension not in MIME_EXTENSIONS.get(mime_type, ()):
            raise ValidationError("File extension does not match its content type")

        if mime_type in IMAGE_MIME_TYPES:
            try:
                with Image.open(BytesIO(content)) as image:
                    width, height = image.size
                    image.verify()
            except (
                UnidentifiedImageError,
                Image.DecompressionBombError,
                OSError,
                SyntaxError,
            ) as exc:
                raise ValidationError("Invalid image file") from exc
            if min(width, height) < MIN_IMAGE_DIMENSION:
                raise ValidationError("Image is too small (minimum 50x50 pixels)")
            if max(width, height) > MAX_IMAGE_DIMENSION:
                raise ValidationError("Image is too large (maximum 10000x10000 pixels)")
            return width, height
        if mime_type == "application/pdf" and not content.startswith(b"%PDF-"):
            raise ValidationError("Invalid PDF file")
        if mime_type == "text/csv":
            head = content[:1024]
            if b"," not in head and b"\t" not in head:
                raise ValidationError("Invalid CSV file")
        return None

    def scan_content(self, content: bytes, mime_type: str) -> None:
        if content.startswith(EXECUTABLE_SIGNATURES):
            raise SecurityError("Executable files are not allowed")
        # images are re-encoded before storage
        if not (mime_type or "").lower().startswith("image/") and SCRIPT_PATTERN.search(
            content
        ):
            raise SecurityError("File contains potentially malicious content")

    def process_image(self, content: bytes) -> tuple[bytes, int, int]:
        with Image.open(BytesIO(content)) as source:
            image = _rgb(ImageOps.exif_transpose(source))
            image.thumbnail(
                (PROCESSED_MAX_DIMENSION, PROCESSED_MAX_DIMENSION),
                Image.Resampling.LANCZOS,
            )
            output = BytesIO()
            image.save(output, format="JPEG", quality=PROCESSED_QUALITY, optimize=True)
            return output.getvalue(), image.width, image.height

    def generate_thumbnails(self, content: bytes) -> dict[str, bytes]:
        thumbnails: dict[str, bytes] = {}
        with Image.open(BytesIO(content)) as source:
            image = _rgb(ImageOps.exif_transpose(source))
            for size in THUMBNAIL_SIZES:
                thumb = ImageOps.fit(image, (size, size), Image.Resampling.LANCZOS)
                output = BytesIO()
                thumb.save(output, format="JPEG", quality=THUMBNAIL_QUALITY)
                thumbnails[f"{size}x{size}"] = output.getvalue()
        return thumbnails

    def checksum(self, content: bytes) -> str:
        return checksum(content)

    def _stored_name(self, upload_type: str, filename: str, extension: str) -> str:
        timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        return (
            f"{upload_type}_{timestamp}_{uuid.uuid4().hex}_"
            f"{sanitize_basename(filename)}{extension}"
        )

    def _url(self, folder: str, name: str) -> str:
        return f"{self.base_url}/{folder}/{self.user_id}/{name}"

    def upload_file(
        self,
        content: bytes,
        filename: str,
        mime_type: str,
        upload_type: str = "image",
    ) -> StoredFile:
        self.validate_file(content, filename, mime_type, upload_type)
        self.scan_content(content, mime_type)

        stored = content
        extension = Path(filename).suffix.lower()
        width = height = None
        thumbnails: dict[str, bytes] = {}
        if upload_type in IMAGE_UPLOAD_TYPES:
            stored, width, height = self.process_image(content)
            extension = ".jpg"
            mime_type = "image/jpeg"
            thumbnails = self.generate_thumbnails(stored)

        name = self._stored_name(upload_type, filename, extension)
        directory = self.upload_dir / upload_type / str(self.user_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name

        written: list[Path] = []
        try:
            path.write_bytes(stored)
            written.append(path)

            thumbnail_urls: dict[str, str] = {}
            if thumbnails:
                folder = f"{upload_type}_thumbnails"
                thumb_dir = self.upload_dir / folder / str(self.user_id)
                thumb_dir.mkdir(parents=True, exist_ok=True)
                for label, data in thumbnails.items():
                    thumb_name = f"{path.stem}_{label}.jpg"
                    thumb_path = thumb_dir / thumb_name
                    thumb_path.write_bytes(data)
                    written.append(thumb_path)
                    thumbnail_urls[label] = self._url(folder, thumb_name)

            record = StoredFile(
                user_id=self.user_id,
                original_name=filename,
                filename=name,
                path=str(path),
                url=self._url(upload_type, name),
                size=len(stored),
                mime_type=mime_type,
                upload_type=upload_type,
                checksum=self.checksum(stored),
                width=width,
                height=height,
                thumbnails=thumbnail_urls,
                thumbnail_paths=[str(p) for p in written[1:]],
            )
            self.session.add(record)
            self.session.commit()
        except Exception:
            self.session.rollback()
            for item in written:
                item.unlink(missing_ok=True)
            raise

        self.session.refresh(record)
        logger.info(
            "file_uploaded: id=%s type=%s size=%s", record.id, upload_type, record.size
        )
        return record

    def upload_multiple(
        self, files: Iterable[IncomingFile], upload_type: str = "image"
    ) -> dict[str, object]:
        successful: list[StoredFile] = []
        failed: list[dict[str, str]] = []
        for item in files:
            try:
                successful.append(
                    self.upload_file(item.content, item.filename, item.mime_type, upload_type)
                )
            except (ValueError, OSError) as exc:
                logger.warning("file_upload_failed: filename=%s error=%s", item.filename, exc)
                failed.append({"filename": item.filename, "error": str(exc)})
        return {
            "successful": successful,
            "failed": failed,
            "total_processed": len(successful) + len(failed),
            "success_count": len(successful),
            "failure_count": len(failed),
        }

    def get(self, file_id: int) -> StoredFile:
        record = self.session.get(StoredFile, file_id)
        if not record:
            raise NotFoundError("File not found")
        if record.user_id != self.user_id:
            raise AccessDeniedError("Access denied to this file")
        return record

    def list_files(self, upload_type: Optional[str] = None) -> list[StoredFile]:
        stmt = select(StoredFile).where(StoredFile.user_id == self.user_id)
        if upload_type:
            stmt = stmt.where(StoredFile.upload_type == upload_type)
        return self.session.scalars(stmt.order_by(StoredFile.created_at.desc())).all()

    def delete_file(self, file_id: int) -> None:
        record = self.get(file_id)
        Path(record.path).unlink(missing_ok=True)
        for thumb_path in record.thumbnail_paths or []:
            Path(thumb_path).unlink(missing_ok=True)
        self.session.delete(record)
        self.session.commit()
        logger.info("file_deleted: id=%s", file_id)

    def delete_multiple(self, file_ids: list[int]) -> dict[str, object]:
        deleted: list[int] = []
        failed: list[dict[str, object]] = []
        for file_id in file_ids:
            try:
                self.delete_file(file_id)
                deleted.append(file_id)
            except ValueError as exc:
                failed.append({"file_id": file_id, "error": str(exc)})
        return {
            "deleted": deleted,
            "failed": failed,
            "deleted_count": len(deleted),
            "failure_count": len(failed),
        }

    def _serializer(self) -> URLSafeSerializer:
        return URLSafeSerializer(self.secret_key, salt="file-url")

    def generate_file_url(self, file_id: int, expires_in: int = 3600) -> str:
        record = self.get(file_id)
        token = self._serializer().dumps(
            {"f": record.id, "u": self.user_id, "exp": int(time.time()) + expires_in}
        )
        return f"{record.url}?token={token}"

    def verify_file_token(self, token: str) -> int:
        try:
            data = self._serializer().loads(token)
        except BadSignature as exc:
            raise SecurityError("Invalid file token") from exc
        if data.get("u") != self.user_id:
            raise SecurityError("Invalid file token")
        if int(time.time()) > data.get("exp", 0):
            raise SecurityError("File link has expired")
        return int(data["f"])
