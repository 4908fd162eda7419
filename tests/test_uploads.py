from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import AccessDeniedError, NotFoundError, SecurityError, ValidationError
from uploads import FileService, IncomingFile, sanitize_basename


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _png(width: int, height: int, color: str = "teal") -> bytes:
    output = BytesIO()
    Image.new("RGBA", (width, height), color).save(output, format="PNG")
    return output.getvalue()


CSV_CONTENT = b"date,amount,description\n2025-04-01,-12.50,Coffee\n"


def test_sanitize_basename() -> None:
    assert sanitize_basename("../../etc/pass wd.txt") == "pass_wd"
    assert sanitize_basename("") == "file"
    assert len(sanitize_basename("x" * 80 + ".png")) == 50


def test_image_upload_is_converted_and_thumbnailed(tmp_path: Path) -> None:
    with _session() as session:
        service = FileService(session, upload_dir=tmp_path, base_url="/uploads/")
        stored = service.upload_file(_png(400, 200), "receipt.png", "image/png", "image")

        assert stored.mime_type == "image/jpeg"
        assert stored.filename.endswith("_receipt.jpg")
        assert (stored.width, stored.height) == (400, 200)
        assert stored.url == f"/uploads/image/1/{stored.filename}"
        assert sorted(stored.thumbnails) == ["150x150", "300x300", "600x600"]
        assert stored.thumbnails["150x150"].startswith("/uploads/image_thumbnails/1/")

        path = Path(stored.path)
        assert path.parent == tmp_path / "image" / "1"
        assert path.read_bytes()[:2] == b"\xff\xd8"
        assert stored.size == len(path.read_bytes())
        assert len(stored.thumbnail_paths) == 3
        for thumb_path in stored.thumbnail_paths:
            with Image.open(thumb_path) as thumb:
                assert thumb.width == thumb.height


def test_large_image_is_scaled_down(tmp_path: Path) -> None:
    with _session() as session:
        stored = FileService(session, upload_dir=tmp_path).upload_file(
            _png(3000, 1000), "panorama.png", "image/png", "avatar"
        )
        assert stored.width == 2048
        assert stored.height in (682, 683)


def test_document_upload_is_stored_unchanged(tmp_path: Path) -> None:
    with _session() as session:
        stored = FileService(session, upload_dir=tmp_path).upload_file(
            CSV_CONTENT, "April statement.csv", "text/csv", "document"
        )
        assert stored.mime_type == "text/csv"
        assert stored.thumbnails == {}
        assert stored.width is None
        assert Path(stored.path).read_bytes() == CSV_CONTENT
        assert stored.filename.endswith("_April_statement.csv")


def test_validation_rejections(tmp_path: Path) -> None:
    with _session() as session:
        service = FileService(session, upload_dir=tmp_path)
        cases = [
            (_png(100, 100), "a.png", "image/png", "banner", "Unknown upload type"),
            (b"", "a.png", "image/png", "image", "File is empty"),
            (_png(100, 100), "a.png", "image/gif", "image", "not allowed"),
            (_png(100, 100), "a.jpg", "image/png", "image", "extension"),
            (b"not an image", "a.png", "image/png", "image", "Invalid image"),
            (_png(40, 40), "a.png", "image/png", "image", "too small"),
            (b"hello", "a.pdf", "application/pdf", "document", "Invalid PDF"),
            (b"just words", "a.csv", "text/csv", "document", "Invalid CSV"),
        ]
        for content, filename, mime_type, upload_type, message in cases:
            with pytest.raises(ValidationError, match=message):
                service.upload_file(content, filename, mime_type, upload_type)

        big = b"a," * (3 * 1024 * 1024)
        with pytest.raises(ValidationError):
            service.upload_file(big, "big.csv", "text/csv", "avatar")

        assert service.list_files() == []
        assert not any(p.is_file() for p in tmp_path.rglob("*"))


def test_malicious_content_is_rejected(tmp_path: Path) -> None:
    with _session() as session:
        service = FileService(session, upload_dir=tmp_path)
        with pytest.raises(SecurityError, match="Executable"):
            service.upload_file(b"MZ\x90\x00payload", "notes.txt", "text/plain", "document")
        with pytest.raises(SecurityError, match="Executable"):
            service.upload_file(b"#!/bin/sh\nrm -rf /", "run.txt", "text/plain", "document")
        with pytest.raises(SecurityError, match="malicious"):
            service.upload_file(
                b"date,note\n2025-01-01,<script>alert(1)</script>\n",
                "x.csv",
                "text/csv",
                "document",
            )
        with pytest.raises(SecurityError, match="malicious"):
            service.upload_file(
                b"<a href='javascript:run()'>x</a>", "x.txt", "text/plain", "document"
            )


def test_upload_multiple_reports_each_file(tmp_path: Path) -> None:
    with _session() as session:
        result = FileService(session, upload_dir=tmp_path).upload_multiple(
            [
                IncomingFile("one.csv", CSV_CONTENT, "text/csv"),
                IncomingFile("bad.pdf", b"nope", "application/pdf"),
                IncomingFile("two.txt", b"plain notes", "text/plain"),
            ],
            "document",
        )
        assert result["total_processed"] == 3
        assert result["success_count"] == 2
        assert result["failure_count"] == 1
        assert result["failed"] == [{"filename": "bad.pdf", "error": "Invalid PDF file"}]
        assert [f.original_name for f in result["successful"]] == ["one.csv", "two.txt"]


def test_files_are_scoped_to_owner(tmp_path: Path) -> None:
    with _session() as session:
        mine = FileService(session, upload_dir=tmp_path).upload_file(
            CSV_CONTENT, "mine.csv", "text/csv", "document"
        )
        other = FileService(session, user_id=2, upload_dir=tmp_path)

        assert other.list_files() == []
        with pytest.raises(AccessDeniedError):
            other.get(mine.id)
        with pytest.raises(AccessDeniedError):
            other.delete_file(mine.id)
        with pytest.raises(NotFoundError):
            other.get(999)

        result = other.delete_multiple([mine.id, 999])
        assert result["deleted_count"] == 0
        assert result["failure_count"] == 2


def test_delete_removes_files_and_thumbnails(tmp_path: Path) -> None:
    with _session() as session:
        service = FileService(session, upload_dir=tmp_path)
        image = service.upload_file(_png(120, 80), "photo.png", "image/png", "image")
        document = service.upload_file(CSV_CONTENT, "data.csv", "text/csv", "document")
        ids = [image.id, document.id]
        paths = [Path(image.path), *map(Path, image.thumbnail_paths), Path(document.path)]
        assert all(p.exists() for p in paths)

        result = service.delete_multiple(ids)

        assert result["deleted"] == ids
        assert not any(p.exists() for p in paths)
        assert service.list_files() == []


def test_list_files_filters_by_type(tmp_path: Path) -> None:
    with _session() as session:
        service = FileService(session, upload_dir=tmp_path)
        service.upload_file(_png(120, 80), "photo.png", "image/png", "image")
        service.upload_file(CSV_CONTENT, "data.csv", "text/csv", "document")

        assert len(service.list_files()) == 2
        assert [f.original_name for f in service.list_files("document")] == ["data.csv"]


def test_signed_url_round_trip(tmp_path: Path) -> None:
    with _session() as session:
        service = FileService(session, upload_dir=tmp_path)
        stored = service.upload_file(CSV_CONTENT, "data.csv", "text/csv", "document")

        url = service.generate_file_url(stored.id)
        base, token = url.split("?token=")
        assert base == stored.url
        assert service.verify_file_token(token) == stored.id

        with pytest.raises(SecurityError, match="Invalid"):
            service.verify_file_token(("A" if token[0] != "A" else "B") + token[1:])
        with pytest.raises(SecurityError, match="Invalid"):
            FileService(session, user_id=2, upload_dir=tmp_path).verify_file_token(token)

        expired = service.generate_file_url(stored.id, expires_in=-10).split("?token=")[1]
        with pytest.raises(SecurityError, match="expired"):
            service.verify_file_token(expired)
