from __future__ import annotations

import base64
import binascii
import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional

from schemas.assistant import Attachment

logger = logging.getLogger(__name__)

MIME_BY_SUFFIX = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".html": "text/html",
    ".htm": "text/html",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".csv": "text/csv",
}


def mime_for(path: Path) -> str:
    return MIME_BY_SUFFIX.get(path.suffix.lower(), "application/octet-stream")


class FileStore:
    """Knowledge files and generated images kept under one storage directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def images_dir(self) -> Path:
        return self.root / "images"

    def copy_into_storage(self, source: Path) -> str:
        source = Path(source)
        if not source.is_file():
            raise FileNotFoundError(f"File '{source}' not found")
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / f"{uuid.uuid4().hex[:8]}_{source.name}"
        shutil.copyfile(source, target)
        return str(target)

    def read_base64(self, path: str) -> Optional[str]:
        file_path = Path(path)
        if not file_path.is_file():
            logger.warning(f"Knowledge file '{path}' not found")
            return None
        return base64.b64encode(file_path.read_bytes()).decode("ascii")

    def read_attachments(self, paths: list[str]) -> list[Attachment]:
        attachments: list[Attachment] = []
        for path in paths:
            data = self.read_base64(path)
            if data is None:
                continue
            file_path = Path(path)
            attachments.append(Attachment(name=file_path.name, data=data, mime_type=mime_for(file_path)))
        return attachments

    def save_image(self, base64_data: str, suffix: str = ".png") -> str:
        try:
            raw = base64.b64decode(base64_data, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Image payload is not base64: {exc}") from exc
        self.images_dir.mkdir(parents=True, exist_ok=True)
        target = self.images_dir / f"{uuid.uuid4().hex}{suffix}"
        target.write_bytes(raw)
        return str(target)

    def delete(self, path: str) -> bool:
        file_path = Path(path)
        try:
            file_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning(f"Failed to delete '{path}': {exc}")
            return False
