"""Image uploads stored on the local filesystem and served under a URL prefix."""
from __future__ import annotations

import logging
import os
import uuid
from typing import Dict, Iterable, Mapping

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from marketplace.errors import ValidationError, field_error

logger = logging.getLogger("marketplace.uploads")

EVENT_BANNER = "event_banner"
TICKET_BANNER = "ticket_banner"
LOGO = "logo"
PROFILE_IMAGE = "profile_image"


class LocalUploader:
    def __init__(self, folder: str, url_prefix: str, allowed_extensions: Iterable[str],
                 max_bytes: Mapping[str, int]):
        self.folder = folder
        self.url_prefix = url_prefix.rstrip("/")
        self.allowed_extensions = frozenset(e.lower() for e in allowed_extensions)
        self.max_bytes: Dict[str, int] = dict(max_bytes)

    @classmethod
    def from_config(cls, config: Mapping) -> "LocalUploader":
        return cls(
            config["UPLOAD_FOLDER"],
            config["UPLOAD_URL_PREFIX"],
            config["ALLOWED_IMAGE_EXTENSIONS"],
            {
                EVENT_BANNER: config["EVENT_BANNER_MAX_BYTES"],
                TICKET_BANNER: config["TICKET_BANNER_MAX_BYTES"],
                LOGO: config["LOGO_MAX_BYTES"],
                PROFILE_IMAGE: config["PROFILE_IMAGE_MAX_BYTES"],
            },
        )

    def allowed_file(self, filename: str) -> bool:
        return "." in filename and filename.rsplit(".", 1)[1].lower() in self.allowed_extensions

    @staticmethod
    def _size(file_storage: FileStorage) -> int:
        stream = file_storage.stream
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(0)
        return size

    def upload(self, file_storage, kind: str, *owner_ids) -> str:
        """Validate and store ``file_storage``; returns the public URL of the saved file."""
        if kind not in self.max_bytes:
            raise ValueError(f"unknown upload kind {kind!r}")
        if file_storage is None or not file_storage.filename:
            raise field_error("file", "No file uploaded.")
        if not self.allowed_file(file_storage.filename):
            raise ValidationError(
                "File type not allowed.",
                details={"field": "file", "allowed": sorted(self.allowed_extensions)},
            )
        size = self._size(file_storage)
        if size == 0:
            raise field_error("file", "Uploaded file is empty.")
        limit = self.max_bytes[kind]
        if size > limit:
            raise ValidationError(
                f"File is too large (max {limit // (1024 * 1024)} MB).",
                details={"field": "file", "max_bytes": limit},
            )

        filename = secure_filename(file_storage.filename)
        prefix = "_".join([kind, *(str(i) for i in owner_ids)])
        unique_filename = f"{prefix}_{uuid.uuid4().hex[:8]}_{filename}"
        directory = os.path.join(self.folder, kind)
        os.makedirs(directory, exist_ok=True)
        file_storage.save(os.path.join(directory, unique_filename))
        logger.info("Stored %s upload %s (%d bytes)", kind, unique_filename, size)
        return f"{self.url_prefix}/{kind}/{unique_filename}"
