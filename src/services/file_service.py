"""
File Service for local uploads.
Validates local paths and turns them into file sources for the queue.
"""
import mimetypes
from pathlib import Path
from typing import List
from src.core import config
from src.core.exceptions import ValidationException
from src.models.dto.upload_dto import FileToUpload
from src.models.file_source import LocalFileSource
from src.services.item_registry import NewUpload

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileService:
    """Service for local file operations."""

    def open_local(self, path: str) -> LocalFileSource:
        """
        Validate a local file and open it as a file source.

        Args:
            path: Path of the file

        Returns:
            LocalFileSource for the resolved path

        Raises:
            ValidationException: If the file is missing, not a regular file,
                empty or larger than the configured limit
        """
        try:
            resolved = Path(path).expanduser().resolve()
        except (OSError, RuntimeError) as e:
            raise ValidationException(f"Invalid file path: {path}") from e

        if not resolved.exists():
            raise ValidationException(f"File not found: {path}")
        if not resolved.is_file():
            raise ValidationException(f"Not a file: {path}")

        size = resolved.stat().st_size
        if size == 0:
            raise ValidationException(f"File is empty: {path}")

        max_size_bytes = config.settings.max_file_size_mb * 1024 * 1024
        if size > max_size_bytes:
            raise ValidationException(
                f"File size ({size / (1024 * 1024):.2f}MB) exceeds maximum allowed size of "
                f"{config.settings.max_file_size_mb}MB"
            )

        return LocalFileSource(resolved)

    def guess_mime_type(self, filename: str) -> str:
        mime_type, _ = mimetypes.guess_type(filename)
        return mime_type or DEFAULT_MIME_TYPE

    def prepare_uploads(self, files: List[FileToUpload]) -> List[NewUpload]:
        """
        Validate every requested file before any of them is enqueued.

        Args:
            files: Requested local files

        Returns:
            NewUpload descriptions in request order

        Raises:
            ValidationException: If any file is invalid
        """
        uploads = []
        for f in files:
            source = self.open_local(f.path)
            uploads.append(NewUpload(
                file=source,
                mime_type=f.mime_type or self.guess_mime_type(source.name),
                relative_path=f.relative_path or source.name,
                doc_type=f.doc_type
            ))
        return uploads
