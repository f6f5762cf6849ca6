"""
Dependency injection container for FastAPI.
Provides singleton-like behavior for the backend client and the upload manager.
"""
from functools import lru_cache
from src.repositories.upload_backend import UploadBackend
from src.repositories.http_upload_backend import HttpUploadBackend
from src.services.file_service import FileService
from src.services.upload_manager import UploadManager


@lru_cache()
def get_upload_backend() -> UploadBackend:
    """Get HttpUploadBackend singleton instance."""
    return HttpUploadBackend()


@lru_cache()
def get_file_service() -> FileService:
    """Get FileService singleton instance."""
    return FileService()


@lru_cache()
def get_upload_manager() -> UploadManager:
    """Get UploadManager singleton instance with injected backend."""
    return UploadManager(backend=get_upload_backend())
