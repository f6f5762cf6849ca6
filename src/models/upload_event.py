"""
Upload event model.
Events published by the upload manager to its observers.
"""
from enum import Enum
from typing import Optional
from src.models.upload_item import UploadItem


class UploadEventType(str, Enum):
    ITEM_UPDATED = "item-updated"
    GLOBAL_PROGRESS = "global-progress"
    ALL_COMPLETED = "all-completed"
    ERROR = "error"
    THROTTLE_CHANGED = "throttle-changed"


class UploadEvent:
    """Event delivered to subscribed listeners."""

    def __init__(
        self,
        type: UploadEventType,
        item: Optional[UploadItem] = None,
        global_progress: Optional[float] = None,
        error: Optional[str] = None,
        is_throttled: Optional[bool] = None,
        server_queue_depth: Optional[int] = None
    ):
        self.type = type
        self.item = item
        self.global_progress = global_progress
        self.error = error
        self.is_throttled = is_throttled
        self.server_queue_depth = server_queue_depth

    def __repr__(self):
        return f"UploadEvent(type={self.type.value}, item={self.item!r})"
