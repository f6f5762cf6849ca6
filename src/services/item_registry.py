"""
Item Registry for upload records.
Authoritative in-memory store of upload items and their status machine.
"""
import uuid
from typing import Dict, Iterable, List, Optional
from src.core.exceptions import InvalidTransitionException
from src.models.dto.upload_dto import UploadStats
from src.models.file_source import FileSource
from src.models.upload_item import (
    ACTIVE_STATUSES,
    FINISHED_STATUSES,
    REMOVABLE_STATUSES,
    UploadItem,
    UploadItemStatus,
    can_transition
)


class NewUpload:
    """Description of a file to enqueue."""

    def __init__(
        self,
        file: FileSource,
        mime_type: str,
        relative_path: str = "",
        doc_type: str = "other"
    ):
        self.file = file
        self.mime_type = mime_type
        self.relative_path = relative_path
        self.doc_type = doc_type


class ItemRegistry:
    """In-memory store of upload items, kept in insertion order."""

    def __init__(self):
        self._items: Dict[str, UploadItem] = {}

    def add(self, files: Iterable[NewUpload]) -> List[UploadItem]:
        """
        Register files as queued items.

        Args:
            files: Files to enqueue

        Returns:
            The newly created items
        """
        created = []
        for f in files:
            item = UploadItem(
                id=uuid.uuid4().hex,
                file=f.file,
                mime_type=f.mime_type,
                relative_path=f.relative_path or f.file.name,
                doc_type=f.doc_type
            )
            self._items[item.id] = item
            created.append(item)
        return created

    def get(self, item_id: str) -> Optional[UploadItem]:
        return self._items.get(item_id)

    def remove(self, item_id: str) -> bool:
        """
        Remove an item unless it is in flight.

        Returns:
            True if the item existed and was in a removable status
        """
        item = self._items.get(item_id)
        if item is None or item.status not in REMOVABLE_STATUSES:
            return False
        del self._items[item_id]
        return True

    def clear_finished(self) -> int:
        finished = [i for i, item in self._items.items() if item.status in FINISHED_STATUSES]
        for item_id in finished:
            del self._items[item_id]
        return len(finished)

    def transition(self, item: UploadItem, status: UploadItemStatus) -> None:
        """
        Move an item to a new status.

        Raises:
            InvalidTransitionException: If the status machine forbids the edge
        """
        if not can_transition(item.status, status):
            raise InvalidTransitionException(
                f"Upload {item.id} cannot move from {item.status.value} to {status.value}"
            )
        item.status = status

    def all(self) -> List[UploadItem]:
        return list(self._items.values())

    def with_status(self, *statuses: UploadItemStatus) -> List[UploadItem]:
        return [item for item in self._items.values() if item.status in statuses]

    def queued(self) -> List[UploadItem]:
        return self.with_status(UploadItemStatus.QUEUED)

    def stats(self) -> UploadStats:
        items = list(self._items.values())
        return UploadStats(
            total=len(items),
            queued=sum(1 for i in items if i.status == UploadItemStatus.QUEUED),
            uploading=sum(1 for i in items if i.status in ACTIVE_STATUSES),
            completed=sum(1 for i in items if i.status == UploadItemStatus.COMPLETED),
            failed=sum(1 for i in items if i.status == UploadItemStatus.FAILED),
            cancelled=sum(1 for i in items if i.status == UploadItemStatus.CANCELLED),
            paused=sum(1 for i in items if i.status == UploadItemStatus.PAUSED),
            total_bytes=sum(i.file_size for i in items),
            uploaded_bytes=sum(i.uploaded_bytes for i in items)
        )

    def global_progress(self) -> float:
        total = sum(i.file_size for i in self._items.values())
        if total <= 0:
            return 0.0
        return sum(i.uploaded_bytes for i in self._items.values()) / total

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items
