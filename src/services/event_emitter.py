"""
Observer list for upload events.
"""
import logging
from typing import Callable, List
from src.models.upload_event import UploadEvent

logger = logging.getLogger(__name__)

UploadListener = Callable[[UploadEvent], None]


class EventEmitter:
    """Delivers upload events to subscribed listeners in subscription order."""

    def __init__(self):
        self._listeners: List[UploadListener] = []

    def subscribe(self, listener: UploadListener) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            listener: Callable receiving each UploadEvent

        Returns:
            Function that removes the listener; calling it twice is harmless
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: UploadEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Upload listener failed on %s event", event.type.value)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
