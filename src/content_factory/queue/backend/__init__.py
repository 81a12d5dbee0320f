"""Worker handler implementations."""

from content_factory.queue.backend.base import TaskHandler, WorkerCallbacks
from content_factory.queue.backend.echo import EchoContentHandler, EchoScanHandler

__all__ = [
    "EchoContentHandler",
    "EchoScanHandler",
    "TaskHandler",
    "WorkerCallbacks",
]
