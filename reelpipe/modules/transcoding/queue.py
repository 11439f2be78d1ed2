"""Hand-off of admitted assets to processing workers.

``CeleryProcessingQueue`` sends each asset to the Celery worker fleet.
``LocalProcessingQueue`` runs a bounded in-process worker pool, for
single-node deployments and development without a broker.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from fastapi import Request

from reelpipe.core.config import Settings
from reelpipe.core.logging import log_error, log_info
from reelpipe.core.metrics import PROCESSING_QUEUE_DEPTH
from reelpipe.modules.transcoding.pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)


class EnqueueError(Exception):
    """Raised when an asset cannot be handed to a worker."""

    pass


class QueueFullError(EnqueueError):
    """Raised when the local queue is at capacity."""

    pass


class ProcessingQueue(ABC):
    """Accepts asset ids for background processing."""

    @abstractmethod
    async def enqueue(self, asset_id: uuid.UUID) -> None:
        pass

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class CeleryProcessingQueue(ProcessingQueue):
    """Sends ``process_media_asset_task`` messages to the broker."""

    async def enqueue(self, asset_id: uuid.UUID) -> None:
        from reelpipe.modules.transcoding.tasks import process_media_asset_task

        try:
            await asyncio.to_thread(process_media_asset_task.delay, str(asset_id))
        except Exception as e:
            raise EnqueueError(f"Could not schedule processing: {e}") from e


class LocalProcessingQueue(ProcessingQueue):
    """Bounded ``asyncio.Queue`` drained by a fixed pool of workers."""

    def __init__(self, pipeline: ProcessingPipeline, concurrency: int = 2, maxsize: int = 100):
        self.pipeline = pipeline
        self.concurrency = max(1, concurrency)
        self._queue: asyncio.Queue[uuid.UUID] = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task] = []

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, asset_id: uuid.UUID) -> None:
        try:
            self._queue.put_nowait(asset_id)
        except asyncio.QueueFull:
            raise QueueFullError("Processing queue is full, try again later")
        PROCESSING_QUEUE_DEPTH.set(self._queue.qsize())

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"processing-worker-{i}")
            for i in range(self.concurrency)
        ]
        log_info(logger, f"Started {self.concurrency} local processing workers")

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def join(self) -> None:
        """Wait until every queued asset has been processed."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            asset_id = await self._queue.get()
            PROCESSING_QUEUE_DEPTH.set(self._queue.qsize())
            try:
                await self.pipeline.run(asset_id)
            except Exception as e:
                log_error(
                    logger,
                    f"Processing worker {index} failed",
                    exception=e,
                    asset_id=str(asset_id),
                )
            finally:
                self._queue.task_done()


def create_processing_queue(settings: Settings, session_maker=None) -> ProcessingQueue:
    """Queue selected by ``PROCESSING_BACKEND``."""
    backend = settings.PROCESSING_BACKEND.lower()
    if backend == "celery":
        return CeleryProcessingQueue()
    if backend == "local":
        from reelpipe.core.database import async_session_maker
        from reelpipe.modules.transcoding.tasks import build_pipeline

        pipeline = build_pipeline(session_maker or async_session_maker)
        return LocalProcessingQueue(
            pipeline,
            concurrency=settings.LOCAL_WORKER_CONCURRENCY,
            maxsize=settings.LOCAL_QUEUE_MAXSIZE,
        )
    raise ValueError(f"Unknown processing backend: {settings.PROCESSING_BACKEND}")


def get_processing_queue(request: Request) -> ProcessingQueue:
    """FastAPI dependency returning the queue the lifespan put on ``app.state``."""
    queue = getattr(request.app.state, "processing_queue", None)
    if queue is None:
        raise RuntimeError("Processing queue has not been started")
    return queue
