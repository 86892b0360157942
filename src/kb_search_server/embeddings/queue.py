"""
Async queue for background (re)indexing of sources.
"""
import asyncio
import logging
from dataclasses import dataclass

from ..core.errors import SourceBusyError, SourceNotFoundError
from .indexer import IndexingService

logger = logging.getLogger("kb.indexing_queue")


@dataclass
class IndexingJob:
    """Represents a request to (re)index one source."""
    source_id: str
    content: str


class IndexingQueue:
    """Process-wide queue for holding indexing jobs."""
    def __init__(self):
        self._queue: asyncio.Queue[IndexingJob] = asyncio.Queue()

    async def enqueue(self, job: IndexingJob) -> int:
        """Add a job to the queue. Returns current queue size."""
        await self._queue.put(job)
        qsize = self._queue.qsize()
        logger.info(f"Job enqueued: source {job.source_id} (Queue size: {qsize})")
        return qsize

    async def get_next_job(self) -> IndexingJob:
        return await self._queue.get()

    def task_done(self):
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()


# Global singleton
indexing_queue = IndexingQueue()


async def process_indexing_worker_task(
    service: IndexingService,
    queue: IndexingQueue = indexing_queue,
):
    """
    Background worker that consumes jobs from the queue and indexes each source.
    """
    logger.info("Indexing worker started.")

    while True:
        try:
            job = await queue.get_next_job()
        except asyncio.CancelledError:
            logger.info("Indexing worker cancelled.")
            break

        try:
            logger.info(f"Processing indexing job: source {job.source_id}")
            source = await service.index_source(job.source_id, job.content)
            logger.info(
                f"Finished indexing job: source {job.source_id} "
                f"({source.indexing_status.value}, {source.chunks_written} chunks)"
            )
        except asyncio.CancelledError:
            logger.info("Indexing worker cancelled.")
            queue.task_done()
            break
        except (SourceNotFoundError, SourceBusyError) as e:
            logger.warning(f"Skipping indexing job for {job.source_id}: {e}")
        except Exception:
            # Failure is already recorded on the source; keep the worker alive
            logger.exception(f"Indexing job failed for source {job.source_id}")
        queue.task_done()
