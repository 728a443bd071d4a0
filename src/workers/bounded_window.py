import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class WindowOutcome(Generic[T, R]):
    index: int
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and self.error is None


@dataclass(frozen=True)
class _AdmissionDone:
    admitted: int


class BoundedWindow(Generic[T, R]):
    """
    Runs a worker over items with at most ``concurrency`` in flight.

    Items are admitted in order, in sub-batches of ``admission_batch_size``
    with ``admission_pause`` seconds between sub-batches; a freed slot is
    refilled immediately otherwise. Outcomes are yielded in completion order.
    After ``stop()`` nothing new is admitted and the remaining items are
    yielded as skipped. ``abort()`` additionally cancels in-flight work.
    """

    def __init__(
        self,
        concurrency: int,
        admission_batch_size: int = 10,
        admission_pause: float = 0.5,
    ):
        self.concurrency = max(1, concurrency)
        self.admission_batch_size = max(1, admission_batch_size)
        self.admission_pause = max(0.0, admission_pause)
        self.max_in_flight = 0
        self._in_flight = 0
        self._stopped = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def stop(self) -> None:
        self._stopped = True

    def abort(self) -> None:
        self._stopped = True
        for task in list(self._tasks):
            task.cancel()

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> AsyncIterator[WindowOutcome[T, R]]:
        items = list(items)
        queue: asyncio.Queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run_one(index: int, item: T) -> None:
            try:
                outcome = WindowOutcome(index=index, item=item, result=await worker(item))
            except asyncio.CancelledError as e:
                outcome = WindowOutcome(index=index, item=item, error=e)
            except Exception as e:
                outcome = WindowOutcome(index=index, item=item, error=e)
            self._in_flight -= 1
            semaphore.release()
            queue.put_nowait(outcome)

        def _settle(index: int, item: T) -> Callable[[asyncio.Task], None]:
            # a task cancelled before its first step never enters _run_one
            def _done(task: asyncio.Task) -> None:
                self._tasks.discard(task)
                if task.cancelled():
                    self._in_flight -= 1
                    semaphore.release()
                    queue.put_nowait(WindowOutcome(index=index, item=item, error=asyncio.CancelledError()))

            return _done

        async def _admit() -> None:
            admitted = 0
            try:
                for index, item in enumerate(items):
                    if self._stopped:
                        break
                    await semaphore.acquire()
                    if self._stopped:
                        semaphore.release()
                        break
                    self._in_flight += 1
                    self.max_in_flight = max(self.max_in_flight, self._in_flight)
                    task = asyncio.create_task(_run_one(index, item))
                    self._tasks.add(task)
                    task.add_done_callback(_settle(index, item))
                    admitted += 1
                    if admitted % self.admission_batch_size == 0 and admitted < len(items):
                        await asyncio.sleep(self.admission_pause)
            finally:
                queue.put_nowait(_AdmissionDone(admitted))

        admitter = asyncio.create_task(_admit())
        admitted: Optional[int] = None
        completed = 0
        try:
            while admitted is None or completed < admitted:
                entry = await queue.get()
                if isinstance(entry, _AdmissionDone):
                    admitted = entry.admitted
                    continue
                completed += 1
                yield entry

            if admitted < len(items):
                logger.info(f"Window stopped after admitting {admitted}/{len(items)} items")
            for index in range(admitted, len(items)):
                yield WindowOutcome(index=index, item=items[index], skipped=True)
        finally:
            pending: List[asyncio.Task] = [admitter, *self._tasks]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
