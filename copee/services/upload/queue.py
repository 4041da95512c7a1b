from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """
    업로드 작업 ID 전달용 큐.

    큐는 "언제 꺼내 볼지"만 책임집니다. 처리 여부는 항상 DB의 작업 상태로 다시 판단하므로,
    큐 내용이 유실되어도 UploadService.recover()로 복구할 수 있습니다.
    """

    @abstractmethod
    def enqueue(self, job_id: uuid.UUID, delay: float = 0) -> None:
        ...

    @abstractmethod
    def claim(self, timeout: float | None = None) -> uuid.UUID | None:
        ...

    @abstractmethod
    def ack(self, job_id: uuid.UUID) -> None:
        ...

    @abstractmethod
    def nack(self, job_id: uuid.UUID, delay: float = 0) -> None:
        ...

    def close(self) -> None:
        pass

    def is_idle(self) -> bool:
        raise NotImplementedError


class MemoryJobQueue(JobQueue):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._heap: list[tuple[float, int, uuid.UUID]] = []
        self._queued: set[uuid.UUID] = set()
        self._in_flight: set[uuid.UUID] = set()
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    def enqueue(self, job_id: uuid.UUID, delay: float = 0) -> None:
        with self._cond:
            if job_id in self._queued:
                return
            heapq.heappush(self._heap, (self.clock() + max(0.0, delay), next(self._seq), job_id))
            self._queued.add(job_id)
            self._cond.notify()

    def claim(self, timeout: float | None = None) -> uuid.UUID | None:
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while not self._closed:
                now = self.clock()
                if self._heap and self._heap[0][0] <= now:
                    _, _, job_id = heapq.heappop(self._heap)
                    self._queued.discard(job_id)
                    self._in_flight.add(job_id)
                    return job_id

                wait = None
                if self._heap:
                    wait = self._heap[0][0] - now
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

        return None

    def ack(self, job_id: uuid.UUID) -> None:
        with self._cond:
            self._in_flight.discard(job_id)

    def nack(self, job_id: uuid.UUID, delay: float = 0) -> None:
        with self._cond:
            self._in_flight.discard(job_id)
        self.enqueue(job_id, delay)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def pending_count(self) -> int:
        with self._cond:
            return len(self._heap)

    def in_flight_count(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def ready_count(self) -> int:
        with self._cond:
            now = self.clock()
            return sum(1 for ready_at, _, _ in self._heap if ready_at <= now)

    def is_idle(self) -> bool:
        with self._cond:
            return not self._heap and not self._in_flight
