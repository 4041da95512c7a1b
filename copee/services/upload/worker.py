from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable

from copee.exceptions import LedgerError, PipelineError
from copee.services.ledger import Ledger
from copee.services.publisher import ListingPublisher, ListingResult
from copee.services.upload.queue import JobQueue
from copee.services.upload.state import JobStatus, compute_backoff
from copee.services.upload.store import UploadJobStore
from copee.settings import settings

logger = logging.getLogger(__name__)


def error_payload(exc: Exception, now: datetime) -> dict[str, Any]:
    if isinstance(exc, PipelineError):
        data = exc.to_dict()
    else:
        data = {
            "error_code": "UnexpectedError",
            "message": str(exc),
            "context": {"type": exc.__class__.__name__},
            "recoverable": False,
        }
    data["error"] = data["message"] or exc.__class__.__name__
    data["timestamp"] = now.isoformat()
    return data


def success_payload(result: ListingResult) -> dict[str, Any]:
    return {
        "listingId": result.listing_id,
        "permalink": result.permalink,
        "images": result.images,
        "warnings": result.warnings,
    }


class UploadWorker:
    """
    업로드 작업 1건 처리.

    1. 작업 로드 (없으면 ack)
    2. PENDING이 아니면 (취소 등) 아무 것도 하지 않음
    3. PENDING -> PROCESSING 조건부 갱신 (다른 워커가 먼저 가져갔으면 건너뜀)
    4. ListingPublisher.publish
    5. 성공: SUCCESS + 상품 UPLOADED, 그 다음 잔액 차감 (1회)
    6. 실패: retry_count + 1, 상한 미만이면 백오프 후 재시도, 상한이면 FAILED
    """

    def __init__(
        self,
        store: UploadJobStore,
        publisher: ListingPublisher,
        ledger: Ledger,
        queue: JobQueue,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        fee: int | None = None,
    ):
        self.store = store
        self.publisher = publisher
        self.ledger = ledger
        self.queue = queue
        self.max_retries = max_retries or settings.upload_max_retries
        self.backoff_base = settings.upload_backoff_base_seconds if backoff_base is None else backoff_base
        self.backoff_cap = settings.upload_backoff_cap_seconds if backoff_cap is None else backoff_cap
        self.fee = fee or settings.upload_fee

    def backoff(self, attempt: int) -> float:
        return compute_backoff(attempt, self.backoff_base, self.backoff_cap)

    def process(self, job_id: uuid.UUID) -> str:
        """처리 결과 상태 문자열을 반환 (skipped/success/retry/failed/cancelled)"""
        job = self.store.load_for_publish(job_id)
        if job is None:
            logger.error(f"[UPLOAD] job={job_id} 작업을 찾을 수 없습니다")
            self.queue.ack(job_id)
            return "skipped"

        if job.status != JobStatus.PENDING.value:
            logger.info(f"[UPLOAD] job={job_id} status={job.status}, 건너뜀")
            self.queue.ack(job_id)
            return "skipped"

        token = self.store.claim(job_id)
        if token is None:
            logger.info(f"[UPLOAD] job={job_id} 다른 워커가 먼저 처리했거나 취소됨")
            self.queue.ack(job_id)
            return "skipped"

        logger.info(f"[UPLOAD] job={job_id} product={job.product_id} site={job.site_id} 처리 시작 (retry={job.retry_count})")

        try:
            result = self.publisher.publish(job.site, job.product, job.target_category)
        except Exception as e:
            if not isinstance(e, PipelineError):
                logger.exception(f"[UPLOAD] job={job_id} 예기치 않은 오류: {e}")
            return self._handle_failure(job, e, token)

        return self._handle_success(job, result, token)

    def _handle_success(self, job, result: ListingResult, token: uuid.UUID) -> str:
        payload = success_payload(result)

        if not self.store.mark_success(job.id, job.product_id, payload, token):
            self.queue.ack(job.id)
            # 처리 도중 취소됨. 상품은 이미 등록되었으므로 ID만 남기고 차감하지 않음
            payload["cancelledWhileProcessing"] = True
            if self.store.attach_result(job.id, payload, JobStatus.CANCELLED):
                logger.warning(
                    f"[UPLOAD] job={job.id} 처리 중 취소되었으나 상품이 등록됨 (listing={result.listing_id}), 차감하지 않음"
                )
                return "cancelled"
            # 정체로 판단되어 다른 워커가 다시 점유함. 그쪽 결과를 덮어쓰지 않음
            logger.warning(
                f"[UPLOAD] job={job.id} 점유를 잃은 뒤 상품이 등록됨 (listing={result.listing_id}), 결과를 반영하지 않음"
            )
            return "skipped"

        try:
            self.ledger.debit(
                job.product.user_id,
                self.fee,
                reference=f"UPLOAD:{job.product_id}",
                description=f"Product upload: {job.product.title or job.product_id}",
            )
        except LedgerError as e:
            logger.warning(f"[UPLOAD] job={job.id} 업로드는 성공했으나 차감 실패: {e}")
            payload["billingError"] = str(e)
            self.store.attach_result(job.id, payload, JobStatus.SUCCESS)

        logger.info(f"[UPLOAD] job={job.id} 성공 listing={result.listing_id}")
        self.queue.ack(job.id)
        return "success"

    def _handle_failure(self, job, exc: Exception, token: uuid.UUID) -> str:
        error = error_payload(exc, self.store.clock())
        outcome = self.store.mark_failure(job.id, job.product_id, error, self.max_retries, self.backoff, token)

        if outcome is None:
            logger.info(f"[UPLOAD] job={job.id} 실패했지만 이미 상태가 바뀜 (취소 또는 재점유): {error['error']}")
            self.queue.ack(job.id)
            return "cancelled"

        if outcome.status == JobStatus.PENDING:
            delay = self.backoff(outcome.retry_count)
            logger.warning(
                f"[UPLOAD] job={job.id} 실패 ({outcome.retry_count}/{self.max_retries}), "
                f"{delay:.1f}s 후 재시도: {error['error']}"
            )
            self.queue.nack(job.id, delay)
            return "retry"

        logger.error(f"[UPLOAD] job={job.id} 최종 실패 ({outcome.retry_count}/{self.max_retries}): {error['error']}")
        self.queue.ack(job.id)
        return "failed"


class WorkerPool:
    """
    고정 개수의 데몬 스레드로 큐를 소비합니다. 동시 처리 수 = 대상 API 동시 요청 상한.
    recover가 주어지면 별도 스레드에서 주기적으로 호출해 유실/정체 작업을 다시 큐에 넣습니다.
    """

    def __init__(
        self,
        worker: UploadWorker,
        queue: JobQueue,
        concurrency: int | None = None,
        recover: Callable[[], Any] | None = None,
        sweep_interval: float | None = None,
        poll_timeout: float = 0.5,
    ):
        self.worker = worker
        self.queue = queue
        self.concurrency = concurrency or settings.upload_concurrency
        self.recover = recover
        self.sweep_interval = settings.upload_sweep_interval_seconds if sweep_interval is None else sweep_interval
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._active = 0
        self._active_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def active(self) -> int:
        with self._active_lock:
            return self._active

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        for i in range(self.concurrency):
            t = threading.Thread(target=self._run, name=f"upload-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        if self.recover is not None and self.sweep_interval > 0:
            t = threading.Thread(target=self._sweep, name="upload-sweeper", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info(f"[QUEUE] 워커 {self.concurrency}개 시작")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        self.queue.close()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("[QUEUE] 워커 종료")

    def drain(self, timeout: float = 10.0) -> bool:
        """큐가 비고 처리 중인 작업이 없을 때까지 대기"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.queue.is_idle() and self.active == 0:
                return True
            time.sleep(0.02)
        return False

    def _run(self) -> None:
        while not self._stop.is_set():
            job_id = self.queue.claim(timeout=self.poll_timeout)
            if job_id is None:
                continue
            with self._active_lock:
                self._active += 1
            try:
                self.worker.process(job_id)
            except Exception as e:
                # DB 장애 등. 작업 행은 PENDING/PROCESSING으로 남아 recover()가 다시 넣음
                logger.exception(f"[QUEUE] job={job_id} 처리 중 오류: {e}")
                self.queue.ack(job_id)
            finally:
                with self._active_lock:
                    self._active -= 1

    def _sweep(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.recover()
            except Exception as e:
                logger.exception(f"[QUEUE] recover 실패: {e}")
