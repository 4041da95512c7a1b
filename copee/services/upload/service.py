from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from copee.models import UploadJob
from copee.services.catalog import CategoryResolver
from copee.services.ledger import Ledger
from copee.services.media_relay import MediaRelay
from copee.services.publisher import ListingPublisher
from copee.services.upload.queue import JobQueue, MemoryJobQueue
from copee.services.upload.store import JobRequest, UploadJobStore, total_pages
from copee.services.upload.worker import UploadWorker
from copee.settings import settings
from copee.woocommerce_client import WooCommerceClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobState:
    job_id: uuid.UUID
    product_id: uuid.UUID
    site_id: uuid.UUID
    status: str
    retry_count: int
    last_retry_at: datetime | None
    result: dict[str, Any] | None
    target_category: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, job: UploadJob) -> "JobState":
        return cls(
            job_id=job.id,
            product_id=job.product_id,
            site_id=job.site_id,
            status=job.status,
            retry_count=job.retry_count,
            last_retry_at=job.last_retry_at,
            result=job.result,
            target_category=job.target_category,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.job_id),
            "productId": str(self.product_id),
            "siteId": str(self.site_id),
            "status": self.status,
            "retryCount": self.retry_count,
            "lastRetryAt": self.last_retry_at.isoformat() if self.last_retry_at else None,
            "targetCategory": self.target_category,
            "result": self.result,
        }


class UploadService:
    """
    업로드 작업 생성/취소/재시도/조회 API.
    작업 행을 먼저 커밋한 뒤 큐에 넣으므로, 큐가 유실되어도 recover()로 복구됩니다.
    """

    def __init__(self, store: UploadJobStore, queue: JobQueue):
        self.store = store
        self.queue = queue

    def enqueue(self, requests: Iterable[JobRequest]) -> dict[str, int]:
        job_ids = self.store.create_jobs(requests)
        for job_id in job_ids:
            self.queue.enqueue(job_id)
        logger.info(f"[QUEUE] 작업 {len(job_ids)}건 등록")
        return {"queued": len(job_ids)}

    def cancel(self, job_ids: list[uuid.UUID] | None = None, user_id: uuid.UUID | None = None) -> dict[str, int]:
        """
        job_ids가 없으면 FAILED 작업만 취소, 있으면 SUCCESS가 아닌 작업을 취소합니다.
        처리 중인 작업은 끝까지 실행되지만 결과가 SUCCESS로 바뀌지 않습니다.
        """
        cancelled = self.store.cancel(job_ids=job_ids, user_id=user_id)
        logger.info(f"[QUEUE] 작업 {cancelled}건 취소")
        return {"cancelled": cancelled}

    def retry_failed(self, job_ids: list[uuid.UUID] | None = None, user_id: uuid.UUID | None = None) -> dict[str, int]:
        reset = self.store.reset_failed(job_ids=job_ids, user_id=user_id)
        for job_id in reset:
            self.queue.enqueue(job_id)
        logger.info(f"[QUEUE] 실패 작업 {len(reset)}건 수동 재시도")
        return {"queued": len(reset)}

    def status(self, job_id: uuid.UUID) -> JobState | None:
        job = self.store.get(job_id)
        if job is None:
            return None
        return JobState.from_model(job)

    def list_jobs(
        self,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        items, total = self.store.list_jobs(user_id=user_id, status=status, page=page, limit=limit)
        return {
            "items": [JobState.from_model(job) for job in items],
            "pagination": {
                "page": max(1, page),
                "limit": max(1, limit),
                "total": total,
                "totalPages": total_pages(total, limit),
            },
        }

    def recover(self, stale_after_seconds: float | None = None) -> dict[str, int]:
        """정체된 PROCESSING 작업을 되돌리고 PENDING 작업을 모두 큐에 다시 넣습니다."""
        stale_after = settings.upload_stale_after_seconds if stale_after_seconds is None else stale_after_seconds
        reclaimed = self.store.reclaim_stale(stale_after)
        for job_id in reclaimed:
            logger.warning(f"[QUEUE] job={job_id} PROCESSING 상태로 {stale_after}s 이상 정체, 다시 대기열로")

        pending = self.store.pending()
        for job_id, delay in pending:
            self.queue.enqueue(job_id, delay)

        if reclaimed or pending:
            logger.info(f"[QUEUE] recover: reclaimed={len(reclaimed)} requeued={len(pending)}")
        return {"reclaimed": len(reclaimed), "requeued": len(pending)}


@dataclass
class UploadPipeline:
    service: UploadService
    worker: UploadWorker
    queue: JobQueue
    ledger: Ledger


def build_pipeline(
    session_factory,
    queue: JobQueue | None = None,
    http_client=None,
    sleep=None,
    **worker_options,
) -> UploadPipeline:
    """기본 구성요소로 업로드 파이프라인 조립 (CLI/테스트 공용)"""
    queue = queue or MemoryJobQueue()
    store = UploadJobStore(session_factory)
    ledger = Ledger(session_factory)

    def client_factory(site):
        return WooCommerceClient(site, http_client=http_client)

    publisher = ListingPublisher(
        resolver=CategoryResolver(session_factory),
        relay=MediaRelay(http_client=http_client, client_factory=client_factory, sleep=sleep),
        client_factory=client_factory,
    )
    worker = UploadWorker(store=store, publisher=publisher, ledger=ledger, queue=queue, **worker_options)
    return UploadPipeline(service=UploadService(store, queue), worker=worker, queue=queue, ledger=ledger)
