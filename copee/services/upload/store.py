from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from copee.exceptions import EnqueueError
from copee.models import Product, Site, UploadJob
from copee.services.upload.state import ACTIVE_STATUSES, JobEvent, JobStatus, failure_event, sources_for

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobRequest:
    product_id: uuid.UUID
    site_id: uuid.UUID
    target_category: str | None = None


@dataclass(frozen=True)
class FailureOutcome:
    status: JobStatus
    retry_count: int


class UploadJobStore:
    """
    upload_jobs 테이블 접근 계층.

    모든 상태 변경은 `UPDATE ... WHERE status IN (...)` 조건부 갱신이며 rowcount로 성공 여부를 판단합니다.
    워커가 끝내는 갱신(mark_success/mark_failure)은 claim 토큰까지 일치해야 반영됩니다.
    상품 상태 변경은 작업 상태 변경과 같은 트랜잭션에서 함께 커밋됩니다.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def create_jobs(self, requests: Iterable[JobRequest]) -> list[uuid.UUID]:
        requests = list(requests)
        created: list[uuid.UUID] = []
        now = self.clock()

        with self.session_factory() as session:
            with session.begin():
                product_ids = {s.product_id for s in requests}
                site_ids = {s.site_id for s in requests}
                known_products = set(session.scalars(select(Product.id).where(Product.id.in_(product_ids))))
                known_sites = set(session.scalars(select(Site.id).where(Site.id.in_(site_ids))))

                missing = [str(pid) for pid in product_ids - known_products]
                missing += [str(sid) for sid in site_ids - known_sites]
                if missing:
                    raise EnqueueError(
                        f"존재하지 않는 상품/스토어: {', '.join(sorted(missing))}",
                        context={"missing": sorted(missing)},
                    )

                for request in requests:
                    active = session.scalar(
                        select(UploadJob.id)
                        .where(UploadJob.product_id == request.product_id)
                        .where(UploadJob.site_id == request.site_id)
                        .where(UploadJob.status.in_([s.value for s in ACTIVE_STATUSES]))
                    )
                    if active:
                        logger.info(
                            f"[QUEUE] product={request.product_id} site={request.site_id} 진행 중인 작업 존재 ({active}), 건너뜀"
                        )
                        continue

                    job = UploadJob(
                        id=uuid.uuid4(),
                        product_id=request.product_id,
                        site_id=request.site_id,
                        target_category=request.target_category,
                        status=JobStatus.PENDING.value,
                        retry_count=0,
                        available_at=now,
                    )
                    try:
                        with session.begin_nested():
                            session.add(job)
                            session.flush()
                    except IntegrityError:
                        # 동시에 같은 쌍을 넣은 다른 요청이 먼저 커밋함 (부분 유니크 인덱스)
                        logger.info(f"[QUEUE] product={request.product_id} site={request.site_id} 중복 작업, 건너뜀")
                        continue
                    created.append(job.id)

        return created

    def get(self, job_id: uuid.UUID) -> UploadJob | None:
        with self.session_factory() as session:
            return session.get(UploadJob, job_id)

    def load_for_publish(self, job_id: uuid.UUID) -> UploadJob | None:
        """상품/스토어를 함께 로드 (세션 종료 후에도 접근 가능)"""
        with self.session_factory() as session:
            return session.scalars(
                select(UploadJob)
                .options(joinedload(UploadJob.product), joinedload(UploadJob.site))
                .where(UploadJob.id == job_id)
            ).first()

    def claim(self, job_id: uuid.UUID) -> uuid.UUID | None:
        """
        PENDING -> PROCESSING. 성공하면 이번 점유의 토큰을 반환합니다.
        이후 mark_success/mark_failure는 같은 토큰일 때만 반영되므로,
        reclaim_stale 이후 늦게 끝난 이전 워커가 새 점유를 덮어쓰지 못합니다.
        """
        now = self.clock()
        token = uuid.uuid4()
        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(UploadJob)
                    .where(UploadJob.id == job_id)
                    .where(UploadJob.status.in_(sources_for(JobEvent.CLAIM)))
                    .values(status=JobStatus.PROCESSING.value, claimed_at=now, claim_token=token, updated_at=now)
                )
                return token if result.rowcount == 1 else None

    def mark_success(
        self,
        job_id: uuid.UUID,
        product_id: uuid.UUID,
        result: dict[str, Any],
        claim_token: uuid.UUID,
    ) -> bool:
        now = self.clock()
        with self.session_factory() as session:
            with session.begin():
                updated = session.execute(
                    update(UploadJob)
                    .where(UploadJob.id == job_id)
                    .where(UploadJob.status.in_(sources_for(JobEvent.SUCCEED)))
                    .where(UploadJob.claim_token == claim_token)
                    .values(
                        status=JobStatus.SUCCESS.value,
                        result=result,
                        claimed_at=None,
                        claim_token=None,
                        updated_at=now,
                    )
                )
                if updated.rowcount != 1:
                    return False
                session.execute(
                    update(Product)
                    .where(Product.id == product_id)
                    .values(status="UPLOADED", error_message=None, updated_at=now)
                )
                return True

    def mark_failure(
        self,
        job_id: uuid.UUID,
        product_id: uuid.UUID,
        error: dict[str, Any],
        max_retries: int,
        backoff: Callable[[int], float],
        claim_token: uuid.UUID,
    ) -> FailureOutcome | None:
        """
        실패 반영. retry_count를 1 올리고 상한 미만이면 PENDING(백오프), 상한이면 FAILED.
        작업이 이미 PROCESSING이 아니거나 (처리 중 취소 등) 다른 워커가 다시 점유했으면 None.
        """
        now = self.clock()
        with self.session_factory() as session:
            with session.begin():
                current = session.scalar(
                    select(UploadJob.retry_count)
                    .where(UploadJob.id == job_id)
                    .where(UploadJob.status == JobStatus.PROCESSING.value)
                    .where(UploadJob.claim_token == claim_token)
                )
                if current is None:
                    return None

                retry_count = current + 1
                event = failure_event(retry_count, max_retries)
                if event == JobEvent.FAIL_FINAL:
                    status = JobStatus.FAILED
                    available_at = None
                    product_status = "FAILED"
                else:
                    status = JobStatus.PENDING
                    available_at = now + timedelta(seconds=backoff(retry_count))
                    product_status = "DRAFT"

                updated = session.execute(
                    update(UploadJob)
                    .where(UploadJob.id == job_id)
                    .where(UploadJob.status.in_(sources_for(event)))
                    .where(UploadJob.retry_count == current)
                    .where(UploadJob.claim_token == claim_token)
                    .values(
                        status=status.value,
                        retry_count=retry_count,
                        last_retry_at=now,
                        available_at=available_at,
                        claimed_at=None,
                        claim_token=None,
                        result=error,
                        updated_at=now,
                    )
                )
                if updated.rowcount != 1:
                    return None

                session.execute(
                    update(Product)
                    .where(Product.id == product_id)
                    .values(status=product_status, error_message=error.get("error"), updated_at=now)
                )
                return FailureOutcome(status=status, retry_count=retry_count)

    def attach_result(self, job_id: uuid.UUID, result: dict[str, Any], expected_status: JobStatus) -> bool:
        """상태는 건드리지 않고 result만 갱신. 작업이 expected_status가 아니면 아무 것도 하지 않음"""
        with self.session_factory() as session:
            with session.begin():
                updated = session.execute(
                    update(UploadJob)
                    .where(UploadJob.id == job_id)
                    .where(UploadJob.status == expected_status.value)
                    .values(result=result, updated_at=self.clock())
                )
                return updated.rowcount == 1

    def cancel(self, job_ids: list[uuid.UUID] | None = None, user_id: uuid.UUID | None = None) -> int:
        now = self.clock()
        stmt = update(UploadJob).values(
            status=JobStatus.CANCELLED.value, claimed_at=None, claim_token=None, updated_at=now
        )

        if job_ids:
            stmt = stmt.where(UploadJob.id.in_(job_ids)).where(UploadJob.status.in_(sources_for(JobEvent.CANCEL)))
        else:
            stmt = stmt.where(UploadJob.status == JobStatus.FAILED.value)
        if user_id:
            stmt = stmt.where(UploadJob.product_id.in_(select(Product.id).where(Product.user_id == user_id)))

        with self.session_factory() as session:
            with session.begin():
                result = session.execute(stmt.execution_options(synchronize_session=False))
                return result.rowcount

    def reset_failed(self, job_ids: list[uuid.UUID] | None = None, user_id: uuid.UUID | None = None) -> list[uuid.UUID]:
        """수동 재시도: FAILED -> PENDING, retry_count 0, 상품 READY"""
        now = self.clock()
        query = select(UploadJob.id, UploadJob.product_id).where(UploadJob.status == JobStatus.FAILED.value)
        if job_ids:
            query = query.where(UploadJob.id.in_(job_ids))
        if user_id:
            query = query.where(UploadJob.product_id.in_(select(Product.id).where(Product.user_id == user_id)))

        reset: list[uuid.UUID] = []
        with self.session_factory() as session:
            with session.begin():
                for job_id, product_id in session.execute(query).all():
                    try:
                        with session.begin_nested():
                            updated = session.execute(
                                update(UploadJob)
                                .where(UploadJob.id == job_id)
                                .where(UploadJob.status.in_(sources_for(JobEvent.MANUAL_RETRY)))
                                .values(
                                    status=JobStatus.PENDING.value,
                                    retry_count=0,
                                    available_at=now,
                                    claimed_at=None,
                                    claim_token=None,
                                    updated_at=now,
                                )
                            )
                    except IntegrityError:
                        logger.info(f"[QUEUE] job={job_id} 같은 상품/스토어에 진행 중인 작업이 있어 재시도하지 않음")
                        continue
                    if updated.rowcount != 1:
                        continue
                    session.execute(
                        update(Product)
                        .where(Product.id == product_id)
                        .values(status="READY", error_message=None, updated_at=now)
                    )
                    reset.append(job_id)
        return reset

    def reclaim_stale(self, stale_after_seconds: float) -> list[uuid.UUID]:
        """claimed_at이 오래된 PROCESSING 작업을 PENDING으로 되돌림 (워커 비정상 종료 대비)"""
        now = self.clock()
        cutoff = now - timedelta(seconds=stale_after_seconds)
        with self.session_factory() as session:
            with session.begin():
                stale_ids = list(
                    session.scalars(
                        select(UploadJob.id)
                        .where(UploadJob.status.in_(sources_for(JobEvent.RECLAIM)))
                        .where(UploadJob.claimed_at < cutoff)
                    )
                )
                reclaimed: list[uuid.UUID] = []
                for job_id in stale_ids:
                    updated = session.execute(
                        update(UploadJob)
                        .where(UploadJob.id == job_id)
                        .where(UploadJob.status == JobStatus.PROCESSING.value)
                        .where(UploadJob.claimed_at < cutoff)
                        .values(
                            status=JobStatus.PENDING.value,
                            claimed_at=None,
                            claim_token=None,
                            available_at=now,
                            updated_at=now,
                        )
                    )
                    if updated.rowcount == 1:
                        reclaimed.append(job_id)
                return reclaimed

    def pending(self) -> list[tuple[uuid.UUID, float]]:
        """PENDING 작업과 남은 대기 시간(초)"""
        now = self.clock()
        with self.session_factory() as session:
            rows = session.execute(
                select(UploadJob.id, UploadJob.available_at)
                .where(UploadJob.status == JobStatus.PENDING.value)
                .order_by(UploadJob.created_at)
            ).all()

        result = []
        for job_id, available_at in rows:
            delay = 0.0
            if available_at is not None:
                if available_at.tzinfo is None:
                    # SQLite는 tz 정보를 저장하지 않음 (항상 UTC로 기록)
                    available_at = available_at.replace(tzinfo=timezone.utc)
                delay = max(0.0, (available_at - now).total_seconds())
            result.append((job_id, delay))
        return result

    def list_jobs(
        self,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[UploadJob], int]:
        page = max(1, page)
        limit = max(1, limit)

        conditions = []
        if user_id:
            conditions.append(UploadJob.product_id.in_(select(Product.id).where(Product.user_id == user_id)))
        if status:
            conditions.append(UploadJob.status == status.upper())

        with self.session_factory() as session:
            items = session.scalars(
                select(UploadJob)
                .where(*conditions)
                .order_by(UploadJob.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            total = session.scalar(select(func.count()).select_from(UploadJob).where(*conditions)) or 0

        return list(items), total


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / max(1, limit))
