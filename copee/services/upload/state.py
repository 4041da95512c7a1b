from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobEvent(str, Enum):
    CLAIM = "claim"
    SUCCEED = "succeed"
    FAIL_RETRYABLE = "fail_retryable"  # 재시도 상한 미만
    FAIL_FINAL = "fail_final"  # 재시도 상한 도달
    CANCEL = "cancel"
    MANUAL_RETRY = "manual_retry"
    RECLAIM = "reclaim"  # PROCESSING에 너무 오래 머문 작업 회수


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})

TRANSITIONS: dict[tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.PENDING, JobEvent.CLAIM): JobStatus.PROCESSING,
    (JobStatus.PENDING, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.PROCESSING, JobEvent.SUCCEED): JobStatus.SUCCESS,
    (JobStatus.PROCESSING, JobEvent.FAIL_RETRYABLE): JobStatus.PENDING,
    (JobStatus.PROCESSING, JobEvent.FAIL_FINAL): JobStatus.FAILED,
    (JobStatus.PROCESSING, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.PROCESSING, JobEvent.RECLAIM): JobStatus.PENDING,
    (JobStatus.FAILED, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.FAILED, JobEvent.MANUAL_RETRY): JobStatus.PENDING,
}


class InvalidTransition(ValueError):
    def __init__(self, status: JobStatus, event: JobEvent):
        self.status = status
        self.event = event
        super().__init__(f"허용되지 않는 상태 전이: {status.value} --{event.value}-->")


def next_status(status: JobStatus | str, event: JobEvent | str) -> JobStatus:
    status = JobStatus(status)
    event = JobEvent(event)
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransition(status, event) from None


def sources_for(event: JobEvent, target: JobStatus | None = None) -> list[str]:
    """event로 target에 도달할 수 있는 현재 상태 목록 (조건부 UPDATE의 WHERE 절용)"""
    return [
        src.value
        for (src, ev), dst in TRANSITIONS.items()
        if ev == event and (target is None or dst == target)
    ]


def failure_event(retry_count: int, max_retries: int) -> JobEvent:
    """증가된 retry_count 기준으로 재시도/최종 실패를 결정"""
    return JobEvent.FAIL_FINAL if retry_count >= max_retries else JobEvent.FAIL_RETRYABLE


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """지수 백오프: min(cap, base * 2^(attempt-1))"""
    if attempt < 1:
        return 0.0
    return min(cap, base * (2 ** (attempt - 1)))
