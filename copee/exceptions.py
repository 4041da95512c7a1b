"""
Upload Pipeline Exception Classes

업로드 파이프라인의 구조화된 에러 처리를 위한 예외 클래스 정의.
워커는 recoverable 여부와 무관하게 실패를 재시도 횟수에 반영하고,
to_dict() 결과를 작업 result 필드에 그대로 남깁니다.
"""
from typing import Optional, Dict, Any


class PipelineError(Exception):
    """
    Base exception for all upload pipeline errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        context: 추가 컨텍스트 정보
        recoverable: 재시도로 복구 가능한지 여부
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recoverable": self.recoverable
        }


class ConfigError(PipelineError):
    """
    스토어 인증 정보/주소 누락. 재시도해도 해결되지 않음.
    """

    def __init__(self, message: str, site_id: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            context={"site_id": site_id},
            recoverable=False,
            **kwargs
        )


class TransientNetworkError(PipelineError):
    """
    타임아웃, 연결 끊김 등 일시적인 네트워크 오류
    """

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        context.setdefault("url", url)
        super().__init__(message=message, context=context, recoverable=True, **kwargs)


class DownloadError(TransientNetworkError):
    """원본 이미지 다운로드 실패 (재시도 소진 후)"""


class UploadError(TransientNetworkError):
    """
    대상 미디어 라이브러리 업로드 실패

    Attributes:
        status_code: HTTP 상태 코드
    """

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, url=url, context={"status_code": status_code}, **kwargs)


class UpstreamError(PipelineError):
    """
    대상 API가 요청을 거부했거나, 2xx인데 상품 ID가 없는 응답

    Attributes:
        status_code: HTTP 상태 코드
        url: 요청 URL
        response_body: 응답 본문 (운영자 진단용으로 작업 result에 보존)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        response_body: Optional[str] = None,
        **kwargs
    ):
        self.status_code = status_code
        self.url = url
        self.response_body = response_body
        context = {
            "status_code": status_code,
            "url": url,
            "response_body": response_body
        }
        super().__init__(message=message, context=context, recoverable=True, **kwargs)


class EnqueueError(PipelineError):
    """존재하지 않는 상품/스토어로 작업을 만들려고 할 때"""


class LedgerError(Exception):
    """잔액 처리 오류의 기본 클래스. 자동 재시도 대상이 아님."""


class InvalidAmount(LedgerError):
    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(f"금액은 0보다 커야 합니다: {amount}")


class InsufficientFunds(LedgerError):
    def __init__(self, user_id: Any, amount: int, balance: int):
        self.user_id = user_id
        self.amount = amount
        self.balance = balance
        super().__init__(f"잔액 부족: user={user_id} balance={balance} amount={amount}")


class AccountNotFound(LedgerError):
    def __init__(self, user_id: Any):
        self.user_id = user_id
        super().__init__(f"사용자를 찾을 수 없습니다: {user_id}")
