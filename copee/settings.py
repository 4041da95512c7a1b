from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # database_url: str = "postgresql+psycopg://copee@/copee?host=/var/run/postgresql&port=5432"
    database_url: str = "sqlite:///./copee.db"

    # 업로드 워커 풀
    upload_concurrency: int = 5  # 동시에 처리하는 업로드 작업 수 (대상 API 부하 상한)
    upload_max_retries: int = 3  # 자동 재시도 상한
    upload_backoff_base_seconds: float = 2.0
    upload_backoff_cap_seconds: float = 60.0
    upload_fee: int = 1000  # 업로드 성공 1건당 차감 금액 (최소 통화 단위)
    upload_stale_after_seconds: int = 900  # PROCESSING 상태로 이 시간 이상 머물면 재수거
    upload_sweep_interval_seconds: int = 60

    # 이미지 중계
    image_download_attempts: int = 3
    image_download_timeout: float = 30.0
    image_upload_timeout: float = 60.0
    listing_create_timeout: float = 60.0

    # 원본 마켓은 헤더 없는 요청을 차단한다
    source_referer: str = "https://shopee.vn/"
    source_user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("source_referer")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v

    @field_validator(
        "upload_backoff_base_seconds",
        "upload_backoff_cap_seconds",
        "image_download_timeout",
        "image_upload_timeout",
        "listing_create_timeout",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("대기 시간은 0 이상이어야 합니다.")
        return v

    @field_validator("upload_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError("upload_concurrency는 1에서 50 사이여야 합니다.")
        return v

    @field_validator("upload_max_retries", "image_download_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("재시도 횟수는 1 이상이어야 합니다.")
        return v

    @field_validator("upload_fee")
    @classmethod
    def validate_fee(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("upload_fee는 0보다 커야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
