from __future__ import annotations

import logging
import time
from typing import Callable
from urllib.parse import unquote, urlparse

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from copee.exceptions import DownloadError, TransientNetworkError, UploadError
from copee.models import Site
from copee.settings import settings
from copee.woocommerce_client import WooCommerceClient

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
}

UPLOAD_HINTS = {
    401: "WordPress Application Password 설정을 확인하세요 (wp_username / wp_application_password).",
    403: "WordPress Application Password 설정을 확인하세요 (wp_username / wp_application_password).",
    413: "이미지 파일이 너무 큽니다. 서버 업로드 용량 제한을 확인하세요.",
    415: "지원하지 않는 이미지 형식입니다.",
}


def normalize_image_type(content_type: str | None) -> tuple[str, str]:
    """
    Content-Type을 허용 목록 기준으로 정규화합니다. 알 수 없으면 JPEG로 취급.

    >>> normalize_image_type("image/png; charset=binary")
    ('image/png', 'png')
    """
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime in ALLOWED_IMAGE_TYPES:
        if mime == "image/jpg":
            mime = "image/jpeg"
        return mime, ALLOWED_IMAGE_TYPES[mime]
    return "image/jpeg", "jpg"


def filename_from_url(url: str, ext: str) -> str:
    path = unquote(urlparse(url).path or "")
    name = path.rsplit("/", 1)[-1].strip() or "image"
    stem = name.rsplit(".", 1)[0] if "." in name else name
    return f"{stem or 'image'}.{ext}"


class MediaRelay:
    """
    원본 마켓 이미지를 내려받아 대상 스토어 미디어 라이브러리에 다시 올립니다.
    원본 CDN은 핫링크를 막기 때문에 상품 등록에는 재호스팅된 URL만 사용합니다.
    """

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        client_factory: Callable[[Site], WooCommerceClient] = WooCommerceClient,
        sleep: Callable[[float], None] | None = None,
        attempts: int | None = None,
    ):
        self._http_client = http_client
        self.client_factory = client_factory
        self.sleep = sleep or time.sleep
        self.attempts = attempts or settings.image_download_attempts

    def relay(self, site: Site, source_url: str) -> str:
        content, content_type = self.download(source_url)
        mime, ext = normalize_image_type(content_type)
        filename = filename_from_url(source_url, ext)
        return self.upload(site, filename, content, mime)

    def download(self, url: str) -> tuple[bytes, str | None]:
        retryer = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=1, min=1, max=5),
            retry=retry_if_exception_type(DownloadError),
            reraise=True,
            sleep=self.sleep,
            before_sleep=lambda rs: logger.warning(
                f"[RELAY] 다운로드 재시도 {rs.attempt_number}/{self.attempts}: {url} ({rs.outcome.exception()})"
            ),
        )
        return retryer(self._download_once, url)

    def _download_once(self, url: str) -> tuple[bytes, str | None]:
        headers = {
            "User-Agent": settings.source_user_agent,
            "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
            "Referer": settings.source_referer,
        }
        try:
            if self._http_client is not None:
                resp = self._http_client.get(url, headers=headers, timeout=settings.image_download_timeout)
            else:
                with httpx.Client(timeout=settings.image_download_timeout, follow_redirects=True) as client:
                    resp = client.get(url, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            # InvalidURL은 HTTPError 계열이 아님 (잘못된 포트, 호스트 등)
            raise DownloadError(f"이미지 다운로드 실패: {e}", url=url) from e

        if resp.status_code != 200:
            raise DownloadError(f"이미지 다운로드 실패: HTTP {resp.status_code}", url=url)
        if not resp.content:
            raise DownloadError("이미지 다운로드 실패: 빈 응답", url=url)

        return resp.content, resp.headers.get("content-type")

    def upload(self, site: Site, filename: str, content: bytes, mime: str) -> str:
        client = self.client_factory(site)
        url = f"{client.base_url}/wp-json/wp/v2/media"
        try:
            status_code, data = client.upload_media(filename, content, mime)
        except TransientNetworkError as e:
            raise UploadError(f"미디어 업로드 실패: {e.message}", url=url) from e

        if not 200 <= status_code < 300:
            message = data.get("message") if isinstance(data, dict) else None
            hint = UPLOAD_HINTS.get(status_code)
            detail = f"미디어 업로드 실패 (HTTP {status_code})"
            if message:
                detail = f"{detail}: {message}"
            if hint:
                detail = f"{detail} - {hint}"
            raise UploadError(detail, url=url, status_code=status_code)

        source_url = data.get("source_url") if isinstance(data, dict) else None
        if not source_url:
            raise UploadError("미디어 업로드 응답에 source_url이 없습니다", url=url, status_code=status_code)

        logger.info(f"[RELAY] {filename} -> {source_url}")
        return source_url
