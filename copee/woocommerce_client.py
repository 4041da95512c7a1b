from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import httpx

from copee.exceptions import TransientNetworkError
from copee.models import Site
from copee.settings import settings

logger = logging.getLogger(__name__)


def normalize_base_url(url: str) -> str:
    return (url or "").strip().rstrip("/").lower()


class WooCommerceClient:
    """
    WooCommerce / WordPress REST API 클라이언트 (스토어 1곳에 바인딩)

    다른 마켓 클라이언트와 마찬가지로 (status_code, data) 튜플을 반환합니다.
    연결 실패/타임아웃만 TransientNetworkError로 올리고, HTTP 오류 판단은 호출자 몫입니다.
    """

    def __init__(self, site: Site, http_client: httpx.Client | None = None) -> None:
        self.site = site
        self.base_url = normalize_base_url(site.base_url)
        self._http_client = http_client

    @property
    def woo_auth(self) -> tuple[str, str]:
        return (self.site.woo_consumer_key or "", self.site.woo_consumer_secret or "")

    @property
    def media_auth(self) -> tuple[str, str]:
        # 미디어 엔드포인트는 WordPress 인증이라 Application Password가 있으면 우선 사용
        if self.site.wp_username and self.site.wp_application_password:
            return (self.site.wp_username, self.site.wp_application_password)
        return self.woo_auth

    @contextmanager
    def _client(self, timeout: float) -> Iterator[httpx.Client]:
        if self._http_client is not None:
            yield self._http_client
            return
        with httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0)) as client:
            yield client

    def _request(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            with self._client(timeout) as client:
                return client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"WooCommerce {method} {path} timeout: {e}")
            raise TransientNetworkError(f"요청 시간 초과: {e}", url=url) from e
        except httpx.TransportError as e:
            logger.error(f"WooCommerce {method} {path} connection error: {e}")
            raise TransientNetworkError(f"연결 실패: {e}", url=url) from e

    @staticmethod
    def _parse(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {"_raw_text": resp.text}

    def create_product(self, payload: dict[str, Any]) -> tuple[int, Any]:
        """상품 등록"""
        resp = self._request(
            "POST",
            "/wp-json/wc/v3/products",
            settings.listing_create_timeout,
            json=payload,
            auth=self.woo_auth,
        )
        if resp.status_code >= 400:
            logger.error(f"WooCommerce create_product error: {resp.status_code} {resp.text[:500]}")
        return resp.status_code, self._parse(resp)

    def upload_media(self, filename: str, content: bytes, content_type: str) -> tuple[int, Any]:
        """WordPress 미디어 라이브러리에 이미지 업로드 (multipart)"""
        resp = self._request(
            "POST",
            "/wp-json/wp/v2/media",
            settings.image_upload_timeout,
            files={"file": (filename, content, content_type)},
            auth=self.media_auth,
        )
        if resp.status_code >= 400:
            logger.error(f"WordPress upload_media error: {resp.status_code} {resp.text[:500]}")
        return resp.status_code, self._parse(resp)

    def list_categories(self, page: int = 1, per_page: int = 100) -> tuple[int, Any]:
        """상품 카테고리 조회 (페이지 단위)"""
        resp = self._request(
            "GET",
            "/wp-json/wc/v3/products/categories",
            30.0,
            params={"per_page": per_page, "page": page},
            auth=self.woo_auth,
        )
        return resp.status_code, self._parse(resp)

    def check_connection(self) -> dict[str, Any]:
        """
        스토어 연결 확인.
        WooCommerce 키는 system_status로, Application Password가 있으면 wp/v2/users/me로 확인합니다.
        """
        report: dict[str, Any] = {"woocommerce": False, "wordpress": None}

        try:
            status_code, data = self._get("/wp-json/wc/v3/system_status", self.woo_auth)
            report["woocommerce"] = status_code == 200
            if status_code != 200:
                report["woocommerce_error"] = _error_message(status_code, data)
        except TransientNetworkError as e:
            report["woocommerce_error"] = e.message

        if self.site.wp_username and self.site.wp_application_password:
            try:
                status_code, data = self._get("/wp-json/wp/v2/users/me", self.media_auth)
                report["wordpress"] = status_code == 200
                if status_code != 200:
                    report["wordpress_error"] = _error_message(status_code, data)
            except TransientNetworkError as e:
                report["wordpress"] = False
                report["wordpress_error"] = e.message

        return report

    def _get(self, path: str, auth: tuple[str, str]) -> tuple[int, Any]:
        resp = self._request("GET", path, 30.0, auth=auth)
        return resp.status_code, self._parse(resp)


def _error_message(status_code: int, data: Any) -> str:
    if isinstance(data, dict) and data.get("message"):
        return f"{status_code}: {data['message']}"
    return f"HTTP {status_code}"
