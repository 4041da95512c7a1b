from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from copee.exceptions import ConfigError, PipelineError, UpstreamError
from copee.models import Product, Site
from copee.services.catalog import CategoryRef, CategoryResolver
from copee.services.media_relay import MediaRelay
from copee.woocommerce_client import WooCommerceClient

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_NAME = "Copied product"


@dataclass
class ListingResult:
    listing_id: str
    permalink: str | None = None
    images: list[str] = field(default_factory=list)
    category: CategoryRef = field(default_factory=CategoryRef.unset)
    warnings: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


def build_description(product: Product) -> str:
    description = product.description or ""
    if product.source_url:
        shop = product.source_shop or "source"
        attribution = f'<p>Source ({shop}): <a href="{product.source_url}">{product.source_url}</a></p>'
        description = f"{description}\n{attribution}" if description else attribution
    return description


def build_payload(product: Product, category: CategoryRef, images: list[str]) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": product.title or DEFAULT_PRODUCT_NAME,
        "type": "simple",
        "description": build_description(product),
    }
    if product.price is not None:
        payload["regular_price"] = str(product.price)

    categories = category.to_payload()
    if categories:
        payload["categories"] = categories

    if images:
        payload["images"] = [{"src": url} for url in images]

    return payload


class ListingPublisher:
    """
    상품 1건을 대상 스토어에 등록합니다.

    1. 원본 이미지 재호스팅 (실패한 이미지는 건너뛰고 경고)
    2. 카테고리 결정
    3. WooCommerce 상품 생성

    이미지가 하나도 없어도 상품은 등록합니다. 생성 응답에 id가 없으면 실패로 봅니다.
    """

    def __init__(
        self,
        resolver: CategoryResolver,
        relay: MediaRelay,
        client_factory: Callable[[Site], WooCommerceClient] = WooCommerceClient,
    ):
        self.resolver = resolver
        self.relay = relay
        self.client_factory = client_factory

    @staticmethod
    def check_site(site: Site) -> None:
        missing = [
            name
            for name, value in (
                ("base_url", site.base_url),
                ("woo_consumer_key", site.woo_consumer_key),
                ("woo_consumer_secret", site.woo_consumer_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"스토어 설정 누락: {', '.join(missing)}", site_id=str(site.id))

    def publish(self, site: Site, product: Product, target_category: str | None = None) -> ListingResult:
        self.check_site(site)

        warnings: list[str] = []
        images = self.relay_images(site, product, warnings)
        category = self.resolver.resolve(site, product, target_category)
        payload = build_payload(product, category, images)

        client = self.client_factory(site)
        url = f"{client.base_url}/wp-json/wc/v3/products"
        status_code, data = client.create_product(payload)

        if not 200 <= status_code < 300:
            message = data.get("message") if isinstance(data, dict) else None
            raise UpstreamError(
                f"상품 등록 실패 (HTTP {status_code}){': ' + message if message else ''}",
                status_code=status_code,
                url=url,
                response_body=_body_text(data),
            )

        listing_id = data.get("id") if isinstance(data, dict) else None
        if listing_id in (None, ""):
            raise UpstreamError(
                "상품 등록 응답에 id가 없습니다",
                status_code=status_code,
                url=url,
                response_body=_body_text(data),
            )

        logger.info(f"[UPLOAD] product={product.id} site={site.id} listing={listing_id} images={len(images)}")
        return ListingResult(
            listing_id=str(listing_id),
            permalink=data.get("permalink"),
            images=images,
            category=category,
            warnings=warnings,
            raw=data,
        )

    def relay_images(self, site: Site, product: Product, warnings: list[str]) -> list[str]:
        sources = [url for url in (product.images or []) if url]
        uploaded: list[str] = []

        for source_url in sources:
            try:
                uploaded.append(self.relay.relay(site, source_url))
            except PipelineError as e:
                logger.warning(f"[RELAY] product={product.id} 이미지 건너뜀: {source_url} ({e.message})")
            except Exception as e:
                # 이미지 한 장 때문에 상품 등록 전체가 실패하지 않도록 함
                logger.exception(f"[RELAY] product={product.id} 이미지 처리 중 예기치 않은 오류, 건너뜀: {source_url} ({e})")

        if len(uploaded) < len(sources):
            warning = f"이미지 {len(sources)}개 중 {len(uploaded)}개만 업로드되었습니다"
            warnings.append(warning)
            logger.warning(f"[UPLOAD] product={product.id} {warning}")

        return uploaded


def _body_text(data: Any) -> str:
    if isinstance(data, dict) and "_raw_text" in data:
        return str(data["_raw_text"])[:2000]
    return str(data)[:2000]
