"""
카테고리 해석 및 동기화.

상품을 올릴 때 대상 스토어 카테고리를 정하는 우선순위:
1. 상품에 이미 지정된 대상 카테고리 ID
2. 작업에 지정된 target_category (항상 ID로 취급)
3. 스토어별 카테고리 매핑 (동기화된 카테고리의 원격 ID, 없으면 매핑의 target_id)
4. 원본 카테고리명 (이름으로 전달)
5. 미지정
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from copee.exceptions import UpstreamError
from copee.models import CategoryMapping, DestinationCategory, Product, Site
from copee.woocommerce_client import WooCommerceClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryRef:
    kind: str  # resolved, named, unset
    value: str | None = None

    @classmethod
    def resolved(cls, category_id: Any) -> "CategoryRef":
        return cls("resolved", str(category_id))

    @classmethod
    def named(cls, label: str) -> "CategoryRef":
        return cls("named", label)

    @classmethod
    def unset(cls) -> "CategoryRef":
        return cls("unset")

    @property
    def is_set(self) -> bool:
        return self.kind != "unset"

    def to_payload(self) -> list[dict[str, Any]] | None:
        if self.kind == "resolved":
            # WooCommerce는 숫자 ID를 기대함
            return [{"id": int(self.value) if self.value.isdigit() else self.value}]
        if self.kind == "named":
            return [{"name": self.value}]
        return None


class CategoryResolver:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def resolve(self, site: Site, product: Product, target_category: str | None = None) -> CategoryRef:
        if product.category_id:
            return CategoryRef.resolved(product.category_id)

        if target_category:
            return CategoryRef.resolved(target_category)

        if product.category:
            mapped = self._lookup_mapping(site, product.category)
            if mapped:
                return CategoryRef.resolved(mapped)
            return CategoryRef.named(product.category)

        return CategoryRef.unset()

    def _lookup_mapping(self, site: Site, source_name: str) -> str | None:
        with self.session_factory() as session:
            mapping = session.scalars(
                select(CategoryMapping)
                .options(joinedload(CategoryMapping.destination_category))
                .where(CategoryMapping.site_id == site.id)
                .where(CategoryMapping.source_name == source_name)
            ).first()

            if not mapping:
                return None
            if mapping.destination_category is not None:
                return mapping.destination_category.remote_id
            return mapping.target_id

    def set_mapping(
        self,
        site_id,
        source_name: str,
        target_id: str | None = None,
        destination_category_id=None,
    ) -> CategoryMapping:
        """매핑 등록/갱신"""
        with self.session_factory() as session:
            with session.begin():
                mapping = session.scalars(
                    select(CategoryMapping)
                    .where(CategoryMapping.site_id == site_id)
                    .where(CategoryMapping.source_name == source_name)
                ).first()
                if not mapping:
                    mapping = CategoryMapping(site_id=site_id, source_name=source_name)
                    session.add(mapping)
                mapping.target_id = target_id
                mapping.destination_category_id = destination_category_id
                session.flush()
                return mapping


class CategorySync:
    """대상 스토어 카테고리를 가져와 destination_categories에 upsert"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[Site], WooCommerceClient] = WooCommerceClient,
        per_page: int = 100,
        max_pages: int = 50,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.per_page = per_page
        self.max_pages = max_pages

    def fetch_all(self, site: Site) -> list[dict[str, Any]]:
        client = self.client_factory(site)
        collected: list[dict[str, Any]] = []

        for page in range(1, self.max_pages + 1):
            status_code, data = client.list_categories(page=page, per_page=self.per_page)
            if status_code != 200 or not isinstance(data, list):
                raise UpstreamError(
                    f"카테고리 조회 실패 (page={page})",
                    status_code=status_code,
                    url=f"{client.base_url}/wp-json/wc/v3/products/categories",
                    response_body=str(data)[:2000],
                )
            collected.extend(data)
            if len(data) < self.per_page:
                break

        return collected

    def sync(self, site: Site) -> dict[str, int]:
        remote = self.fetch_all(site)
        created = 0
        updated = 0

        with self.session_factory() as session:
            with session.begin():
                existing = {
                    row.remote_id: row
                    for row in session.scalars(
                        select(DestinationCategory).where(DestinationCategory.site_id == site.id)
                    )
                }
                for item in remote:
                    remote_id = str(item.get("id"))
                    parent = item.get("parent")
                    values = {
                        "name": item.get("name") or "",
                        "slug": item.get("slug"),
                        "parent_remote_id": str(parent) if parent else None,
                        "count": int(item.get("count") or 0),
                    }
                    row = existing.get(remote_id)
                    if row is None:
                        session.add(DestinationCategory(site_id=site.id, remote_id=remote_id, **values))
                        created += 1
                    else:
                        for key, value in values.items():
                            setattr(row, key, value)
                        updated += 1

        logger.info(f"[CATALOG] site={site.id} synced categories created={created} updated={updated}")
        return {"total": len(remote), "created": created, "updated": updated}
