"""Pytest configuration and fixtures."""
import json
import threading
import uuid
from dataclasses import dataclass, field

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from copee.models import Base, Product, Site, User
from copee.services.ledger import Ledger

SITE_URL = "https://shop.example.com"


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    테스트용 SQLite 엔진.
    워커 스레드들이 같은 DB를 봐야 하므로 메모리 DB 대신 파일 DB를 사용합니다.
    """
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'copee-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,  # 테스트 로그 줄이기
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory):
    return Ledger(session_factory)


class Seeder:
    """테스트 데이터 주입 헬퍼"""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.ledger = Ledger(session_factory)

    def _add(self, obj):
        with self.session_factory() as session:
            with session.begin():
                session.add(obj)
        return obj

    def user(self, balance: int = 0) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = self._add(User(id=uuid.uuid4(), email=f"{suffix}@example.com", username=f"user-{suffix}", balance=0))
        if balance:
            self.ledger.open_account(user.id, balance)
            user.balance = balance
        return user

    def site(self, user: User, base_url: str = SITE_URL, **overrides) -> Site:
        values = {
            "id": uuid.uuid4(),
            "user_id": user.id,
            "name": "Test shop",
            "base_url": base_url,
            "woo_consumer_key": "ck_test",
            "woo_consumer_secret": "cs_test",
        }
        values.update(overrides)
        return self._add(Site(**values))

    def product(self, user: User, **overrides) -> Product:
        values = {
            "id": uuid.uuid4(),
            "user_id": user.id,
            "source_shop": "shopee",
            "source_url": "https://shopee.vn/product/1/2",
            "title": "Test product",
            "description": "<p>desc</p>",
            "price": 150000,
            "images": [],
            "category": None,
            "status": "READY",
        }
        values.update(overrides)
        return self._add(Product(**values))


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@dataclass
class FakeRemote:
    """
    원본 이미지 CDN + WooCommerce/WordPress REST API 흉내.

    images / product_responses / media_responses 에 응답을 순서대로 넣어두면 차례로 소비하고,
    비어 있으면 성공 응답을 돌려줍니다. 응답 대신 예외 인스턴스를 넣으면 그 예외를 발생시킵니다.
    """

    images: dict[str, list] = field(default_factory=dict)
    product_responses: list = field(default_factory=list)
    media_responses: list = field(default_factory=list)
    categories: list[dict] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)
    product_payloads: list[dict] = field(default_factory=list)
    media_count: int = 0
    product_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    def _next(self, script, default):
        item = script.pop(0) if script else default
        if isinstance(item, Exception):
            raise item
        return item

    def handler(self, request: httpx.Request) -> httpx.Response:
        # 워커 스레드 여러 개가 동시에 호출함
        with self.lock:
            return self._handle(request)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/wp-json/wp/v2/media"):
            self.media_count += 1
            default = httpx.Response(
                201, json={"id": self.media_count, "source_url": f"{SITE_URL}/wp-content/uploads/{self.media_count}.png"}
            )
            return self._next(self.media_responses, default)

        if path.endswith("/wp-json/wc/v3/products/categories"):
            page = int(request.url.params.get("page", "1"))
            per_page = int(request.url.params.get("per_page", "100"))
            chunk = self.categories[(page - 1) * per_page: page * per_page]
            return httpx.Response(200, json=chunk)

        if path.endswith("/wp-json/wc/v3/products") and request.method == "POST":
            self.product_count += 1
            self.product_payloads.append(json.loads(request.content))
            listing_id = 1000 + self.product_count
            default = httpx.Response(201, json={"id": listing_id, "permalink": f"{SITE_URL}/product/{listing_id}"})
            return self._next(self.product_responses, default)

        if path.endswith("/wp-json/wc/v3/system_status"):
            return httpx.Response(200, json={"environment": {}})

        if path.endswith("/wp-json/wp/v2/users/me"):
            return httpx.Response(200, json={"id": 1})

        default = httpx.Response(200, content=b"\x89PNG fake", headers={"content-type": "image/png"})
        return self._next(self.images.get(str(request.url), []), default)

    def requests_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def http_client(remote):
    client = httpx.Client(transport=httpx.MockTransport(remote.handler))
    yield client
    client.close()


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (SQLite 파일 DB + 가짜 HTTP)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
