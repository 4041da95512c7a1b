"""
이미지 재호스팅 테스트.

다운로드 재시도는 tenacity sleep을 주입해 실제로 기다리지 않습니다.
"""
import base64
import uuid

import httpx
import pytest

from copee.exceptions import DownloadError, TransientNetworkError, UploadError
from copee.models import Site
from copee.services.media_relay import MediaRelay, filename_from_url, normalize_image_type
from copee.woocommerce_client import WooCommerceClient

IMAGE_URL = "https://cf.shopee.vn/file/abc123_tn.webp?x=1"


def make_site(**overrides) -> Site:
    values = dict(
        id=uuid.uuid4(),
        base_url="https://shop.example.com/",
        woo_consumer_key="ck_test",
        woo_consumer_secret="cs_test",
    )
    values.update(overrides)
    return Site(**values)


def make_relay(remote, http_client, sleeps):
    return MediaRelay(
        http_client=http_client,
        client_factory=lambda site: WooCommerceClient(site, http_client=http_client),
        sleep=sleeps.append,
    )


@pytest.mark.unit
class TestNormalizeImageType:

    @pytest.mark.parametrize(
        "content_type, expected",
        [
            ("image/png", ("image/png", "png")),
            ("image/webp; charset=binary", ("image/webp", "webp")),
            ("IMAGE/GIF", ("image/gif", "gif")),
            ("image/jpg", ("image/jpeg", "jpg")),
            ("text/html", ("image/jpeg", "jpg")),
            (None, ("image/jpeg", "jpg")),
        ],
    )
    def test_normalize(self, content_type, expected):
        assert normalize_image_type(content_type) == expected

    def test_filename_uses_last_segment_without_query(self):
        assert filename_from_url(IMAGE_URL, "png") == "abc123_tn.png"

    def test_filename_fallback(self):
        assert filename_from_url("https://cdn.example.com/", "jpg") == "image.jpg"


@pytest.mark.unit
class TestDownload:

    def test_sends_browser_headers(self, remote, http_client):
        relay = make_relay(remote, http_client, [])
        content, content_type = relay.download(IMAGE_URL)

        assert content.startswith(b"\x89PNG")
        request = remote.requests[0]
        assert request.headers["Referer"] == "https://shopee.vn/"
        assert request.headers["User-Agent"].startswith("Mozilla/5.0")
        assert request.headers["Accept"].startswith("image/webp")

    def test_fail_fail_success(self, remote, http_client):
        sleeps = []
        remote.images[IMAGE_URL] = [
            httpx.Response(503),
            httpx.ConnectError("connection reset"),
        ]
        relay = make_relay(remote, http_client, sleeps)

        content, _ = relay.download(IMAGE_URL)

        assert content
        assert len(remote.requests) == 3
        assert sleeps == [1, 2]

    def test_exhausted_raises_download_error(self, remote, http_client):
        sleeps = []
        remote.images[IMAGE_URL] = [httpx.Response(404), httpx.Response(404), httpx.Response(404)]
        relay = make_relay(remote, http_client, sleeps)

        with pytest.raises(DownloadError) as excinfo:
            relay.download(IMAGE_URL)

        assert isinstance(excinfo.value, TransientNetworkError)
        assert "404" in excinfo.value.message
        assert len(remote.requests) == 3

    def test_malformed_url_raises_download_error(self, remote, http_client):
        """httpx.InvalidURL은 HTTPError가 아니므로 따로 변환되어야 함"""
        sleeps = []
        relay = make_relay(remote, http_client, sleeps)

        with pytest.raises(DownloadError) as excinfo:
            relay.download("http://[::1/bad.jpg")

        assert excinfo.value.context["url"] == "http://[::1/bad.jpg"
        assert remote.requests == []


@pytest.mark.unit
class TestUpload:

    def test_relay_returns_destination_url(self, remote, http_client):
        relay = make_relay(remote, http_client, [])
        url = relay.relay(make_site(), IMAGE_URL)

        assert url == "https://shop.example.com/wp-content/uploads/1.png"
        upload = remote.requests_to("/wp-json/wp/v2/media")[0]
        assert str(upload.url) == "https://shop.example.com/wp-json/wp/v2/media"
        assert upload.headers["content-type"].startswith("multipart/form-data")

    def test_prefers_application_password(self, remote, http_client):
        relay = make_relay(remote, http_client, [])
        site = make_site(wp_username="admin", wp_application_password="app pass")
        relay.relay(site, IMAGE_URL)

        upload = remote.requests_to("/wp-json/wp/v2/media")[0]
        expected = "Basic " + base64.b64encode(b"admin:app pass").decode()
        assert upload.headers["Authorization"] == expected

    @pytest.mark.parametrize("status_code, hint", [(401, "Application Password"), (413, "너무 큽니다"), (415, "지원하지 않는")])
    def test_error_hints(self, remote, http_client, status_code, hint):
        remote.media_responses.append(httpx.Response(status_code, json={"message": "nope"}))
        relay = make_relay(remote, http_client, [])

        with pytest.raises(UploadError) as excinfo:
            relay.relay(make_site(), IMAGE_URL)

        assert excinfo.value.status_code == status_code
        assert hint in excinfo.value.message

    def test_missing_source_url(self, remote, http_client):
        remote.media_responses.append(httpx.Response(201, json={"id": 5}))
        relay = make_relay(remote, http_client, [])

        with pytest.raises(UploadError):
            relay.relay(make_site(), IMAGE_URL)
