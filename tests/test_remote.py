"""Tests for cloudvm.remote module."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from cloudvm import catalog
from cloudvm.cache import ImageCache
from cloudvm.exceptions import NetworkError
from cloudvm.remote import (
    RemoteImageResolver,
    archive_url,
    checksum_url,
    format_last_modified,
    manifest_url,
)


class TestUrls:
    def test_ubuntu_focal(self):
        spec = catalog.resolve("focal")
        base = "https://cloud-images.ubuntu.com/releases/focal/release"
        assert manifest_url(spec) == f"{base}/ubuntu-20.04-server-cloudimg-amd64-azure.vhd.manifest"
        assert archive_url(spec) == f"{base}/ubuntu-20.04-server-cloudimg-amd64-azure.vhd.zip"
        assert checksum_url(spec) == f"{base}/SHA256SUMS"

    def test_debian_bullseye(self):
        spec = catalog.resolve("11")
        base = "https://cloud.debian.org/images/cloud/bullseye/latest"
        assert manifest_url(spec) == f"{base}/debian-11-genericcloud-amd64.json"
        assert archive_url(spec) == f"{base}/debian-11-genericcloud-amd64.tar.xz"
        assert checksum_url(spec) == f"{base}/SHA512SUMS"


class TestFormatLastModified:
    def test_gmt(self):
        assert format_last_modified("Tue, 02 Jan 2024 03:04:05 GMT") == "20240102030405"

    def test_offset_normalized_to_utc(self):
        assert format_last_modified("Tue, 02 Jan 2024 05:04:05 +0200") == "20240102030405"

    def test_garbage(self):
        with pytest.raises(NetworkError, match="Unparseable"):
            format_last_modified("yesterday")


@pytest.fixture
def resolver(tmp_path):
    session = MagicMock()
    return RemoteImageResolver(ImageCache(tmp_path), session)


class TestResolveLatestTimestamp:
    def test_cached_value_skips_network(self, resolver, ubuntu_spec):
        assert resolver.resolve_latest_timestamp(ubuntu_spec, "20230101000000") == "20230101000000"
        resolver.session.head.assert_not_called()

    def test_head_request_and_persist(self, resolver, ubuntu_spec, http_response):
        resolver.session.head.return_value = http_response(headers={"Last-Modified": "Tue, 02 Jan 2024 03:04:05 GMT"})
        ts = resolver.resolve_latest_timestamp(ubuntu_spec)
        assert ts == "20240102030405"
        assert resolver.cache.read_timestamp(ubuntu_spec) == "20240102030405"
        args, kwargs = resolver.session.head.call_args
        assert args[0] == manifest_url(ubuntu_spec)
        assert kwargs["allow_redirects"] is True

    def test_force_refresh_ignores_cache(self, resolver, ubuntu_spec, http_response):
        resolver.session.head.return_value = http_response(headers={"Last-Modified": "Tue, 02 Jan 2024 03:04:05 GMT"})
        assert resolver.resolve_latest_timestamp(ubuntu_spec, "1", force_refresh=True) == "20240102030405"
        resolver.session.head.assert_called_once()

    def test_missing_header(self, resolver, ubuntu_spec, http_response):
        resolver.session.head.return_value = http_response(headers={})
        with pytest.raises(NetworkError, match="No Last-Modified"):
            resolver.resolve_latest_timestamp(ubuntu_spec)

    def test_http_error(self, resolver, ubuntu_spec, http_response):
        resolver.session.head.return_value = http_response(status=requests.HTTPError("404 Not Found"))
        with pytest.raises(NetworkError, match="Failed to query"):
            resolver.resolve_latest_timestamp(ubuntu_spec)
        assert resolver.cache.read_timestamp(ubuntu_spec) is None

    def test_connection_error(self, resolver, ubuntu_spec):
        resolver.session.head.side_effect = requests.ConnectionError("no route")
        with pytest.raises(NetworkError):
            resolver.resolve_latest_timestamp(ubuntu_spec)


class TestIdentify:
    def test_second_call_uses_record(self, resolver, ubuntu_spec, http_response):
        resolver.session.head.return_value = http_response(headers={"Last-Modified": "Tue, 02 Jan 2024 03:04:05 GMT"})
        first = resolver.identify(ubuntu_spec)
        second = resolver.identify(ubuntu_spec)
        assert first == second
        assert first.build_timestamp == "20240102030405"
        assert resolver.session.head.call_count == 1
