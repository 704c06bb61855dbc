"""Tests for cloudvm.fetch module."""

from __future__ import annotations

import hashlib
import io
import os
import tarfile
import zipfile
from unittest.mock import MagicMock, patch

import pytest

from cloudvm import catalog
from cloudvm.cache import ImageCache
from cloudvm.exceptions import IntegrityError, ManagerError, NetworkError
from cloudvm.fetch import ImageFetcher, extract_archive, manifest_lists_digest, newest_disk_image
from cloudvm.models import RemoteArtifactIdentity
from cloudvm.remote import archive_url, checksum_url

TS = "20240102030405"


def _zip_bytes(members):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


def _tar_xz(path, members):
    with tarfile.open(path, "w:xz") as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))


class FakeSession:
    """Serves fixed bodies by URL and records every request."""

    def __init__(self, bodies):
        self.bodies = bodies
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        body = self.bodies[url]
        response = MagicMock()
        response.headers = {"Content-Length": str(len(body))}
        response.text = body.decode("utf-8", "replace")
        response.iter_content.return_value = [body]
        return response


class TestManifestListsDigest:
    def test_listed(self):
        manifest = "abc123  other.img\nDEADBEEF *ubuntu.vhd.zip\n"
        assert manifest_lists_digest(manifest, "deadbeef")

    def test_substring_is_not_enough(self):
        assert not manifest_lists_digest("xxdeadbeefxx  file\n", "deadbeef")

    def test_absent(self):
        assert not manifest_lists_digest("", "deadbeef")


class TestExtractArchive:
    def test_zip(self, tmp_path):
        archive = tmp_path / "a.vhd.zip"
        archive.write_bytes(_zip_bytes({"livecd.ubuntu-cpc.azure.vhd": b"disk"}))
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "livecd.ubuntu-cpc.azure.vhd").read_bytes() == b"disk"

    def test_tar_xz(self, tmp_path):
        archive = tmp_path / "a.tar.xz"
        _tar_xz(archive, {"disk.raw": b"raw"})
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "disk.raw").read_bytes() == b"raw"

    def test_unsupported(self, tmp_path):
        archive = tmp_path / "a.rar"
        archive.write_bytes(b"x")
        with pytest.raises(ManagerError, match="Unsupported archive type"):
            extract_archive(archive, tmp_path / "out")

    def test_corrupt_zip(self, tmp_path):
        archive = tmp_path / "a.zip"
        archive.write_bytes(b"not a zip")
        with pytest.raises(ManagerError, match="Failed to extract"):
            extract_archive(archive, tmp_path / "out")


class TestNewestDiskImage:
    def test_picks_newest_candidate(self, tmp_path):
        old = tmp_path / "a.vhd"
        new = tmp_path / "sub" / "b.raw"
        new.parent.mkdir()
        old.write_bytes(b"1")
        new.write_bytes(b"2")
        (tmp_path / "notes.txt").write_text("ignored")
        os.utime(old, (1000, 1000))
        os.utime(new, (2000, 2000))
        assert newest_disk_image(tmp_path) == new

    def test_none(self, tmp_path):
        (tmp_path / "readme").write_text("x")
        assert newest_disk_image(tmp_path) is None


@pytest.fixture
def ubuntu_identity():
    return RemoteArtifactIdentity(catalog.resolve("20.04"), TS)


def _ubuntu_session(spec, archive_bytes, digest_of=None):
    digest = hashlib.sha256(digest_of if digest_of is not None else archive_bytes).hexdigest()
    manifest = f"{digest} *{spec.archive_name}\n".encode("utf-8")
    return FakeSession({archive_url(spec): archive_bytes, checksum_url(spec): manifest})


class TestImageFetcher:
    def test_acquire_zip_with_vhd(self, tmp_path, ubuntu_identity):
        spec = ubuntu_identity.distro
        archive_bytes = _zip_bytes({"livecd.ubuntu-cpc.azure.vhd": b"disk"})
        cache = ImageCache(tmp_path)
        fetcher = ImageFetcher(cache, _ubuntu_session(spec, archive_bytes))
        image = fetcher.acquire(ubuntu_identity)
        assert image == cache.path_for(spec, TS, "image")
        assert image.read_bytes() == b"disk"
        assert cache.has_archive(spec, TS)
        assert not (cache.directory(spec) / f"ubuntu-{TS}.extract").exists()

    def test_acquire_zip_with_vhdx_keeps_distinct_name(self, tmp_path, ubuntu_identity):
        spec = ubuntu_identity.distro
        archive_bytes = _zip_bytes({"disk.vhdx": b"dynamic"})
        cache = ImageCache(tmp_path)
        image = ImageFetcher(cache, _ubuntu_session(spec, archive_bytes)).acquire(ubuntu_identity)
        assert image.name == f"ubuntu-{TS}.source.vhdx"
        assert image != cache.path_for(spec, TS, "converted")
        assert image.read_bytes() == b"dynamic"

    def test_cached_archive_is_not_downloaded(self, tmp_path, ubuntu_identity):
        spec = ubuntu_identity.distro
        archive_bytes = _zip_bytes({"x.vhd": b"disk"})
        cache = ImageCache(tmp_path)
        cache.ensure(spec)
        cache.path_for(spec, TS, "archive").write_bytes(archive_bytes)
        session = _ubuntu_session(spec, archive_bytes)
        ImageFetcher(cache, session).fetch(ubuntu_identity)
        assert session.calls == [checksum_url(spec)]

    def test_corrupt_archive_raises_and_discards(self, tmp_path, ubuntu_identity):
        spec = ubuntu_identity.distro
        good = _zip_bytes({"x.vhd": b"disk"})
        corrupt = bytes([good[0] ^ 0xFF]) + good[1:]
        cache = ImageCache(tmp_path)
        fetcher = ImageFetcher(cache, _ubuntu_session(spec, corrupt, digest_of=good))
        with pytest.raises(IntegrityError):
            fetcher.acquire(ubuntu_identity)
        assert not cache.has_archive(spec, TS)
        assert not cache.has_converted_image(spec, TS)
        assert list(cache.directory(spec).iterdir()) == []

    def test_archive_without_image(self, tmp_path, ubuntu_identity):
        spec = ubuntu_identity.distro
        archive_bytes = _zip_bytes({"README": b"nothing here"})
        cache = ImageCache(tmp_path)
        fetcher = ImageFetcher(cache, _ubuntu_session(spec, archive_bytes))
        with pytest.raises(ManagerError, match="No disk image"):
            fetcher.acquire(ubuntu_identity)
        assert list(cache.directory(spec).iterdir()) == []

    def test_manifest_fetch_failure(self, tmp_path, ubuntu_identity):
        spec = ubuntu_identity.distro
        cache = ImageCache(tmp_path)
        session = MagicMock()
        session.get.return_value = MagicMock(headers={}, iter_content=MagicMock(return_value=[b"zip"]))
        with patch("cloudvm.fetch.fetch_text", side_effect=NetworkError("manifest down")):
            with pytest.raises(NetworkError, match="manifest down"):
                ImageFetcher(cache, session).acquire(ubuntu_identity)
        assert not cache.has_archive(spec, TS)

    def test_raw_image_converted_to_vhd(self, tmp_path):
        spec = catalog.resolve("11")
        identity = RemoteArtifactIdentity(spec, TS)
        archive = tmp_path / "debian.tar.xz"
        _tar_xz(archive, {"disk.raw": b"raw"})
        archive_bytes = archive.read_bytes()
        manifest = f"{hashlib.sha512(archive_bytes).hexdigest()}  {spec.archive_name}\n".encode("utf-8")
        cache = ImageCache(tmp_path / "cache")
        session = FakeSession({archive_url(spec): archive_bytes, checksum_url(spec): manifest})

        def fake_raw_to_vhd(source, destination):
            destination.write_bytes(b"vhd:" + source.read_bytes())
            return destination

        with patch("cloudvm.fetch.raw_to_vhd", side_effect=fake_raw_to_vhd) as mock_convert:
            image = ImageFetcher(cache, session).acquire(identity)
        assert image == cache.path_for(spec, TS, "image")
        assert image.read_bytes() == b"vhd:raw"
        assert mock_convert.call_args[0][0].name == "disk.raw"
        assert not list(cache.directory(spec).glob("*.raw"))
