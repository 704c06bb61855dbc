"""Base image download, checksum verification and extraction."""

from __future__ import annotations

import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Optional

import requests

from cloudvm.cache import ImageCache
from cloudvm.catalog import checksum_algorithm
from cloudvm.constants import DISK_IMAGE_EXTENSIONS
from cloudvm.convert import raw_to_vhd
from cloudvm.exceptions import IntegrityError, ManagerError
from cloudvm.models import RemoteArtifactIdentity
from cloudvm.remote import archive_url, checksum_url
from cloudvm.utils import download_file, fetch_text, file_digest, http_session, log


def manifest_lists_digest(manifest: str, digest: str) -> bool:
    """True if ``digest`` is one of the whitespace separated tokens of ``manifest``."""
    wanted = digest.lower()
    for line in manifest.splitlines():
        for token in line.split():
            if token.lstrip("*").lower() == wanted:
                return True
    return False


def extract_archive(archive: Path, destination: Path) -> None:
    name = archive.name.lower()
    log("INFO", f"Extracting {archive.name}...")
    try:
        if name.endswith(".zip"):
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(destination)
        elif name.endswith((".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar")):
            with tarfile.open(archive, "r:*") as tf:
                if hasattr(tarfile, "data_filter"):
                    tf.extractall(destination, filter="data")
                else:  # pragma: no cover
                    tf.extractall(destination)
        else:
            raise ManagerError(f"Unsupported archive type: {archive.name}")
    except (zipfile.BadZipFile, tarfile.TarError, EOFError, OSError) as exc:
        raise ManagerError(f"Failed to extract {archive.name}: {exc}")
    log("SUCCESS", "Image extracted")


def newest_disk_image(directory: Path) -> Optional[Path]:
    """Pick the most recently written disk image below ``directory``."""
    candidates = [
        p
        for p in directory.rglob("*")
        if p.is_file() and p.suffix.lower().lstrip(".") in DISK_IMAGE_EXTENSIONS
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


class ImageFetcher:
    def __init__(self, cache: ImageCache, session: Optional[requests.Session] = None) -> None:
        self.cache = cache
        self.session = session or http_session()

    def fetch(self, identity: RemoteArtifactIdentity) -> Path:
        """Download (unless cached) and verify the archive for ``identity``."""
        spec, timestamp = identity
        self.cache.ensure(spec)
        archive = self.cache.path_for(spec, timestamp, "archive")
        if self.cache.has_archive(spec, timestamp):
            log("INFO", f"Using cached archive {archive}")
        else:
            download_file(self.session, archive_url(spec), archive, label="Downloading base image")
        self.verify(identity, archive)
        return archive

    def verify(self, identity: RemoteArtifactIdentity, archive: Path) -> None:
        spec = identity.distro
        algorithm = checksum_algorithm(spec)
        manifest = fetch_text(self.session, checksum_url(spec))
        digest = file_digest(archive, algorithm)
        if not manifest_lists_digest(manifest, digest):
            raise IntegrityError(
                f"{algorithm} of {archive.name} ({digest}) is not listed in {spec.checksum_file_name}"
            )
        log("SUCCESS", f"{algorithm} checksum verified")

    def extract(self, identity: RemoteArtifactIdentity, archive: Path) -> Path:
        """Extract ``archive`` and normalize its disk image to ``<os>-<timestamp>.vhd``."""
        spec, timestamp = identity
        staging = self.cache.directory(spec) / f"{spec.os}-{timestamp}.extract"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        try:
            extract_archive(archive, staging)
            candidate = newest_disk_image(staging)
            if candidate is None:
                raise ManagerError(
                    f"No disk image ({', '.join(DISK_IMAGE_EXTENSIONS)}) found in {archive.name}"
                )
            return self.normalize(identity, candidate)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def normalize(self, identity: RemoteArtifactIdentity, candidate: Path) -> Path:
        spec, timestamp = identity
        extension = candidate.suffix.lower().lstrip(".")
        if extension == "raw":
            target = self.cache.path_for(spec, timestamp, "image")
            raw_to_vhd(candidate, target)
            candidate.unlink(missing_ok=True)
        else:
            target = self.cache.path_for(spec, timestamp, "image", extension)
            candidate.replace(target)
        log("INFO", f"Base image normalized to {target.name}")
        return target

    def acquire(self, identity: RemoteArtifactIdentity) -> Path:
        """Fetch, verify and extract; on any failure the timestamp's artifacts are removed."""
        try:
            archive = self.fetch(identity)
            return self.extract(identity, archive)
        except BaseException:
            self.cache.discard(identity.distro, identity.build_timestamp)
            raise
