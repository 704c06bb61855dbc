"""Remote image coordinates and build-timestamp resolution."""

from __future__ import annotations

from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import requests

from cloudvm.cache import ImageCache
from cloudvm.constants import TIMESTAMP_FORMAT
from cloudvm.exceptions import NetworkError
from cloudvm.models import DistroSpec, RemoteArtifactIdentity
from cloudvm.utils import REQUEST_TIMEOUT, http_session, log


def manifest_url(spec: DistroSpec) -> str:
    return f"{spec.base_url}/{spec.file_name}.{spec.manifest_suffix}"


def archive_url(spec: DistroSpec) -> str:
    return f"{spec.base_url}/{spec.archive_name}"


def checksum_url(spec: DistroSpec) -> str:
    return f"{spec.base_url}/{spec.checksum_file_name}"


def format_last_modified(header: str) -> str:
    """Normalize an HTTP Last-Modified value to a UTC ``YYYYMMDDHHMMSS`` string."""
    try:
        stamp = parsedate_to_datetime(header)
    except (TypeError, ValueError) as exc:
        raise NetworkError(f"Unparseable Last-Modified header '{header}': {exc}")
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class RemoteImageResolver:
    def __init__(self, cache: ImageCache, session: Optional[requests.Session] = None) -> None:
        self.cache = cache
        self.session = session or http_session()

    def resolve_latest_timestamp(
        self,
        spec: DistroSpec,
        cached_timestamp: Optional[str] = None,
        force_refresh: bool = False,
    ) -> str:
        if cached_timestamp and not force_refresh:
            log("INFO", f"Using cached base image timestamp {cached_timestamp} (set IMAGE_REFRESH=1 to check for updates)")
            return cached_timestamp

        url = manifest_url(spec)
        log("INFO", f"Checking latest build of {spec.display_name or spec.file_name}: {url}")
        try:
            response = self.session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NetworkError(f"Failed to query {url}: {exc}")

        last_modified = response.headers.get("Last-Modified")
        if not last_modified:
            raise NetworkError(f"No Last-Modified header returned for {url}")
        timestamp = format_last_modified(last_modified)
        self.cache.write_timestamp(spec, timestamp)
        log("INFO", f"Latest build timestamp: {timestamp}")
        return timestamp

    def identify(self, spec: DistroSpec, force_refresh: bool = False) -> RemoteArtifactIdentity:
        cached = self.cache.read_timestamp(spec)
        timestamp = self.resolve_latest_timestamp(spec, cached, force_refresh)
        return RemoteArtifactIdentity(spec, timestamp)
