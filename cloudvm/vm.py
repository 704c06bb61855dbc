"""Provisioning pipeline: base image, per-VM disk, provisioning ISO, hand-off to the hypervisor."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import requests

from cloudvm.cache import ImageCache
from cloudvm.convert import DiskImageConverter
from cloudvm.exceptions import ConfigurationError
from cloudvm.fetch import ImageFetcher
from cloudvm.hyperv import VirtualMachineManager
from cloudvm.models import VMConfig, Workspace
from cloudvm.provision import ProvisioningBundleBuilder
from cloudvm.remote import RemoteImageResolver
from cloudvm.utils import ensure_directory, http_session, log, parse_size_to_bytes


class VMProvisioner:
    def __init__(
        self,
        cfg: VMConfig,
        workspace: Workspace,
        hypervisor: VirtualMachineManager,
        session: Optional[requests.Session] = None,
        converter: Optional[DiskImageConverter] = None,
        builder: Optional[ProvisioningBundleBuilder] = None,
    ) -> None:
        self.cfg = cfg
        self.workspace = workspace
        self.hypervisor = hypervisor
        session = session or http_session()
        self.cache = ImageCache(workspace.cache_dir)
        self.resolver = RemoteImageResolver(self.cache, session)
        self.fetcher = ImageFetcher(self.cache, session)
        self.converter = converter or DiskImageConverter()
        self.builder = builder or ProvisioningBundleBuilder(workspace.storage_dir)
        self.work_image = workspace.storage_dir / f"{cfg.vm_name}.vhdx"

    def ensure_base_image(self) -> Path:
        """Return the shared converted image for the requested distro, fetching it on a cache miss."""
        spec = self.cfg.distro
        identity = self.resolver.identify(spec, force_refresh=self.cfg.image_refresh)
        timestamp = identity.build_timestamp
        converted = self.cache.path_for(spec, timestamp, "converted")
        if self.cache.has_converted_image(spec, timestamp):
            log("INFO", f"Using cached image: {converted}")
            return converted

        self.cache.purge_stale_converted(spec, keep_timestamp=timestamp)
        image = self.fetcher.acquire(identity)
        try:
            self.converter.normalize_to_dynamic(image, converted)
        except BaseException:
            self.cache.discard(spec, timestamp)
            raise
        if self.cfg.image_cleanup:
            self.cache.tidy(spec, timestamp)
        return converted

    def prepare_work_image(self, base_image: Path) -> Path:
        if self.work_image.exists():
            raise ConfigurationError(
                f"Disk {self.work_image} already exists; remove it or choose another VM_NAME"
            )
        ensure_directory(self.work_image.parent)
        log("INFO", f"Creating working disk {self.work_image}")
        try:
            self.converter.normalize_to_dynamic(base_image, self.work_image, keep_source=True)
            self.converter.resize_if_needed(self.work_image, parse_size_to_bytes(self.cfg.disk_size))
        except BaseException:
            self.work_image.unlink(missing_ok=True)
            raise
        return self.work_image

    def prepare(self) -> Tuple[Path, Path]:
        """Produce the per-VM disk and the provisioning ISO."""
        base_image = self.ensure_base_image()
        disk = self.prepare_work_image(base_image)
        iso = self.builder.build(self.cfg)
        return disk, iso

    def deploy(self, start: bool = True) -> Tuple[Path, Path]:
        if self.hypervisor.exists(self.cfg.vm_name):
            raise ConfigurationError(f"VM '{self.cfg.vm_name}' already exists")
        disk, iso = self.prepare()
        self.hypervisor.create(self.cfg, disk)
        self.hypervisor.attach_iso(self.cfg.vm_name, iso)
        if start:
            self.hypervisor.start(self.cfg.vm_name)
        return disk, iso
