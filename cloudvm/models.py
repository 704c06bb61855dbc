"""Data models for cloudvm."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple


@dataclass(frozen=True)
class DistroSpec:
    os: str
    version_alias: str
    version_name: str
    release_channel: str
    mirror: str
    file_name: str
    archive_extension: str
    checksum_file_name: str
    manifest_suffix: str
    family: str = "debian"
    azure: bool = False
    packages: Tuple[str, ...] = ()
    default_net_dialect: Optional[str] = None
    display_name: str = ""

    @property
    def base_url(self) -> str:
        return f"{self.mirror.rstrip('/')}/{self.version_name}/{self.release_channel}"

    @property
    def archive_name(self) -> str:
        return f"{self.file_name}.{self.archive_extension}"


class RemoteArtifactIdentity(NamedTuple):
    distro: DistroSpec
    build_timestamp: str


@dataclass
class StaticNetwork:
    address: str
    interface: str = "eth0"
    mac_address: Optional[str] = None
    netmask: Optional[str] = None
    network: Optional[str] = None
    gateway: Optional[str] = None
    broadcast: Optional[str] = None
    nameservers: List[str] = field(default_factory=list)
    search_domain: Optional[str] = None


@dataclass
class Workspace:
    cache_dir: Path
    storage_dir: Path


@dataclass
class VMConfig:
    vm_name: str
    hostname: str
    domain_name: str
    distro: DistroSpec
    cpus: int
    memory_mb: int
    disk_size: str
    username: str
    password: str
    generation: int = 2
    dynamic_memory: bool = False
    memory_min_mb: int = 512
    memory_max_mb: int = 2048
    secure_boot: bool = False
    switch_name: Optional[str] = None
    vlan_id: Optional[int] = None
    mac_address: Optional[str] = None
    storage_path: Optional[Path] = None
    interface: str = "eth0"
    nameservers: List[str] = None  # type: ignore[assignment]
    static_network: Optional[StaticNetwork] = None
    net_dialect: Optional[str] = None
    locale: str = "en_US.UTF-8"
    timezone: str = "UTC"
    keyboard_layout: str = "us"
    keyboard_model: Optional[str] = None
    keyboard_options: Optional[str] = None
    password_hashed: bool = False
    custom_user_data_path: Optional[Path] = None
    power_state: str = "reboot"
    image_refresh: bool = False
    image_cleanup: bool = False

    def __post_init__(self):
        if self.nameservers is None:
            self.nameservers = []

    @property
    def fqdn(self) -> str:
        if not self.domain_name:
            return self.hostname
        return f"{self.hostname}.{self.domain_name}"
