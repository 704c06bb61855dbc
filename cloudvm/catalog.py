"""Built-in distribution catalog for cloudvm."""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional

from cloudvm.constants import CHECKSUM_ALGORITHMS
from cloudvm.exceptions import ConfigurationError
from cloudvm.models import DistroSpec

UBUNTU_MIRROR = "https://cloud-images.ubuntu.com/releases"
DEBIAN_MIRROR = "https://cloud.debian.org/images/cloud"

_UBUNTU_PACKAGES = ("linux-tools-virtual", "linux-cloud-tools-virtual")
_DEBIAN_PACKAGES = ("hyperv-daemons",)


def _ubuntu(version: str, codename: str, archive_extension: str) -> DistroSpec:
    return DistroSpec(
        os="ubuntu",
        version_alias=version,
        version_name=codename,
        release_channel="release",
        mirror=UBUNTU_MIRROR,
        file_name=f"ubuntu-{version}-server-cloudimg-amd64-azure",
        archive_extension=archive_extension,
        checksum_file_name="SHA256SUMS",
        manifest_suffix="vhd.manifest",
        family="ubuntu",
        azure=True,
        packages=_UBUNTU_PACKAGES,
        display_name=f"Ubuntu {version} ({codename})",
    )


def _debian(version: str, codename: str) -> DistroSpec:
    return DistroSpec(
        os="debian",
        version_alias=version,
        version_name=codename,
        release_channel="latest",
        mirror=DEBIAN_MIRROR,
        file_name=f"debian-{version}-genericcloud-amd64",
        archive_extension="tar.xz",
        checksum_file_name="SHA512SUMS",
        manifest_suffix="json",
        family="debian",
        packages=_DEBIAN_PACKAGES,
        default_net_dialect="ENI-file",
        display_name=f"Debian {version} ({codename})",
    )


DISTROS: Dict[str, DistroSpec] = {
    "18.04": _ubuntu("18.04", "bionic", "vhd.zip"),
    "20.04": _ubuntu("20.04", "focal", "vhd.zip"),
    "22.04": _ubuntu("22.04", "jammy", "vhd.tar.gz"),
    "24.04": _ubuntu("24.04", "noble", "vhd.tar.gz"),
    "10": _debian("10", "buster"),
    "11": _debian("11", "bullseye"),
    "12": _debian("12", "bookworm"),
}

# Codename redirects onto the numeric entries above.
ALIASES: Dict[str, str] = {
    "bionic": "18.04",
    "focal": "20.04",
    "jammy": "22.04",
    "noble": "24.04",
    "buster": "10",
    "bullseye": "11",
    "bookworm": "12",
}


def available() -> List[str]:
    return sorted(DISTROS) + sorted(ALIASES)


def resolve(alias: str) -> DistroSpec:
    key = ALIASES.get(alias, alias)
    try:
        return DISTROS[key]
    except KeyError:
        available_list = "\n    ".join(available())
        raise ConfigurationError(
            f"Unknown distro '{alias}'.\n"
            f"  Available distributions:\n"
            f"    {available_list}\n"
            f"  Use --list-distros to see details."
        ) from None


def with_overrides(spec: DistroSpec, release_channel: Optional[str] = None, mirror: Optional[str] = None) -> DistroSpec:
    """Return ``spec`` with the request's release channel / mirror applied."""
    changes = {}
    if release_channel:
        changes["release_channel"] = release_channel
    if mirror:
        changes["mirror"] = mirror
    return replace(spec, **changes) if changes else spec


def checksum_algorithm(spec: DistroSpec) -> str:
    try:
        return CHECKSUM_ALGORITHMS[spec.checksum_file_name]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported checksum file '{spec.checksum_file_name}' for {spec.os} {spec.version_alias}; "
            f"supported: {', '.join(sorted(CHECKSUM_ALGORITHMS))}"
        ) from None


def validate() -> List[str]:
    """Return consistency problems in the built-in table (empty when sound)."""
    errors: List[str] = []
    for alias, target in ALIASES.items():
        if target not in DISTROS:
            errors.append(f"[{alias}] redirects to missing entry '{target}'")
        elif DISTROS[target].version_name != alias:
            errors.append(f"[{alias}] redirects to '{target}' whose codename is '{DISTROS[target].version_name}'")
    for key, spec in DISTROS.items():
        if spec.version_alias != key:
            errors.append(f"[{key}] version_alias is '{spec.version_alias}'")
        if spec.checksum_file_name not in CHECKSUM_ALGORITHMS:
            errors.append(f"[{key}] unsupported checksum file '{spec.checksum_file_name}'")
        if not spec.mirror.startswith(("http://", "https://")):
            errors.append(f"[{key}] mirror must start with http:// or https://")
        if spec.version_name not in ALIASES:
            errors.append(f"[{key}] codename '{spec.version_name}' has no alias entry")
    return errors
