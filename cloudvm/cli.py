"""CLI entry points for cloudvm."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from cloudvm import catalog
from cloudvm.config import parse_env, resolve_workspace
from cloudvm.constants import _SENSITIVE_FIELDS
from cloudvm.exceptions import ManagerError
from cloudvm.hyperv import HyperVManager
from cloudvm.models import VMConfig
from cloudvm.remote import archive_url, checksum_url, manifest_url
from cloudvm.utils import log
from cloudvm.vm import VMProvisioner


def list_distros() -> None:
    """Print available distributions and their aliases."""
    redirects = {}
    for alias, target in catalog.ALIASES.items():
        redirects.setdefault(target, []).append(alias)
    max_key = max(len(k) for k in catalog.DISTROS)
    for key in sorted(catalog.DISTROS):
        spec = catalog.DISTROS[key]
        aliases = ", ".join(redirects.get(key, []))
        print(f"  {key:<{max_key}}  {spec.display_name}  (aliases: {aliases or '-'}, archive={spec.archive_extension})")


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        elif dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                print(f"    {sub_field.name}: {getattr(value, sub_field.name)}")
        else:
            print(f"  {field.name}: {value}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision a Hyper-V VM from a cloud image")
    parser.add_argument("--list-distros", action="store_true", help="List available distributions and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and print image URLs, then exit")
    parser.add_argument("--refresh", action="store_true", help="Re-check the remote build timestamp (IMAGE_REFRESH)")
    parser.add_argument("--cleanup", action="store_true", help="Keep only the converted image in the cache (IMAGE_CLEANUP)")
    parser.add_argument("--no-start", action="store_true", help="Create the VM but do not start it")
    args = parser.parse_args(argv)

    if args.list_distros:
        list_distros()
        return 0

    try:
        cfg = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    if args.refresh:
        cfg.image_refresh = True
    if args.cleanup:
        cfg.image_cleanup = True

    if args.show_config:
        show_config(cfg)
        return 0

    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== Image ===")
        log("INFO", f"Manifest:    {manifest_url(cfg.distro)}")
        log("INFO", f"Archive:     {archive_url(cfg.distro)}")
        log("INFO", f"Checksums:   {checksum_url(cfg.distro)}")
        if cfg.static_network is not None:
            log("INFO", f"Network:     static {cfg.static_network.address} on {cfg.static_network.interface}")
        else:
            log("INFO", "Network:     DHCP")
        log("INFO", "=== Dry-run complete (nothing downloaded or created) ===")
        return 0

    log("INFO", f"Distribution: {cfg.distro.display_name} ({cfg.distro.version_alias})")
    log("INFO", f"VM: {cfg.vm_name} | Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Disk: {cfg.disk_size}")

    try:
        hypervisor = HyperVManager()
        workspace = resolve_workspace(cfg, hypervisor)
        provisioner = VMProvisioner(cfg, workspace, hypervisor)
        disk, iso = provisioner.deploy(start=not args.no_start)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

    log("SUCCESS", f"VM {cfg.vm_name} ready (disk: {disk}, provisioning ISO: {iso})")
    log("INFO", f"Login: {cfg.username} / {cfg.password}")
    return 0
