"""VM lifecycle collaborator: the interface the pipeline hands its outputs to, plus Hyper-V."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Tuple

from cloudvm.constants import SECURE_BOOT_TEMPLATE
from cloudvm.exceptions import ConfigurationError, ManagerError
from cloudvm.models import VMConfig
from cloudvm.utils import log, ps_quote, run_powershell


class VirtualMachineManager(ABC):
    """Operations the provisioning pipeline needs from a hypervisor."""

    @abstractmethod
    def default_storage_paths(self) -> Tuple[Path, Path]:
        """Return ``(virtual machine path, virtual hard disk path)``."""
        ...

    @abstractmethod
    def exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def create(self, cfg: VMConfig, disk: Path) -> None:
        ...

    @abstractmethod
    def attach_iso(self, name: str, iso: Path) -> None:
        ...

    @abstractmethod
    def start(self, name: str) -> None:
        ...


class HyperVManager(VirtualMachineManager):
    def default_storage_paths(self) -> Tuple[Path, Path]:
        result = run_powershell(
            "Get-VMHost | Select-Object VirtualMachinePath, VirtualHardDiskPath | ConvertTo-Json -Compress"
        )
        try:
            data = json.loads(result.stdout)
        except ValueError as exc:
            raise ManagerError(f"Unexpected Get-VMHost output: {exc}")
        return Path(data["VirtualMachinePath"]), Path(data["VirtualHardDiskPath"])

    def exists(self, name: str) -> bool:
        result = run_powershell(
            f"if (Get-VM -Name {ps_quote(name)} -ErrorAction SilentlyContinue) {{ 'yes' }} else {{ 'no' }}"
        )
        return result.stdout.strip() == "yes"

    def _switch(self, cfg: VMConfig) -> str:
        if cfg.switch_name:
            return cfg.switch_name
        result = run_powershell("Get-VMSwitch | Select-Object -First 1 -ExpandProperty Name")
        name = result.stdout.strip()
        if not name:
            raise ConfigurationError("No Hyper-V virtual switch found; create one or set VM_SWITCH")
        log("INFO", f"Using virtual switch '{name}'")
        return name

    def create(self, cfg: VMConfig, disk: Path) -> None:
        name = ps_quote(cfg.vm_name)
        memory = cfg.memory_mb * 1024 * 1024
        script = [
            f"New-VM -Name {name} -Generation {cfg.generation} -MemoryStartupBytes {memory}"
            f" -VHDPath {ps_quote(disk)} -SwitchName {ps_quote(self._switch(cfg))}"
            + (f" -Path {ps_quote(cfg.storage_path)}" if cfg.storage_path else "")
            + " | Out-Null",
            f"Set-VMProcessor -VMName {name} -Count {cfg.cpus}",
        ]
        if cfg.dynamic_memory:
            script.append(
                f"Set-VMMemory -VMName {name} -DynamicMemoryEnabled $true"
                f" -MinimumBytes {cfg.memory_min_mb * 1024 * 1024} -MaximumBytes {cfg.memory_max_mb * 1024 * 1024}"
            )
        else:
            script.append(f"Set-VMMemory -VMName {name} -DynamicMemoryEnabled $false")
        if cfg.mac_address:
            script.append(
                f"Set-VMNetworkAdapter -VMName {name} -StaticMacAddress "
                f"{ps_quote(cfg.mac_address.replace(':', '').upper())}"
            )
        if cfg.vlan_id is not None:
            script.append(f"Set-VMNetworkAdapterVlan -VMName {name} -Access -VlanId {cfg.vlan_id}")
        if cfg.generation == 2:
            if cfg.secure_boot:
                script.append(
                    f"Set-VMFirmware -VMName {name} -EnableSecureBoot On"
                    f" -SecureBootTemplate {ps_quote(SECURE_BOOT_TEMPLATE)}"
                )
            else:
                script.append(f"Set-VMFirmware -VMName {name} -EnableSecureBoot Off")
        log("INFO", f"Creating VM {cfg.vm_name} (generation {cfg.generation}, {cfg.cpus} CPUs, {cfg.memory_mb} MiB)")
        run_powershell("; ".join(script))
        log("SUCCESS", f"VM {cfg.vm_name} created")

    def attach_iso(self, name: str, iso: Path) -> None:
        run_powershell(f"Add-VMDvdDrive -VMName {ps_quote(name)} -Path {ps_quote(iso)}")
        log("INFO", f"Attached provisioning ISO {iso.name}")

    def start(self, name: str) -> None:
        run_powershell(f"Start-VM -Name {ps_quote(name)}")
        log("SUCCESS", f"VM {name} started")
