"""Configuration loading and environment variable parsing for cloudvm."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from cloudvm import catalog
from cloudvm.constants import CACHE_DIR, POWER_STATE_MODES, VM_NAME_RE
from cloudvm.exceptions import ConfigurationError
from cloudvm.hyperv import VirtualMachineManager
from cloudvm.models import StaticNetwork, VMConfig, Workspace
from cloudvm.network import select_dialect
from cloudvm.utils import (
    generate_password,
    get_env,
    get_env_bool,
    log,
    normalize_mac,
    parse_int_env,
    validate_disk_size,
)

_STATIC_FIELDS = ("NET_ADDRESS", "NET_NETMASK", "NET_NETWORK", "NET_GATEWAY", "NET_BROADCAST")


def _optional(name: str) -> Optional[str]:
    value = get_env(name)
    if value is None:
        return None
    return value.strip() or None


def parse_nameservers(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.replace(";", ",").split(",") if item.strip()]


def parse_static_network(
    interface: str,
    mac_address: Optional[str],
    nameservers: List[str],
    search_domain: Optional[str],
) -> Optional[StaticNetwork]:
    """Build the static network request; ``None`` means DHCP autoconfig."""
    if not any(_optional(name) for name in _STATIC_FIELDS):
        return None
    address = _optional("NET_ADDRESS")
    if not address:
        raise ConfigurationError("Static networking requested (NET_* set) but NET_ADDRESS is missing")
    return StaticNetwork(
        address=address,
        interface=interface,
        mac_address=mac_address,
        netmask=_optional("NET_NETMASK"),
        network=_optional("NET_NETWORK"),
        gateway=_optional("NET_GATEWAY"),
        broadcast=_optional("NET_BROADCAST"),
        nameservers=list(nameservers),
        search_domain=search_domain,
    )


def parse_env() -> VMConfig:
    distro = catalog.with_overrides(
        catalog.resolve((get_env("DISTRO", "20.04") or "20.04").strip()),
        release_channel=_optional("IMAGE_RELEASE"),
        mirror=_optional("IMAGE_MIRROR"),
    )

    vm_name = _optional("VM_NAME") or f"{distro.os}-{distro.version_alias}"
    if not VM_NAME_RE.match(vm_name):
        raise ConfigurationError(
            f"Invalid VM_NAME '{vm_name}'. Use letters, digits, '.', '_' or '-' (max 63 characters)"
        )
    hostname = _optional("VM_HOSTNAME") or vm_name
    domain_name = get_env("DOMAIN_NAME", "domain.local")
    domain_name = (domain_name or "").strip()

    cpus = parse_int_env("CPUS", "2")
    memory_mb = parse_int_env("MEMORY", "1024", min_val=32)
    dynamic_memory = get_env_bool("DYNAMIC_MEMORY", False)
    memory_min_mb = parse_int_env("MEMORY_MIN", "512", min_val=32)
    memory_max_mb = parse_int_env("MEMORY_MAX", "2048", min_val=32)
    if dynamic_memory and not memory_min_mb <= memory_mb <= memory_max_mb:
        raise ConfigurationError(
            f"Dynamic memory requires MEMORY_MIN <= MEMORY <= MEMORY_MAX "
            f"(got {memory_min_mb} / {memory_mb} / {memory_max_mb})"
        )
    disk_size = validate_disk_size((get_env("DISK_SIZE", "16G") or "16G").strip())

    generation = parse_int_env("VM_GENERATION", "2", min_val=1, max_val=2)
    secure_boot = get_env_bool("SECURE_BOOT", False)
    if secure_boot and generation != 2:
        raise ConfigurationError("SECURE_BOOT requires VM_GENERATION=2")

    vlan_id: Optional[int] = None
    if _optional("VLAN_ID"):
        vlan_id = parse_int_env("VLAN_ID", "1", min_val=1, max_val=4094)
    mac_raw = _optional("VM_MAC")
    mac_address = normalize_mac(mac_raw) if mac_raw else None
    storage_raw = _optional("VM_STORAGE_PATH")

    interface = _optional("NET_INTERFACE") or "eth0"
    nameservers = parse_nameservers(get_env("NAMESERVERS", "1.1.1.1,1.0.0.1"))
    static_network = parse_static_network(interface, mac_address, nameservers, domain_name or None)

    net_dialect = _optional("NET_CONFIG_TYPE")
    if net_dialect:
        net_dialect = select_dialect(net_dialect, distro)
        if static_network is None:
            log("WARN", "NET_CONFIG_TYPE is set but no static NET_* fields; the guest will use DHCP")

    power_state = (get_env("POWER_STATE", "reboot") or "reboot").strip().lower()
    if power_state not in POWER_STATE_MODES:
        raise ConfigurationError(
            f"Unknown POWER_STATE '{power_state}'. Supported: {', '.join(sorted(POWER_STATE_MODES))}"
        )

    custom_user_data_path: Optional[Path] = None
    custom_raw = _optional("CUSTOM_USER_DATA")
    if custom_raw:
        candidate = Path(custom_raw)
        if not candidate.exists():
            raise ConfigurationError(f"CUSTOM_USER_DATA file not found: {candidate}")
        if not candidate.is_file():
            raise ConfigurationError(f"CUSTOM_USER_DATA must point to a regular file: {candidate}")
        custom_user_data_path = candidate

    username = _optional("GUEST_USERNAME") or "user"
    password = get_env("GUEST_PASSWORD")
    if not password:
        password = generate_password()
        log("INFO", f"Generated password for '{username}': {password}")

    return VMConfig(
        vm_name=vm_name,
        hostname=hostname,
        domain_name=domain_name,
        distro=distro,
        cpus=cpus,
        memory_mb=memory_mb,
        disk_size=disk_size,
        username=username,
        password=password,
        generation=generation,
        dynamic_memory=dynamic_memory,
        memory_min_mb=memory_min_mb,
        memory_max_mb=memory_max_mb,
        secure_boot=secure_boot,
        switch_name=_optional("VM_SWITCH"),
        vlan_id=vlan_id,
        mac_address=mac_address,
        storage_path=Path(storage_raw) if storage_raw else None,
        interface=interface,
        nameservers=nameservers,
        static_network=static_network,
        net_dialect=net_dialect,
        locale=_optional("LOCALE") or "en_US.UTF-8",
        timezone=_optional("TIMEZONE") or "UTC",
        keyboard_layout=_optional("KEYBOARD_LAYOUT") or "us",
        keyboard_model=_optional("KEYBOARD_MODEL"),
        keyboard_options=_optional("KEYBOARD_OPTIONS"),
        password_hashed=get_env_bool("GUEST_PASSWORD_HASHED", False),
        custom_user_data_path=custom_user_data_path,
        power_state=power_state,
        image_refresh=get_env_bool("IMAGE_REFRESH", False),
        image_cleanup=get_env_bool("IMAGE_CLEANUP", False),
    )


def resolve_workspace(cfg: VMConfig, hypervisor: Optional[VirtualMachineManager] = None) -> Workspace:
    """Cache root from CACHE_DIR, VM storage from VM_STORAGE_PATH or the host default."""
    cache_raw = _optional("CACHE_DIR")
    cache_dir = Path(cache_raw) if cache_raw else CACHE_DIR
    if cfg.storage_path is not None:
        storage_dir = cfg.storage_path
    elif hypervisor is not None:
        storage_dir = hypervisor.default_storage_paths()[1]
    else:
        raise ConfigurationError("VM_STORAGE_PATH is not set and no hypervisor is available to report a default")
    return Workspace(cache_dir=cache_dir, storage_dir=storage_dir)
