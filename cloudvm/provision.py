"""Provisioning volume generation (NoCloud documents plus the Azure ovf-env.xml envelope)."""

from __future__ import annotations

import base64
import string
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, register_namespace, tostring

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from cloudvm.constants import ISO_FLAGS, ISO_TOOLS, OVF_ENV_NS, WINDOWS_AZURE_NS
from cloudvm.exceptions import ConfigurationError, PackagingError
from cloudvm.models import VMConfig
from cloudvm.network import NetworkRendering, render_network, select_dialect
from cloudvm.utils import ensure_directory, find_tool, hash_password, log, run

CLOUD_INIT_HEADERS = ("#cloud-config", "#!", "#cloud-boothook", "#include", "#part-handler")


class _LiteralDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings as ``|`` blocks."""


def _str_presenter(dumper, data):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_LiteralDumper.add_representer(str, _str_presenter)


def _dump(document: Dict[str, object]) -> str:
    return yaml.dump(document, Dumper=_LiteralDumper, sort_keys=False, default_flow_style=False)


def azure_datasource() -> Dict[str, object]:
    return {
        "Azure": {
            "agent_command": ["/bin/systemctl", "disable", "walinuxagent.service"],
            "set_hostname": False,
            "apply_network_config": False,
        }
    }


def template_values(cfg: VMConfig) -> Dict[str, str]:
    """Named parameters an override user-data document may reference as ``$Name``."""
    net = cfg.static_network
    return {
        "VMName": cfg.vm_name,
        "VMHostname": cfg.hostname,
        "DomainName": cfg.domain_name,
        "FQDN": cfg.fqdn,
        "GuestAdminUsername": cfg.username,
        "GuestAdminPassword": cfg.password,
        "Locale": cfg.locale,
        "TimeZone": cfg.timezone,
        "KeyboardLayout": cfg.keyboard_layout,
        "KeyboardModel": cfg.keyboard_model or "",
        "KeyboardOptions": cfg.keyboard_options or "",
        "NetInterface": cfg.interface,
        "NetAddress": (net.address if net else "") or "",
        "NetNetmask": (net.netmask if net else "") or "",
        "NetNetwork": (net.network if net else "") or "",
        "NetGateway": (net.gateway if net else "") or "",
        "NetBroadcast": (net.broadcast if net else "") or "",
        "NameServers": ",".join(cfg.nameservers),
        "CloudInitPowerState": cfg.power_state,
        "ImageOS": cfg.distro.os,
        "ImageVersion": cfg.distro.version_alias,
    }


class ProvisioningBundleBuilder:
    def __init__(self, output_dir: Path, iso_tool: Optional[str] = None) -> None:
        self.output_dir = output_dir
        self.iso_tool = iso_tool

    def render_network(self, cfg: VMConfig) -> Optional[NetworkRendering]:
        if cfg.static_network is None:
            return None
        dialect = select_dialect(cfg.net_dialect, cfg.distro)
        log("INFO", f"Static networking on {cfg.static_network.interface} ({dialect})")
        return render_network(cfg.static_network, dialect)

    def render_metadata(self, cfg: VMConfig, instance_id: str, network: Optional[NetworkRendering] = None) -> str:
        lines = [
            "dsmode: local",
            f"instance-id: {instance_id}",
            f"local-hostname: {cfg.hostname}",
        ]
        if network is not None and network.interfaces:
            lines.append("network-interfaces: |")
            lines.extend(f"  {line}" for line in network.interfaces.splitlines())
        return "\n".join(lines) + "\n"

    def render_override(self, cfg: VMConfig) -> str:
        path = cfg.custom_user_data_path
        assert path is not None
        template = string.Template(path.read_text(encoding="utf-8"))
        content = template.safe_substitute(template_values(cfg))
        first_line = content.lstrip().split("\n", 1)[0].strip()
        if not any(first_line.startswith(h) for h in CLOUD_INIT_HEADERS):
            log(
                "WARN",
                f"CUSTOM_USER_DATA does not start with a recognized cloud-init header (got: '{first_line[:60]}')",
            )
        if first_line == "#cloud-config":
            try:
                parsed = yaml.safe_load(content)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"CUSTOM_USER_DATA contains invalid YAML: {exc}")
            if not isinstance(parsed, dict):
                log("WARN", "CUSTOM_USER_DATA: #cloud-config should contain a YAML mapping")
        log("INFO", f"Using custom user-data from {path}")
        return content

    def render_user_data(
        self,
        cfg: VMConfig,
        network: Optional[NetworkRendering] = None,
        generated_at: Optional[datetime] = None,
    ) -> str:
        if cfg.custom_user_data_path:
            return self.render_override(cfg)

        spec = cfg.distro
        user: Dict[str, object] = {
            "name": cfg.username,
            "groups": ["sudo"],
            "sudo": "ALL=(ALL) NOPASSWD:ALL",
            "shell": "/bin/bash",
            "lock_passwd": False,
        }
        if cfg.password_hashed:
            user["passwd"] = hash_password(cfg.password)
        else:
            user["plain_text_passwd"] = cfg.password

        keyboard: Dict[str, str] = {"layout": cfg.keyboard_layout}
        if cfg.keyboard_model:
            keyboard["model"] = cfg.keyboard_model
        if cfg.keyboard_options:
            keyboard["options"] = cfg.keyboard_options

        runcmd: List[List[str]] = [
            ["sh", "-c", "command -v eject >/dev/null 2>&1 && eject || true"],
            ["touch", "/etc/cloud/cloud-init.disabled"],
            ["localectl", "set-locale", f"LANG={cfg.locale}"],
            ["localectl", "set-keymap", cfg.keyboard_layout],
        ]
        if spec.azure:
            runcmd.append(["systemctl", "disable", "walinuxagent.service"])

        document: Dict[str, object] = {
            "hostname": cfg.hostname,
            "fqdn": cfg.fqdn,
            "manage_etc_hosts": True,
            "locale": cfg.locale,
            "timezone": cfg.timezone,
            "growpart": {"mode": "auto", "devices": ["/"], "ignore_growroot_disabled": False},
            "resize_rootfs": True,
            "package_update": True,
            "package_upgrade": True,
        }
        if spec.packages:
            document["packages"] = list(spec.packages)
        document["keyboard"] = keyboard
        document["users"] = ["default", user]
        document["ssh_pwauth"] = True
        document["chpasswd"] = {"expire": False}
        document["disable_root"] = True
        if network is not None:
            if network.write_files:
                document["write_files"] = [dict(entry) for entry in network.write_files]
            if network.bootcmd:
                document["bootcmd"] = [list(cmd) for cmd in network.bootcmd]
            runcmd.extend(list(cmd) for cmd in network.runcmd)
        document["runcmd"] = runcmd
        if cfg.nameservers:
            document["manage_resolv_conf"] = True
            resolv: Dict[str, object] = {"nameservers": list(cfg.nameservers)}
            if cfg.domain_name:
                resolv["searchdomains"] = [cfg.domain_name]
                resolv["domain"] = cfg.domain_name
            document["resolv_conf"] = resolv
        if spec.azure:
            document["datasource"] = azure_datasource()
        document["power_state"] = {
            "mode": cfg.power_state,
            "message": "First boot provisioning complete",
            "timeout": 15,
            "condition": True,
        }

        stamp = (generated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        header = f"#cloud-config\n# generated by cloudvm for {cfg.vm_name} at {stamp}\n"
        return header + _dump(document)

    def render_dscfg(self) -> str:
        return yaml.safe_dump({"datasource": azure_datasource()}, sort_keys=False, default_flow_style=False)

    def render_ovf_env(self, cfg: VMConfig, user_data: str, dscfg: str) -> str:
        register_namespace("oe", OVF_ENV_NS)
        register_namespace("wa", WINDOWS_AZURE_NS)

        def wa(tag: str) -> str:
            return f"{{{WINDOWS_AZURE_NS}}}{tag}"

        env = Element(f"{{{OVF_ENV_NS}}}Environment")
        section = SubElement(env, wa("ProvisioningSection"))
        SubElement(section, wa("Version")).text = "1.0"
        config_set = SubElement(section, wa("LinuxProvisioningConfigurationSet"))
        SubElement(config_set, wa("ConfigurationSetType")).text = "LinuxProvisioningConfiguration"
        SubElement(config_set, wa("HostName")).text = cfg.hostname
        SubElement(config_set, wa("UserName")).text = cfg.username
        if not cfg.password_hashed:
            SubElement(config_set, wa("UserPassword")).text = cfg.password
        SubElement(config_set, wa("DisableSshPasswordAuthentication")).text = "false"
        SubElement(config_set, wa("CustomData")).text = base64.b64encode(user_data.encode("utf-8")).decode("ascii")
        SubElement(config_set, wa("dscfg")).text = base64.b64encode(dscfg.encode("utf-8")).decode("ascii")

        platform = SubElement(env, wa("PlatformSettingsSection"))
        SubElement(platform, wa("Version")).text = "1.0"
        settings = SubElement(platform, wa("PlatformSettings"))
        SubElement(settings, wa("ProvisionGuestAgent")).text = "false"

        raw = tostring(env, encoding="unicode")
        body = parseString(raw).documentElement.toprettyxml(indent="  ").strip()
        return '<?xml version="1.0" encoding="utf-8"?>\n' + body + "\n"

    def iso_path(self, cfg: VMConfig) -> Path:
        return self.output_dir / f"{cfg.vm_name}-metadata.iso"

    def _iso_command(self) -> List[str]:
        tool = self.iso_tool or find_tool(list(ISO_TOOLS))
        if tool is None:
            raise PackagingError(f"No ISO mastering tool found (tried: {', '.join(ISO_TOOLS)})")
        if Path(tool).name.startswith("xorriso"):
            return [tool, "-as", "mkisofs"]
        return [tool]

    def master_iso(self, files: List[Path], iso: Path) -> Path:
        cmd = self._iso_command() + ["-output", str(iso), *ISO_FLAGS] + [str(f) for f in files]
        iso.unlink(missing_ok=True)
        try:
            result = run(cmd, check=False, capture_output=True)
        except FileNotFoundError:
            raise PackagingError(f"ISO mastering tool '{cmd[0]}' not found")
        if result.returncode != 0:
            raise PackagingError(f"{cmd[0]} failed ({result.returncode}): {(result.stderr or '').strip()}")
        if not iso.exists():
            raise PackagingError(f"{cmd[0]} reported success but {iso} was not created")
        return iso

    def build(self, cfg: VMConfig) -> Path:
        network = self.render_network(cfg)
        instance_id = str(uuid.uuid4())
        user_data = self.render_user_data(cfg, network)
        dscfg = self.render_dscfg()

        ensure_directory(self.output_dir)
        iso = self.iso_path(cfg)
        with tempfile.TemporaryDirectory(prefix="cloudvm-") as tmpdir:
            tmp = Path(tmpdir)
            documents = {
                "meta-data": self.render_metadata(cfg, instance_id, network),
                "user-data": user_data,
                "ovf-env.xml": self.render_ovf_env(cfg, user_data, dscfg),
            }
            if network is not None and network.network_config:
                documents["network-config"] = network.network_config
            files = []
            for name, content in documents.items():
                path = tmp / name
                path.write_text(content, encoding="utf-8", newline="\n")
                files.append(path)
            self.master_iso(files, iso)
        log("SUCCESS", f"Provisioning ISO written to {iso}")
        return iso
