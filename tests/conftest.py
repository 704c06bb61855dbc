"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from cloudvm import catalog
from cloudvm.models import StaticNetwork, VMConfig


@pytest.fixture
def ubuntu_spec():
    return catalog.resolve("20.04")


@pytest.fixture
def debian_spec():
    return catalog.resolve("11")


@pytest.fixture
def vm_config(ubuntu_spec) -> VMConfig:
    """Return a minimal VMConfig with sensible defaults."""
    return VMConfig(
        vm_name="test-vm",
        hostname="test-vm",
        domain_name="domain.local",
        distro=ubuntu_spec,
        cpus=2,
        memory_mb=1024,
        disk_size="16G",
        username="user",
        password="password",
        nameservers=["1.1.1.1", "1.0.0.1"],
    )


@pytest.fixture
def static_network() -> StaticNetwork:
    return StaticNetwork(
        address="192.168.1.50/24",
        interface="eth0",
        gateway="192.168.1.1",
        nameservers=["1.1.1.1"],
        search_domain="domain.local",
    )


@pytest.fixture
def http_response():
    """Factory for MagicMock responses shaped like requests.Response."""

    def _make(headers=None, text="", chunks=(), status=None):
        response = MagicMock()
        response.headers = headers or {}
        response.text = text
        response.iter_content.return_value = list(chunks)
        if status is not None:
            response.raise_for_status.side_effect = status
        return response

    return _make


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, cleared for a clean slate.
_PARSE_ENV_VARS = [
    "VM_NAME",
    "VM_HOSTNAME",
    "DOMAIN_NAME",
    "CPUS",
    "MEMORY",
    "DYNAMIC_MEMORY",
    "MEMORY_MIN",
    "MEMORY_MAX",
    "DISK_SIZE",
    "VM_GENERATION",
    "SECURE_BOOT",
    "VM_SWITCH",
    "VLAN_ID",
    "VM_MAC",
    "VM_STORAGE_PATH",
    "DISTRO",
    "IMAGE_RELEASE",
    "IMAGE_MIRROR",
    "IMAGE_REFRESH",
    "IMAGE_CLEANUP",
    "CACHE_DIR",
    "NET_INTERFACE",
    "NET_ADDRESS",
    "NET_NETMASK",
    "NET_NETWORK",
    "NET_GATEWAY",
    "NET_BROADCAST",
    "NAMESERVERS",
    "NET_CONFIG_TYPE",
    "LOCALE",
    "TIMEZONE",
    "KEYBOARD_LAYOUT",
    "KEYBOARD_MODEL",
    "KEYBOARD_OPTIONS",
    "GUEST_USERNAME",
    "GUEST_PASSWORD",
    "GUEST_PASSWORD_HASHED",
    "CUSTOM_USER_DATA",
    "POWER_STATE",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every variable parse_env() reads and pin a password."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GUEST_PASSWORD", "secret")
