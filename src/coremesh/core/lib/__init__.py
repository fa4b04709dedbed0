"""Core supervision library components."""

from .proxy_store import NoopProxySettingsStore, ProxySettingsStore, ProxySnapshot, WindowsProxySettingsStore, default_store
from .supervisor import ProcessRole, ProcessSpec, ProcessSupervisor, RunningProcess
from .system_proxy import ProxyEndpoint, SystemProxyController, detect_endpoint, merge_bypass

__all__ = [
    "default_store",
    "detect_endpoint",
    "merge_bypass",
    "NoopProxySettingsStore",
    "ProcessRole",
    "ProcessSpec",
    "ProcessSupervisor",
    "ProxyEndpoint",
    "ProxySettingsStore",
    "ProxySnapshot",
    "RunningProcess",
    "SystemProxyController",
    "WindowsProxySettingsStore",
]
