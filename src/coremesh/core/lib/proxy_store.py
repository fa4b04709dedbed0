"""Platform access to the system-wide proxy settings.

Only Windows exposes a single, per-user proxy settings store that
applications honour (``HKCU\\...\\Internet Settings``). Every other
platform gets a no-op store, selected once by ``default_store``.
"""

import contextlib
import sys
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from coremesh.core.exceptions import SystemProxyError

INTERNET_SETTINGS_KEY = r"Software\Microsoft\Windows\CurrentVersion\Internet Settings"

# InternetSetOptionW option codes
INTERNET_OPTION_SETTINGS_CHANGED = 39
INTERNET_OPTION_REFRESH = 37


@dataclass(frozen=True)
class ProxySnapshot:
    """System proxy state: captured before a run, or the state to apply.

    Attributes:
        enabled: Whether a manual proxy server is enabled
        server: Proxy server string (``host:port``)
        bypass: Semicolon separated bypass list
        autoconfig_url: PAC script URL, empty if unset
    """

    enabled: bool
    server: str = ""
    bypass: str = ""
    autoconfig_url: str = ""

    @property
    def externally_managed(self) -> bool:
        """True when something else already proxies this system."""
        return self.enabled or bool(self.autoconfig_url.strip())


class ProxySettingsStore(Protocol):
    """Read and write access to the OS proxy settings."""

    supported: bool

    def read(self) -> ProxySnapshot: ...

    def apply(self, snapshot: ProxySnapshot) -> None: ...


class NoopProxySettingsStore:
    """Store for platforms without a system-wide proxy setting."""

    supported = False

    def read(self) -> ProxySnapshot:
        return ProxySnapshot(enabled=False)

    def apply(self, snapshot: ProxySnapshot) -> None:
        return None


class WindowsProxySettingsStore:
    """WinINet proxy settings of the current user."""

    supported = True

    def read(self) -> ProxySnapshot:
        import winreg

        try:
            with winreg.OpenKey(winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS_KEY, 0, winreg.KEY_QUERY_VALUE) as key:
                return ProxySnapshot(
                    enabled=bool(self._read_value(key, "ProxyEnable", 0)),
                    server=str(self._read_value(key, "ProxyServer", "")).strip(),
                    bypass=str(self._read_value(key, "ProxyOverride", "")).strip(),
                    autoconfig_url=str(self._read_value(key, "AutoConfigURL", "")).strip(),
                )
        except OSError as e:
            raise SystemProxyError(f"read proxy registry: {e}") from e

    def apply(self, snapshot: ProxySnapshot) -> None:
        import winreg

        try:
            with winreg.OpenKey(winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS_KEY, 0, winreg.KEY_SET_VALUE) as key:
                winreg.SetValueEx(key, "ProxyEnable", 0, winreg.REG_DWORD, 1 if snapshot.enabled else 0)
                self._write_string(key, "ProxyServer", snapshot.server)
                self._write_string(key, "ProxyOverride", snapshot.bypass)
                self._write_string(key, "AutoConfigURL", snapshot.autoconfig_url)
        except OSError as e:
            raise SystemProxyError(f"write proxy registry: {e}") from e
        self._refresh()

    @staticmethod
    def _read_value(key, name: str, default):
        import winreg

        try:
            value, _ = winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return default
        return value

    @staticmethod
    def _write_string(key, name: str, value: str) -> None:
        import winreg

        value = value.strip()
        if not value:
            with contextlib.suppress(FileNotFoundError):
                winreg.DeleteValue(key, name)
            return
        winreg.SetValueEx(key, name, 0, winreg.REG_SZ, value)

    @staticmethod
    def _refresh() -> None:
        import ctypes

        internet_set_option = ctypes.windll.wininet.InternetSetOptionW
        for option in (INTERNET_OPTION_SETTINGS_CHANGED, INTERNET_OPTION_REFRESH):
            if not internet_set_option(None, option, None, 0):
                raise SystemProxyError(f"refresh proxy settings (option {option}): {ctypes.WinError()}")


def default_store() -> ProxySettingsStore:
    """Pick the proxy settings store for the running platform."""
    if sys.platform == "win32":
        return WindowsProxySettingsStore()
    logger.debug(f"[sysproxy] no system proxy store on {sys.platform}")
    return NoopProxySettingsStore()
