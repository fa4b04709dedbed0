"""System proxy configuration for a supervised run.

This module points the system-wide proxy setting at the edge proxy and
puts the previous settings back afterwards:
- Detecting the edge proxy endpoint from its generated config
- Snapshotting the current OS proxy state
- Applying the endpoint with a merged bypass list
- Restoring the snapshot verbatim

A system that is already proxied by something else (manual proxy enabled
or a PAC URL set) is left untouched.

Example:
    controller = SystemProxyController()
    restore, changed = controller.configure_for_run("xray.generated.json")
    try:
        ...
    finally:
        restore()
"""

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from coremesh.core.exceptions import EndpointNotFoundError, SystemProxyError
from coremesh.core.lib.proxy_store import ProxySettingsStore, ProxySnapshot, default_store

RestoreFunc = Callable[[], None]

LOOPBACK_HOST = "127.0.0.1"
UNSPECIFIED_HOSTS = frozenset({"", "0.0.0.0", "::", "::0"})
PREFERRED_PROTOCOLS = ("http", "mixed", "socks")
REQUIRED_BYPASS_LIST = ";".join(
    [
        "localhost",
        "127.*",
        "10.*",
        *(f"172.{octet}.*" for octet in range(16, 32)),
        "192.168.*",
        "127.0.0.1",
    ]
)


@dataclass(frozen=True)
class ProxyEndpoint:
    """Listening endpoint of the edge proxy.

    Attributes:
        protocol: Inbound protocol, lower case (``http``, ``mixed``, ``socks``, ...)
        host: Host the system proxy connects to
        port: Listening port
    """

    protocol: str
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def normalize_host(host: str) -> str:
    """Map empty and wildcard listen addresses to loopback."""
    host = host.strip()
    if host in UNSPECIFIED_HOSTS:
        return LOOPBACK_HOST
    return host


def _load_inbounds(config_path: str | Path) -> list[dict]:
    try:
        with Path(config_path).open(encoding="utf-8") as f:
            doc = json.load(f)
    except OSError as e:
        raise SystemProxyError(f"read xray config {config_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SystemProxyError(f"parse xray config {config_path}: {e}") from e

    inbounds = doc.get("inbounds") if isinstance(doc, dict) else None
    if not isinstance(inbounds, list):
        return []
    return [inbound for inbound in inbounds if isinstance(inbound, dict)]


def _port_of(inbound: dict) -> int:
    port = inbound.get("port")
    if isinstance(port, bool) or not isinstance(port, int):
        return 0
    return port


def _endpoint_from(inbound: dict, protocol: str) -> ProxyEndpoint:
    listen = inbound.get("listen")
    return ProxyEndpoint(
        protocol=protocol,
        host=normalize_host(listen if isinstance(listen, str) else ""),
        port=_port_of(inbound),
    )


def detect_endpoint(config_path: str | Path) -> ProxyEndpoint:
    """Pick the inbound the system proxy should point at.

    Inbounds are preferred by protocol (http, then mixed, then socks);
    failing those, the first inbound with a positive port is used.

    Args:
        config_path: Generated Xray config

    Returns:
        ProxyEndpoint: Selected endpoint with its host normalized

    Raises:
        SystemProxyError: If the config cannot be read or parsed
        EndpointNotFoundError: If no inbound has a usable port
    """
    inbounds = _load_inbounds(config_path)
    if not inbounds:
        raise EndpointNotFoundError(f"xray config {config_path} has no inbounds")

    def protocol_of(inbound: dict) -> str:
        protocol = inbound.get("protocol")
        return protocol.strip().lower() if isinstance(protocol, str) else ""

    for preferred in PREFERRED_PROTOCOLS:
        for inbound in inbounds:
            if protocol_of(inbound) == preferred and _port_of(inbound) > 0:
                return _endpoint_from(inbound, preferred)

    for inbound in inbounds:
        if _port_of(inbound) > 0:
            return _endpoint_from(inbound, protocol_of(inbound))

    raise EndpointNotFoundError(f"xray config {config_path} has no valid inbound endpoint")


def split_bypass(value: str) -> list[str]:
    """Split a bypass list on ``;`` and ``,``, dropping empty entries."""
    parts = value.replace(",", ";").split(";")
    return [part.strip() for part in parts if part.strip()]


def merge_bypass(existing: str, required: str) -> str:
    """Union two bypass lists, existing entries first, case-insensitively unique."""
    seen: set[str] = set()
    merged: list[str] = []
    for item in [*split_bypass(existing), *split_bypass(required)]:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        merged.append(item)
    return ";".join(merged)


def _noop_restore() -> None:
    return None


class SystemProxyController:
    """Snapshot, apply and restore the system proxy for one run."""

    def __init__(self, store: ProxySettingsStore | None = None, required_bypass: str = REQUIRED_BYPASS_LIST) -> None:
        self.store = store if store is not None else default_store()
        self.required_bypass = required_bypass

    def configure_for_run(self, config_path: str | Path) -> tuple[RestoreFunc, bool]:
        """Point the system proxy at the edge proxy.

        Args:
            config_path: Generated Xray config of the running edge proxy

        Returns:
            tuple: ``(restore, changed)``; ``restore`` reinstates the snapshot
            taken before any change and is a no-op when ``changed`` is False

        Raises:
            SystemProxyError: If reading or applying the settings fails
        """
        if not self.store.supported:
            return _noop_restore, False

        snapshot = self.store.read()
        logger.debug(f"[sysproxy] snapshot: {snapshot}")
        if snapshot.externally_managed:
            logger.info("[sysproxy] system proxy already configured, leaving it alone")
            return _noop_restore, False

        endpoint = detect_endpoint(config_path)
        applied = ProxySnapshot(
            enabled=True,
            server=endpoint.address,
            bypass=merge_bypass(snapshot.bypass, self.required_bypass),
            autoconfig_url="",
        )
        try:
            self.store.apply(applied)
        except SystemProxyError:
            # apply may fail after writing some values
            try:
                self.store.apply(snapshot)
            except SystemProxyError:
                logger.exception("[sysproxy] rollback after failed apply failed")
            raise
        logger.info(f"[sysproxy] pointing system proxy at {endpoint.protocol} inbound {endpoint.address}")

        def restore() -> None:
            self.store.apply(snapshot)

        return restore, True
