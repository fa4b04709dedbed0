"""Run configuration loading and process spec construction.

The ``parse`` step of the toolchain resolves a v2rayN installation into a
state file inside the configuration directory. This module reads that
state back, checks that everything a run needs exists on disk and builds
the ``ProcessSpec`` list the run controller starts.

Example:
    cfg = load_run_config(conf_dir)
    validate_for_run(cfg)
    cores, edge = build_process_specs(cfg, asset_dir=conf_dir)
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from coremesh.core.exceptions import ConfigError
from coremesh.core.lib.supervisor import ProcessRole, ProcessSpec
from coremesh.core.utils.log_config import CORE_LOG_FILE_NAME, XRAY_LOG_FILE_NAME

STATE_FILE_NAME = "coremesh.state.json"
EDGE_PROCESS_NAME = "xray"
DEFAULT_EDGE_ARGS = ("run", "-c", "{{config}}")


@dataclass
class Listen:
    host: str = ""
    port: int = 0

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class CoreConfig:
    """One core proxy as resolved by the parse step.

    Only ``name``, ``bin``, ``config`` and ``args`` matter for a run; the
    remaining fields are carried for the config generator upstream.
    """

    name: str
    bin: str
    config: str
    args: list[str] = field(default_factory=list)
    listen: Listen = field(default_factory=Listen)
    alias: str = ""
    type: str = ""
    outbound_tag: str = ""
    active: bool = False
    profile_id: str = ""


@dataclass
class XrayConfig:
    bin: str
    args: list[str] = field(default_factory=lambda: list(DEFAULT_EDGE_ARGS))
    base_config: str = ""


@dataclass
class AppConfig:
    generated_xray_config: str
    work_dir: str = "."


@dataclass
class RunConfig:
    """Fully resolved configuration of a run."""

    app: AppConfig
    xray: XrayConfig
    cores: list[CoreConfig] = field(default_factory=list)

    @property
    def work_dir(self) -> Path:
        return Path(self.app.work_dir.strip() or ".")


def _require(doc: dict[str, Any], key: str, where: str) -> Any:
    value = doc.get(key)
    if value in (None, ""):
        raise ConfigError(f"{where}.{key} is required")
    return value


def _section(doc: dict[str, Any], key: str) -> dict[str, Any]:
    value = doc.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be an object")
    return value


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{where} must be a list of strings")
    return list(value)


def parse_run_config(doc: dict[str, Any]) -> RunConfig:
    """Build a ``RunConfig`` from its JSON document form.

    Raises:
        ConfigError: If a required field is missing or malformed
    """
    app = _section(doc, "app")
    xray = _section(doc, "xray")
    raw_cores = doc.get("cores") or []
    if not isinstance(raw_cores, list):
        raise ConfigError("cores must be a list")

    cores = []
    for i, raw in enumerate(raw_cores):
        where = f"cores[{i}]"
        if not isinstance(raw, dict):
            raise ConfigError(f"{where} must be an object")
        listen = raw.get("listen") or {}
        if not isinstance(listen, dict):
            raise ConfigError(f"{where}.listen must be an object")
        try:
            port = int(listen.get("port") or 0)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{where}.listen.port must be a number") from e
        cores.append(
            CoreConfig(
                name=_require(raw, "name", where),
                bin=_require(raw, "bin", where),
                config=_require(raw, "config", where),
                args=_string_list(raw.get("args"), f"{where}.args"),
                listen=Listen(host=str(listen.get("host") or ""), port=port),
                alias=str(raw.get("alias") or ""),
                type=str(raw.get("type") or ""),
                outbound_tag=str(raw.get("outbound_tag") or ""),
                active=bool(raw.get("active", False)),
                profile_id=str(raw.get("profile_id") or ""),
            )
        )

    xray_args = xray.get("args")
    return RunConfig(
        app=AppConfig(
            generated_xray_config=_require(app, "generated_xray_config", "app"),
            work_dir=str(app.get("work_dir") or "."),
        ),
        xray=XrayConfig(
            bin=_require(xray, "bin", "xray"),
            args=_string_list(xray_args, "xray.args") if xray_args is not None else list(DEFAULT_EDGE_ARGS),
            base_config=str(xray.get("base_config") or ""),
        ),
        cores=cores,
    )


def state_path(conf_dir: Path) -> Path:
    return conf_dir / STATE_FILE_NAME


def load_run_config(conf_dir: Path, path: Path | None = None) -> RunConfig:
    """Load the run configuration stored by the parse step.

    The state file wraps the config as ``{"version": n, "config": {...}}``;
    a bare config document is accepted as well. The work dir is always the
    configuration directory.

    Args:
        conf_dir: Configuration directory
        path: Explicit state or config file, defaults to the state file in ``conf_dir``

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    target = path if path is not None else state_path(conf_dir)
    try:
        with target.open(encoding="utf-8") as f:
            doc = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"state file not found: {target} (run the parse step first)") from e
    except OSError as e:
        raise ConfigError(f"read state file {target}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"parse state file {target}: {e}") from e

    if not isinstance(doc, dict):
        raise ConfigError(f"state file {target} must contain an object")

    if "version" in doc:
        version = doc.get("version")
        if not isinstance(version, int) or version <= 0:
            raise ConfigError(f"invalid state version: {version}")
        doc = doc.get("config")
        if not isinstance(doc, dict):
            raise ConfigError(f"state file {target} has no config")

    cfg = parse_run_config(doc)
    cfg.app.work_dir = str(conf_dir)
    return cfg


def _check_file(path: str, where: str) -> None:
    if not path:
        raise ConfigError(f"{where} is required")
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"{where} invalid: {path} does not exist")
    if p.is_dir():
        raise ConfigError(f"{where} points to directory: {path}")


def validate_for_run(cfg: RunConfig) -> None:
    """Check that every file a run touches exists and cores do not clash.

    Raises:
        ConfigError: On the first problem found
    """
    _check_file(cfg.xray.bin, "xray.bin")
    _check_file(cfg.app.generated_xray_config, "app.generated_xray_config")

    names: set[str] = set()
    listens: set[str] = set()
    for i, core in enumerate(cfg.cores):
        where = f"cores[{i}]"
        _check_file(core.bin, f"{where}.bin")
        _check_file(core.config, f"{where}.config")
        if core.name in names:
            raise ConfigError(f"duplicate core name: {core.name}")
        names.add(core.name)
        if core.listen.key in listens:
            raise ConfigError(f"duplicate listen endpoint: {core.listen.key}")
        listens.add(core.listen.key)


def infer_asset_dir(xray_bin: str) -> Path:
    """Locate Xray's geo assets from its binary path.

    v2rayN ships Xray as ``<home>/bin/xray/xray`` with assets in ``<home>/bin``.
    """
    bin_dir = Path(xray_bin).parent
    if bin_dir.name.lower() == "xray":
        return bin_dir.parent
    return bin_dir


def build_process_specs(cfg: RunConfig, asset_dir: Path | None = None) -> tuple[list[ProcessSpec], ProcessSpec]:
    """Turn a run configuration into core specs, in declared order, and the edge spec."""
    work_dir = cfg.work_dir
    cores = [
        ProcessSpec(
            name=core.name,
            executable=core.bin,
            args=tuple(core.args),
            config_path=core.config,
            role=ProcessRole.CORE,
            log_path=work_dir / CORE_LOG_FILE_NAME,
        )
        for core in cfg.cores
    ]

    assets = str(asset_dir if asset_dir is not None else infer_asset_dir(cfg.xray.bin))
    edge = ProcessSpec(
        name=EDGE_PROCESS_NAME,
        executable=cfg.xray.bin,
        args=tuple(cfg.xray.args),
        config_path=cfg.app.generated_xray_config,
        role=ProcessRole.EDGE,
        log_path=work_dir / XRAY_LOG_FILE_NAME,
        env={"XRAY_LOCATION_ASSET": assets, "XRAY_LOCATION_CERT": assets},
    )
    return cores, edge
