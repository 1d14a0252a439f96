# config.py
from __future__ import annotations

import os
import runpy
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError
from .fingerprint import HASH_MODES
from .model import AssetGroup

DEFAULT_CONFIG_FILE = "assetflow_config.py"


@dataclass
class BuildConfig:
    """
    Static build configuration. Loaded once at process start; the task graph
    built from it is never rebuilt in-process.
    """
    groups: List[AssetGroup]
    dest_root: str
    root: Path = field(default_factory=lambda: Path("."))
    workers: Optional[int] = None
    debounce: float = 0.2
    hash_mode: str = "content"
    server_host: str = "127.0.0.1"
    server_port: int = 3000

    def group(self, name: str) -> AssetGroup:
        for g in self.groups:
            if g.name == name:
                return g
        raise ConfigError(
            f"Unknown asset group: {name!r}",
            {"known": ", ".join(g.name for g in self.groups)},
        )

    @property
    def group_names(self) -> List[str]:
        return [g.name for g in self.groups]

    def validate(self) -> "BuildConfig":
        if not self.groups:
            raise ConfigError("Configuration defines no asset groups")
        dest = Path(self.dest_root or "")
        if not self.dest_root or dest.is_absolute() or dest == Path(".") or ".." in dest.parts:
            raise ConfigError(
                "dest_root must be a directory relative to the project root",
                {"dest_root": str(self.dest_root)},
            )
        for g in self.groups:
            if not g.sources:
                raise ConfigError(f"Group {g.name!r} has no sources")
            if not g.dest:
                raise ConfigError(f"Group {g.name!r} has no destination")
        if self.hash_mode not in HASH_MODES:
            raise ConfigError(
                f"hash_mode must be one of {HASH_MODES}",
                {"hash_mode": self.hash_mode},
            )
        if self.workers is not None and self.workers < 1:
            raise ConfigError("workers must be >= 1", {"workers": str(self.workers)})
        if self.debounce < 0:
            raise ConfigError("debounce must be >= 0", {"debounce": str(self.debounce)})
        return self


def apply_env(cfg: BuildConfig, env=None) -> BuildConfig:
    """ASSETFLOW_WORKERS / ASSETFLOW_DEBOUNCE override file values."""
    env = os.environ if env is None else env
    changes = {}
    try:
        if env.get("ASSETFLOW_WORKERS"):
            changes["workers"] = int(env["ASSETFLOW_WORKERS"])
        if env.get("ASSETFLOW_DEBOUNCE"):
            changes["debounce"] = float(env["ASSETFLOW_DEBOUNCE"])
    except ValueError as e:
        raise ConfigError("Invalid environment override", {"cause": str(e)}) from e
    return replace(cfg, **changes) if changes else cfg


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> BuildConfig:
    """
    Load a configuration from a python file path.

    The file must define either:
      - config() -> BuildConfig
      - CONFIG = BuildConfig(...)

    The project root defaults to the directory holding the file.
    """
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise ConfigError("Config file not found", {"path": str(cfg_path)})
    if cfg_path.suffix != ".py":
        raise ConfigError("Config must be a .py file", {"path": cfg_path.name})

    module_name = f"assetflow_config_{cfg_path.stem}"
    try:
        globals_dict = runpy.run_path(str(cfg_path), run_name=module_name)
    except Exception as e:  # noqa: BLE001
        raise ConfigError("Config file failed to execute", {"path": str(cfg_path), "cause": repr(e)}) from e

    cfg = None
    if "config" in globals_dict and callable(globals_dict["config"]):
        cfg = globals_dict["config"]()
    elif "CONFIG" in globals_dict:
        cfg = globals_dict["CONFIG"]

    if not isinstance(cfg, BuildConfig):
        raise ConfigError(
            "Config must return/define a BuildConfig. "
            "Define config() -> BuildConfig or CONFIG = BuildConfig(...).",
            {"path": str(cfg_path)},
        )

    root = Path(cfg.root)
    if not root.is_absolute():
        root = (cfg_path.parent / root).resolve()
    cfg = replace(cfg, root=root)
    return apply_env(cfg).validate()
