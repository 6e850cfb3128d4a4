# ===--------------------------------------------------------------------------------------===#
#
# Part of the CircleSim Project, under the Apache License v2.0.
# See https://www.apache.org/licenses/LICENSE-2.0 for license information.
# SPDX-License-Identifier: Apache-2.0
#
# ===--------------------------------------------------------------------------------------===#
#
# This file implements the configuration blocks of a simulation and their YAML loading.
#
# ===--------------------------------------------------------------------------------------===#

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
import yaml

BACKENDS = ("process", "thread")
KERNELS = ("numpy", "scalar")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


@dataclass
class Bounds:
    """Sampling ranges of the initial circle centers and radii."""

    xmin: float = 0.0
    xmax: float = 1000.0
    ymin: float = 0.0
    ymax: float = 1000.0
    rmin: float = 10.0
    rmax: float = 100.0


@dataclass
class SimConfig:
    """Run parameters of a simulation.

    ``num_workers: 0`` means one worker per logical cpu.
    """

    num_circles: int = 10000
    iterations: int = 20
    num_workers: int = 1
    backend: str = "process"
    kernel: str = "numpy"
    seed: Optional[int] = None
    epsilon: float = 1e-5
    k: float = 1.5
    sync_timeout_s: float = 120.0
    check_consistency: bool = False
    dump_frames: bool = False
    report_progress: bool = True
    log_level: str = "INFO"
    bounds: Bounds = field(default_factory=Bounds)

    def resolved_num_workers(self) -> int:
        if self.num_workers == 0:
            return psutil.cpu_count(logical=True) or 1
        return self.num_workers

    def validate(self) -> None:
        """Checks every field, raising `ConfigError` on the first invalid one."""
        for name in ("num_circles", "iterations", "num_workers"):
            value: Any = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigError(f"{name} must be an integer, got {value!r}.")
        if self.seed is not None and (not isinstance(self.seed, int) or isinstance(self.seed, bool)):
            raise ConfigError(f"seed must be an integer or null, got {self.seed!r}.")

        if self.num_circles < 0:
            raise ConfigError(f"num_circles must be non-negative, got {self.num_circles}.")
        if self.iterations < 0:
            raise ConfigError(f"iterations must be non-negative, got {self.iterations}.")
        if self.num_workers < 0:
            raise ConfigError(f"num_workers must be non-negative, got {self.num_workers}.")
        if self.backend not in BACKENDS:
            raise ConfigError(f"Unsupported backend '{self.backend}', expected one of {BACKENDS}.")
        if self.kernel not in KERNELS:
            raise ConfigError(f"Unsupported kernel '{self.kernel}', expected one of {KERNELS}.")
        if self.epsilon <= 0:
            raise ConfigError(f"epsilon must be positive, got {self.epsilon}.")
        if self.k <= 0:
            raise ConfigError(f"k must be positive, got {self.k}.")
        if self.sync_timeout_s <= 0:
            raise ConfigError(f"sync_timeout_s must be positive, got {self.sync_timeout_s}.")
        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unsupported log_level '{self.log_level}'.")

        b = self.bounds
        if b.xmin > b.xmax or b.ymin > b.ymax:
            raise ConfigError(f"Empty placement area in {b}.")
        if b.rmin < 0 or b.rmin > b.rmax:
            raise ConfigError(f"Radius range must satisfy 0 <= rmin <= rmax, got {b}.")

    def to_dict(self) -> Dict[str, Any]:
        """Returns the config in the layout read by `config_from_dict`."""
        sim_cfg: Dict[str, Any] = asdict(self)
        bounds: Dict[str, Any] = sim_cfg.pop("bounds")
        return {"SIM_CONFIG": sim_cfg, "BOUNDS": bounds}


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"{name} must be a number, got {value!r}.") from err


def config_from_dict(raw: Optional[Dict[str, Any]]) -> SimConfig:
    """Builds a config from a dictionary with ``SIM_CONFIG`` and ``BOUNDS`` sections.

    Missing keys fall back to the dataclass defaults and unknown keys are rejected.

    Args:
        raw: Parsed YAML document. None yields the default config.

    Returns:
        The validated config.

    Raises:
        ConfigError: If a section has unknown keys or a value is invalid.
    """
    raw = raw or {}
    sim_cfg_raw: Dict[str, Any] = raw.get("SIM_CONFIG") or {}
    bounds_raw: Dict[str, Any] = raw.get("BOUNDS") or {}

    for section, values, cls in (
        ("SIM_CONFIG", sim_cfg_raw, SimConfig),
        ("BOUNDS", bounds_raw, Bounds),
    ):
        unknown = set(values) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown keys in {section}: {sorted(unknown)}.")

    default_bounds: Bounds = Bounds()
    bounds: Bounds = Bounds(
        **{
            name: _as_float(name, bounds_raw.get(name, getattr(default_bounds, name)))
            for name in Bounds.__dataclass_fields__
        }
    )

    default_cfg: SimConfig = SimConfig()
    sim_values: Dict[str, Any] = {
        name: sim_cfg_raw.get(name, getattr(default_cfg, name))
        for name in SimConfig.__dataclass_fields__
        if name != "bounds"
    }
    # YAML reads exponent literals such as 1e-5 as strings
    for name in ("epsilon", "k", "sync_timeout_s"):
        sim_values[name] = _as_float(name, sim_values[name])

    config: SimConfig = SimConfig(**sim_values, bounds=bounds)
    config.validate()
    return config


def load_config(cfg_path: str | Path) -> SimConfig:
    """Loads and validates a YAML config file.

    Raises:
        ConfigError: If the file cannot be read or parsed, or holds invalid values.
    """
    try:
        with open(cfg_path, "r", encoding="utf-8") as f:
            raw: Any = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as err:
        raise ConfigError(f"Unable to read config '{cfg_path}': {err}") from err

    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"Config '{cfg_path}' must hold a mapping.")
    return config_from_dict(raw)


def save_config(config: SimConfig, cfg_path: str | Path) -> None:
    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)
