"""
Configuration Management for NodeScope

This module loads NodeScope settings from a YAML file into typed dataclasses.
Only the settings that depend on the machine a job runs on live here: how many
accelerator devices each node exposes, and how the profiler reports.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: python

    # In nodescope.yaml
    topology:
      devices_per_node: 4
      devices_total: 8
    profiler:
      name: 'solver'
      debug: false

    # In the application
    from NodeScope.core.config import load_nodescope_config

    config = load_nodescope_config('nodescope.yaml')
    topology = init_topology(config=config.topology)
    profiler = Profiler(config=config.profiler)

The environment variable `NODESCOPE_DEBUG=1` switches the profiler into
debug mode regardless of the file.

===============================================================================
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

DEBUG_ENV_VAR = "NODESCOPE_DEBUG"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "0").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class TopologyConfig:
    """
    Device layout of the job.

    Both counts must be given for a device group to be built. Processes with
    node rank below `devices_per_node` drive one device each.
    """
    devices_per_node: Optional[int] = None
    devices_total: Optional[int] = None

    def __post_init__(self):
        if (self.devices_per_node is None) != (self.devices_total is None):
            raise ConfigurationError(
                "devices_per_node and devices_total must be set together",
                operation="TopologyConfig",
            )
        for name in ("devices_per_node", "devices_total"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value}", operation="TopologyConfig")

    @property
    def has_devices(self) -> bool:
        return self.devices_per_node is not None


@dataclass
class ProfilerConfig:
    """Profiler naming, debug checks and local report precision."""
    name: str = ""
    debug: bool = field(default_factory=lambda: _env_flag(DEBUG_ENV_VAR))
    precision: int = 7


@dataclass
class NodeScopeConfig:
    topology: TopologyConfig = field(default_factory=TopologyConfig)
    profiler: ProfilerConfig = field(default_factory=ProfilerConfig)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Loads a configuration from a specified YAML file path.

    Args:
        config_path (str): The path to the YAML configuration file.

    Returns:
        Dict[str, Any]: A dictionary containing the loaded configuration settings.

    Raises:
        FileNotFoundError: If the `config_path` does not exist.
        RuntimeError: If there is an error parsing the YAML file.
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found at: {config_path}")

    with open(config_path, 'r') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Error parsing YAML file: {e}")

    return config or {}


def _build_section(cls, section: str, values: Optional[Dict[str, Any]]):
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigurationError(f"section '{section}' must be a mapping", operation="build_config")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(
            f"unknown keys in section '{section}': {', '.join(unknown)}",
            operation="build_config",
        )
    return cls(**values)


def build_config(mapping: Dict[str, Any]) -> NodeScopeConfig:
    """
    Builds a typed `NodeScopeConfig` from a plain mapping.

    Raises:
        ConfigurationError: On unknown sections or keys, or inconsistent values.
    """
    unknown = sorted(set(mapping) - {"topology", "profiler"})
    if unknown:
        raise ConfigurationError(f"unknown sections: {', '.join(unknown)}", operation="build_config")

    config = NodeScopeConfig(
        topology=_build_section(TopologyConfig, "topology", mapping.get("topology")),
        profiler=_build_section(ProfilerConfig, "profiler", mapping.get("profiler")),
    )
    if _env_flag(DEBUG_ENV_VAR):
        config.profiler.debug = True
    return config


def load_nodescope_config(config_path: str) -> NodeScopeConfig:
    """Reads a YAML file and builds the typed configuration from it."""
    return build_config(load_config(config_path))
