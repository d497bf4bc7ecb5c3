"""
Tests for Configuration Loading.
"""

import pytest

from ..core.config import (
    DEBUG_ENV_VAR,
    NodeScopeConfig,
    ProfilerConfig,
    TopologyConfig,
    build_config,
    load_config,
    load_nodescope_config,
)
from ..core.errors import ConfigurationError
from ..utils.profiling import Profiler


def test_load_nodescope_config(tmp_path, monkeypatch):
    monkeypatch.delenv(DEBUG_ENV_VAR, raising=False)
    path = tmp_path / "nodescope.yaml"
    path.write_text(
        "topology:\n"
        "  devices_per_node: 4\n"
        "  devices_total: 8\n"
        "profiler:\n"
        "  name: solver\n"
        "  precision: 3\n"
    )
    config = load_nodescope_config(str(path))
    assert config.topology == TopologyConfig(devices_per_node=4, devices_total=8)
    assert config.topology.has_devices
    assert config.profiler.name == "solver"
    assert config.profiler.precision == 3
    assert config.profiler.debug is False


def test_empty_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv(DEBUG_ENV_VAR, raising=False)
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)) == {}
    assert load_nodescope_config(str(path)) == NodeScopeConfig()


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/nodescope.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("topology: [unclosed\n")
    with pytest.raises(RuntimeError):
        load_config(str(path))


@pytest.mark.parametrize("mapping", [
    {"mesh": {}},
    {"topology": {"devices": 2}},
    {"profiler": ["debug"]},
])
def test_unknown_or_malformed_sections(mapping):
    with pytest.raises(ConfigurationError):
        build_config(mapping)


def test_device_counts_must_be_paired():
    with pytest.raises(ConfigurationError):
        TopologyConfig(devices_per_node=2)
    with pytest.raises(ConfigurationError):
        TopologyConfig(devices_per_node=-1, devices_total=2)


def test_debug_env_override(monkeypatch):
    monkeypatch.setenv(DEBUG_ENV_VAR, "1")
    assert ProfilerConfig().debug is True
    assert build_config({"profiler": {"debug": False}}).profiler.debug is True
    monkeypatch.setenv(DEBUG_ENV_VAR, "0")
    assert ProfilerConfig().debug is False


def test_profiler_uses_config():
    profiler = Profiler(config=ProfilerConfig(name="cfg", debug=True, precision=2))
    assert profiler.name == "cfg"
    assert profiler.debug is True
    profiler.add("A")
    assert "0.00 s." in profiler.report()
