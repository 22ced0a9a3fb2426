#!/usr/bin/env python3
"""
test_daemon_config.py - Config defaults, YAML overrides and env precedence
"""

import logging
from pathlib import Path

from daemon_config import DaemonConfig, load_config, merge_overrides


def write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "absent.yaml", environ={})
    assert config.planner.base_url == "https://lumenbridge.xyz"
    assert config.planner.timeout == 30.0
    assert config.daemon.check_interval == 3600
    assert config.daemon.auto_approve is False
    assert config.execution.command_timeout == 300.0
    assert config.safety.protected_prefixes == ["/etc/"]


def test_partial_override_keeps_other_defaults(tmp_path):
    path = write(tmp_path, """
planner:
  base_url: https://planner.internal/
  timeout: 20
daemon:
  enabled_optimizations:
    docker: false
""")
    config = load_config(path, environ={})
    assert config.planner.base_url == "https://planner.internal"
    assert config.planner.timeout == 20.0
    assert isinstance(config.planner.timeout, float)
    assert config.planner.shell == "bash"
    assert config.daemon.enabled_optimizations == {"memory": True, "disk": True, "docker": False}
    assert config.daemon.check_interval == 3600


def test_wrong_types_and_unknown_keys_are_ignored(tmp_path, caplog):
    path = write(tmp_path, """
daemon:
  check_interval: soon
  auto_approve: "yes"
  colour: blue
safety: nope
""")
    with caplog.at_level(logging.WARNING):
        config = load_config(path, environ={})
    assert config.daemon.check_interval == 3600
    assert config.daemon.auto_approve is False
    assert config.safety.backup_before_modification is True
    assert "daemon.colour" in caplog.text
    assert "daemon.check_interval" in caplog.text


def test_unparseable_file_falls_back_to_defaults(tmp_path):
    path = write(tmp_path, "planner: [unclosed\n")
    assert load_config(path, environ={}) == DaemonConfig()


def test_non_mapping_file_falls_back_to_defaults(tmp_path):
    path = write(tmp_path, "- just\n- a list\n")
    assert load_config(path, environ={}) == DaemonConfig()


def test_environment_beats_file(tmp_path):
    path = write(tmp_path, "planner:\n  base_url: https://from-file\npaths:\n  home: /srv/file\n")
    config = load_config(path, environ={
        "PLANNER_BASE_URL": "https://from-env",
        "HOSTKEEPER_HOME": str(tmp_path / "home"),
    })
    assert config.planner.base_url == "https://from-env"
    assert config.paths.state_path == tmp_path / "home" / "state.json"
    assert config.paths.kill_path == tmp_path / "home" / "daemon.kill"


def test_explicit_paths_override_home():
    config = DaemonConfig()
    merge_overrides(config, {"paths": {"home": "/srv/hk", "state_file": "/var/lib/hk.json"}})
    assert config.paths.state_path == Path("/var/lib/hk.json")
    assert config.paths.log_path == Path("/srv/hk/daemon.log")
    assert config.paths.scripts_path == Path("/srv/hk/scripts")


def test_non_positive_durations_keep_defaults(tmp_path, caplog):
    path = write(tmp_path, """
planner:
  timeout: 0
daemon:
  check_interval: 0
execution:
  command_timeout: -5
  probe_timeout: 0.0
""")
    with caplog.at_level(logging.WARNING):
        config = load_config(path, environ={})
    assert config.planner.timeout == 30.0
    assert config.daemon.check_interval == 3600
    assert config.execution.command_timeout == 300.0
    assert config.execution.probe_timeout == 10.0
    assert "must be positive" in caplog.text


def test_optimization_toggles_must_be_booleans(tmp_path, caplog):
    path = write(tmp_path, """
daemon:
  enabled_optimizations:
    memory: "false"
    disk: false
    swap: 0
""")
    with caplog.at_level(logging.WARNING):
        config = load_config(path, environ={})
    assert config.daemon.enabled_optimizations == {"memory": True, "disk": False, "docker": True}
    assert "daemon.enabled_optimizations.memory" in caplog.text
    assert "daemon.enabled_optimizations.swap" in caplog.text
