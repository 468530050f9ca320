import logging

import pytest
import yaml

from core.config import ConfigError, ConfigManager
from core.logger import TaskContextFilter, bind_context


def test_defaults_and_overrides():
    config = ConfigManager.from_dict({"pool": {"max_per_host": 8}})
    assert config.get("pool.max_per_host") == 8
    assert config.get("pool.connect_attempts") == 3
    assert config.get("missing.key", "fallback") == "fallback"


def test_validation_rejects_bad_limits():
    with pytest.raises(ConfigError):
        ConfigManager.from_dict({"pool": {"max_per_host": 0}})
    with pytest.raises(ConfigError):
        ConfigManager.from_dict({"orchestrator": {"default_concurrency": 80, "max_concurrency": 10}})


def test_yaml_and_env_precedence(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"pool": {"max_per_host": 6}, "scheduler": {"timezone": "Asia/Shanghai"}}),
                    encoding="utf-8")
    monkeypatch.setenv("OPS_POOL__MAX_PER_HOST", "10")
    monkeypatch.setenv("OPS_COLLECTOR__ENABLED", "true")

    config = ConfigManager().load(config_path=str(path))
    assert config.get("pool.max_per_host") == 10
    assert config.get("scheduler.timezone") == "Asia/Shanghai"
    assert config.get("collector.enabled") is True
    assert config.config_file_path == str(path)


def test_freeze_and_save(tmp_path):
    config = ConfigManager.from_dict()
    config.set("server.port", 9000)
    target = tmp_path / "out.yaml"
    config.save_to_yaml(str(target))

    saved = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert saved["server"]["port"] == 9000

    config.freeze()
    with pytest.raises(RuntimeError):
        config.set("server.port", 1)


def test_log_context_is_injected():
    record = logging.LogRecord("opspanel.test", logging.INFO, __file__, 1, "msg", None, None)
    with bind_context(task_id="task-1", host_id="web-1"):
        TaskContextFilter().filter(record)
    assert record.task_id == "task-1"
    assert record.host_id == "web-1"
    assert record.session_id == ""
    assert record.ctx == "[task_id=task-1 host_id=web-1] "

    outside = logging.LogRecord("opspanel.test", logging.INFO, __file__, 1, "msg", None, None)
    TaskContextFilter().filter(outside)
    assert outside.ctx == ""
