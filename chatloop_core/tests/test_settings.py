import logging
import tempfile
from pathlib import Path

import pydantic
import pytest

from chatloop_core.config.settings import Settings
from chatloop_core.infrastructure.logging.logger import JsonFormatter, setup_logger


CONFIG_YAML = """
default_provider: ollama
max_iterations: 5
tool_failure_policy: abort
tools:
  weather_api:
    type: customhttp
    description: 查询城市天气
    config:
      url: https://wttr.in/${city}?format=3
    params:
      - {name: city, type: string, description: 城市名, required: true}
agents:
  helper:
    system: 你是一个乐于助人的助手。
    tools: [weather_api]
"""


def test_settings_from_yaml(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    monkeypatch.setenv("CHATLOOP_CONFIG_FILE", str(path))
    monkeypatch.setenv("MAX_ITERATIONS", "7")

    s = Settings()

    assert s.default_provider == "ollama"
    # 环境变量优先于 config.yaml
    assert s.max_iterations == 7
    assert s.tool_failure_policy == "abort"
    assert s.tools["weather_api"].params[0].required
    assert s.agents["helper"].tools == ["weather_api"]


def test_settings_validation():
    with pytest.raises(pydantic.ValidationError):
        Settings(api_keys={"openai": "short"})
    with pytest.raises(pydantic.ValidationError):
        Settings(log_level="loud")
    with pytest.raises(pydantic.ValidationError):
        Settings(max_iterations=0)
    assert Settings(log_level="debug").log_level == "DEBUG"


def test_api_key_lookup(monkeypatch):
    s = Settings(api_keys={"DeepSeek": "sk-1234567890"})
    assert s.api_key_for("deepseek") == "sk-1234567890"
    monkeypatch.setenv("GLM_API_KEY", "glm-key-from-env")
    assert s.api_key_for("glm") == "glm-key-from-env"


def test_json_logger():
    with tempfile.TemporaryDirectory() as d:
        log = setup_logger(d)
        log.info("hello", extra={"extra": {"trace_id": "tr-1"}})
        for handler in log.handlers:
            handler.flush()
        line = (Path(d) / "chatloop.log").read_text(encoding="utf-8").strip().splitlines()[-1]
        setup_logger()
    assert '"trace_id": "tr-1"' in line
    assert '"msg": "hello"' in line

    record = logging.LogRecord("x", logging.INFO, __file__, 1, "a" * 100, None, None)
    assert '"msg": "' + "a" * 64 + '"' in JsonFormatter(redact=True).format(record)
