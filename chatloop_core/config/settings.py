"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。

config.yaml 示例::

    default_provider: deepseek
    default_model: chat
    api_keys:
      deepseek: sk-xxxxxxxx
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

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHATLOOP_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class ToolParamConfig(BaseModel):
    """工具参数声明，会转换为暴露给模型的 JSON Schema。"""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


class ToolConfig(BaseModel):
    """单个可配置工具（customexec / customhttp / httprequest）。"""

    type: str
    description: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    params: List[ToolParamConfig] = Field(default_factory=list)


class AgentPreset(BaseModel):
    """会话预设：系统提示词、模型与可用工具子集。

    chat 与 agent 两种界面共用同一个引擎，只是预设不同。
    """

    system: str = ""
    model: Optional[str] = None
    provider: Optional[str] = None
    tools: List[str] = Field(default_factory=list)


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、deepseek、kimi、glm、ollama",
    )
    default_model: str = Field(
        default="chat",
        description="逻辑模型名，由 registry 映射为具体厂商模型",
    )
    api_keys: Dict[str, str] = Field(
        default_factory=dict,
        description="各 Provider 的 API 密钥；也可通过 <PROVIDER>_API_KEY 环境变量提供",
    )
    base_urls: Dict[str, str] = Field(
        default_factory=dict,
        description="覆盖 registry 中的 base_url",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="生成温度")

    # ---- 对话循环 ----
    max_iterations: int = Field(
        default=10,
        ge=1,
        le=50,
        description="单轮对话内模型流式轮数上限（熔断无限工具循环）",
    )
    tool_display_limit: int = Field(
        default=500,
        ge=16,
        description="工具结果发往 Event Sink 时的截断长度（历史中保留完整文本）",
    )
    tool_timeout: float = Field(default=30.0, gt=0, description="单次工具调用超时（秒）")
    tool_failure_policy: Literal["continue", "abort"] = Field(
        default="continue",
        description="工具失败时继续（回填给模型）还是终止本轮",
    )
    parallel_tools: bool = Field(default=False, description="同一轮内的工具调用是否并发执行")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 工具与预设 ----
    tools: Dict[str, ToolConfig] = Field(default_factory=dict)
    agents: Dict[str, AgentPreset] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_keys")
    @classmethod
    def validate_api_keys(cls, v: Dict[str, str]) -> Dict[str, str]:
        for name, key in v.items():
            if key and len(key) < 10:
                raise ValueError(f"API key for {name} seems too short")
        return {name.lower(): key for name, key in v.items()}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {v}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def api_key_for(self, provider: str) -> Optional[str]:
        """读取 Provider 密钥：优先 api_keys，其次 <PROVIDER>_API_KEY 环境变量。"""

        key = provider.lower()
        return self.api_keys.get(key) or os.getenv(f"{key.upper()}_API_KEY")


settings = Settings()
