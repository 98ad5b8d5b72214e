"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "chat"。
- provider_model：厂商实际提供的模型 ID，例如 "deepseek-chat"。

这里登记的 Provider 都暴露 OpenAI 兼容的 /chat/completions 流式接口，
共用同一个 OpenAICompatibleClient。未在 models 中登记的逻辑名按原样透传给厂商。
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int = 4096
    default_temperature: Optional[float] = None


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig] = field(default_factory=dict)
    requires_api_key: bool = True

    def resolve_model(self, logical_name: str) -> ModelConfig:
        cfg = self.models.get(logical_name)
        if cfg is not None:
            return cfg
        return ModelConfig(logical_name=logical_name, provider_model=logical_name)


def _chat(provider_model: str, max_tokens: int = 8192) -> Dict[str, ModelConfig]:
    return {"chat": ModelConfig(logical_name="chat", provider_model=provider_model, max_tokens=max_tokens)}


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models=_chat("gpt-4o-mini"),
)

DEEPSEEK_CONFIG = ProviderConfig(
    name="deepseek",
    base_url="https://api.deepseek.com/v1",
    models=_chat("deepseek-chat"),
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    models=_chat("kimi-k2-turbo-preview"),
)

# GLM / BigModel 的 OpenAI 兼容接口
GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    models=_chat("glm-4.6"),
)

# 本地 Ollama 不需要密钥
OLLAMA_CONFIG = ProviderConfig(
    name="ollama",
    base_url="http://localhost:11434/v1",
    models=_chat("llama3.1", max_tokens=4096),
    requires_api_key=False,
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    cfg.name: cfg
    for cfg in (OPENAI_CONFIG, DEEPSEEK_CONFIG, KIMI_CONFIG, GLM_CONFIG, OLLAMA_CONFIG)
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
