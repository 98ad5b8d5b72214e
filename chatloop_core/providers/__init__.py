"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Model Adapter 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供 OpenAI 兼容的流式实现 (openai_client)。
"""

from typing import Optional, Sequence

from chatloop_core.config.settings import Settings, settings as default_settings
from chatloop_core.domain.exceptions import ValidationError
from chatloop_core.providers.base import ModelStreamAdapter
from chatloop_core.providers.openai_client import OpenAICompatibleClient
from chatloop_core.providers.registry import get_provider_config
from chatloop_core.tools.definitions import ToolDef


def create_provider(
    name: Optional[str] = None,
    model: Optional[str] = None,
    tools: Sequence[ToolDef] = (),
    settings: Optional[Settings] = None,
) -> ModelStreamAdapter:
    """根据名称创建 Model Adapter，缺省值取配置中的 provider / model。"""

    cfg = settings or default_settings
    provider_name = (name or cfg.default_provider).lower()
    try:
        provider = get_provider_config(provider_name)
    except KeyError:
        raise ValidationError(code="UNKNOWN_PROVIDER", message=f"unknown provider: {provider_name}")
    return OpenAICompatibleClient(
        provider,
        model or cfg.default_model,
        cfg,
        tools=tools,
        api_key=cfg.api_key_for(provider_name),
        base_url=cfg.base_urls.get(provider_name),
    )


__all__ = ["ModelStreamAdapter", "OpenAICompatibleClient", "create_provider"]
