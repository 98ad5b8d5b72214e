"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收完整的 Message 历史与可用工具列表。
2. 将其转换为 OpenAI 风格 /chat/completions 的流式请求。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将 SSE 响应逐条解析为统一的 MessageDelta（内容片段 + 工具调用片段）。

OpenAI、DeepSeek、Kimi、GLM、Ollama 都提供这种接口，区别只在 base_url 与模型名。
"""

import json
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx

from chatloop_core.domain.context import TurnContext
from chatloop_core.domain.exceptions import (
    ApiError,
    ModelStreamError,
    NetworkError,
    RateLimitError,
    TurnCancelled,
    ValidationError,
)
from chatloop_core.domain.models import ChatUsage, Message, MessageDelta, ToolCallFragment
from chatloop_core.providers.registry import ProviderConfig
from chatloop_core.tools.definitions import ToolDef


class OpenAICompatibleClient:
    """OpenAI 兼容流式客户端。

    - name: Provider 名称（供日志/调试使用）。
    - stream: 对外统一调用入口，逐步产出 MessageDelta。
    """

    def __init__(
        self,
        provider: ProviderConfig,
        model: str,
        settings,
        tools: Sequence[ToolDef] = (),
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        self.name = provider.name
        self._provider = provider
        self._model_cfg = provider.resolve_model(model)
        self._settings = settings
        self._tools = list(tools)
        self._api_key = api_key
        self._base_url = (base_url or provider.base_url).rstrip("/")

    def stream(self, ctx: TurnContext, messages: Sequence[Message]) -> Iterator[MessageDelta]:
        """执行一次流式对话调用，逐步 yield MessageDelta。

        每读一行都检查 ctx，被取消后关闭连接并抛出 TurnCancelled。
        """

        if self._provider.requires_api_key and not self._api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self.name.upper()}_API_KEY not set",
            )
        payload = self._build_payload(messages)
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers=headers,
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    for line in resp.iter_lines():
                        if ctx.cancelled:
                            raise TurnCancelled()
                        data_str = line.strip()
                        if not data_str or data_str.startswith(":"):
                            continue
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        if data_str == "[DONE]":
                            return
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(chunk, dict):
                            raise ModelStreamError(code="STREAM_FORMAT", message=f"unexpected stream chunk: {data_str[:200]}")
                        if chunk.get("error"):
                            err = chunk["error"]
                            message = err.get("message") if isinstance(err, dict) else str(err)
                            raise ApiError(code="API_ERROR", message=message or "stream error")
                        delta = self._parse_stream_chunk(chunk)
                        if delta is not None:
                            yield delta
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时、读流中断等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    def _build_payload(self, messages: Sequence[Message]) -> Dict[str, Any]:
        """将 Message 历史转成 OpenAI 风格的请求 JSON。"""

        temperature = self._model_cfg.default_temperature
        if temperature is None:
            temperature = self._settings.temperature
        payload: Dict[str, Any] = {
            "model": self._model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in messages],
            "temperature": temperature,
            "max_tokens": self._model_cfg.max_tokens,
            "stream": True,
        }
        if self._tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in self._tools]
            payload["tool_choice"] = "auto"
        return payload

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        """把内部的 ToolDef 转成 function tool 描述。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in tool.params.items():
            properties[name] = dict(param.schema or {"type": "string"})
            if param.description:
                properties[name]["description"] = param.description
            if param.required:
                required.append(name)
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        }

    @staticmethod
    def _message_to_payload(message: Message) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    # arguments 保持模型给出的原始文本
                    "function": {"name": call.name, "arguments": call.arguments or "{}"},
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    @staticmethod
    def _parse_stream_chunk(data: Dict[str, Any]) -> Optional[MessageDelta]:
        """解析流式响应中的单条增量，只取第一个 choice。"""

        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        choices = data.get("choices") or []
        if not choices:
            if usage is None:
                return None
            return MessageDelta(usage=usage, raw=data)

        choice = choices[0]
        delta = choice.get("delta") or {}
        fragments = []
        for call in delta.get("tool_calls") or []:
            func = call.get("function") or {}
            fragments.append(
                ToolCallFragment(
                    index=call.get("index"),
                    id=call.get("id") or None,
                    name_fragment=func.get("name") or "",
                    args_fragment=func.get("arguments") or "",
                )
            )
        # 部分厂商仍会返回旧版 function_call 字段，视为单个工具调用
        function_call = delta.get("function_call")
        if function_call:
            fragments.append(
                ToolCallFragment(
                    index=0,
                    name_fragment=function_call.get("name") or "",
                    args_fragment=function_call.get("arguments") or "",
                )
            )
        return MessageDelta(
            content=delta.get("content") or "",
            tool_call_fragments=tuple(fragments),
            finish_reason=choice.get("finish_reason"),
            usage=usage,
            raw=data,
        )
