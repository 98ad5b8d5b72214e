"""领域层模型与协议。

包含：
- models: Message / ToolCall / ToolResult / MessageDelta 等统一数据结构。
- history: 只追加的 MessageHistory。
- conversation: 会话状态 ConversationState。
- events: 引擎发往 Event Sink 的六种流式事件。
- context: 一轮对话的取消上下文 TurnContext。
- exceptions: 业务异常类型定义。
"""
