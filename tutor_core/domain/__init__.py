"""领域层模型与协议。

包含：
- models: 统一的 Message / LLMOptions / LLMResponse / TextChunk / ProviderSession 模型。
- conversation: 对话轮次、会话与键值存储协议 KeyValueStore。
- exceptions: 业务异常类型定义。
"""
