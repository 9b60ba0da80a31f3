"""领域层模型与协议。

包含：
- models: ChatSettings 快照与 GenerateRequest / GenerateResult 等后端模型。
- conversation: 会话与消息的存储模型及 KeyValueStore 抽象。
- exceptions: 业务异常类型定义。
"""
