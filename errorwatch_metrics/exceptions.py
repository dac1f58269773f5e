"""
Agent 异常定义模块 (Agent Exception Definitions)

采集、序列化、发送三个阶段的错误都归入 MetricsAgentError 体系，
驱动循环只需捕获基类即可记录日志并继续下一轮。

Errors from collection, serialization and delivery share the MetricsAgentError
base so the driver loop can log them and move on to the next tick.
"""
from typing import Optional


class MetricsAgentError(Exception):
    """Agent 异常基类 (Base Agent Exception)"""


class ConfigError(MetricsAgentError):
    """配置文件缺失或格式错误 (Config Missing or Malformed)"""


class CollectionError(MetricsAgentError):
    """系统计数器读取失败 (OS Counter Read Failed)"""


class TransportError(MetricsAgentError):
    """指标发送阶段异常基类 (Base Delivery Exception)"""


class SerializationError(TransportError):
    """指标序列化失败 (Payload Serialization Failed)"""


class DeliveryError(TransportError):
    """网络层发送失败：连接拒绝、超时、DNS 等 (Transport-level Failure)"""


class RemoteRejectedError(TransportError):
    """服务端返回 HTTP >= 400 (Remote Rejected the Payload)"""

    def __init__(self, status_code: int, body: str, message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"metrics endpoint returned {status_code}: {body}")
