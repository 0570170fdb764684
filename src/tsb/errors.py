from __future__ import annotations


class TsbError(Exception):
    """tsb 内部异常基类。"""


class ConfigError(TsbError):
    """
    配置错误：配置文件结构不合法、指标重名、或 Source 的 query 无法解析。

    对单个指标而言是致命的（该指标不会被创建/更新），但不影响其它指标。
    """


class DeadlineExceeded(TsbError):
    """批次的截止时间已到，或批次被外部取消。"""


class HttpStatusError(TsbError):
    def __init__(self, status: int, url: str, body: bytes) -> None:
        super().__init__(f"HTTP {status} from {url}: {body[:300]!r}")
        self.status = status
        self.url = url
        self.body = body
