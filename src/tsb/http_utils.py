from __future__ import annotations

import json
import ssl
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .context import RunContext
from .errors import DeadlineExceeded, HttpStatusError


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class HttpClient:
    """
    轻量 HTTP 客户端（仅依赖标准库），供 Source 与 Target 适配器使用。

    策略：
    - 每次调用只尝试一次，不做退避重试（失败留给下一次调度）
    - 单次超时取 timeout_seconds 与 RunContext 剩余时间的较小值
    - RunContext 被取消或到达截止时间时，进行中的调用立即以 DeadlineExceeded 返回
    - 非 2xx 统一抛 HttpStatusError，错误信息原样上抛
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        user_agent: str = "ts-bridge/0",
        verify_ssl: bool = True,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def get(self, ctx: RunContext, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self._request(ctx, "GET", url, headers=headers, body=None)

    def post_json(
        self,
        ctx: RunContext,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        request_headers = {"Content-Type": "application/json; charset=utf-8"}
        if headers:
            request_headers.update(dict(headers))
        return self._request(ctx, "POST", url, headers=request_headers, body=data)

    def _request(
        self,
        ctx: RunContext,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None,
        body: bytes | None,
    ) -> HttpResponse:
        request_headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        if headers:
            request_headers.update(dict(headers))

        timeout = ctx.timeout(self._timeout_seconds)
        req = urllib.request.Request(url=url, data=body, headers=request_headers, method=method)

        # 请求在后台线程中执行；取消或截止时间到达时立即返回，不等待进行中的 socket 读写。
        call = _PendingCall()
        worker = threading.Thread(target=call.run, args=(lambda: self._send(req, timeout),), name="tsb-http", daemon=True)
        remove_callback = ctx.on_cancel(call.done.set)
        try:
            worker.start()
            remaining = ctx.remaining()
            call.done.wait(None if remaining is None else max(0.0, remaining))
        finally:
            remove_callback()

        if call.response is not None:
            return call.response
        if call.error is not None:
            if _is_timeout(call.error):
                remaining = ctx.remaining()
                if remaining is not None and remaining <= 0:
                    raise DeadlineExceeded(f"{method} {url}: context deadline exceeded") from call.error
            raise call.error
        if ctx.cancelled():
            raise DeadlineExceeded(f"{method} {url}: context cancelled")
        raise DeadlineExceeded(f"{method} {url}: context deadline exceeded")

    def _send(self, req: urllib.request.Request, timeout: float) -> HttpResponse:
        try:
            with urllib.request.urlopen(req, timeout=timeout, context=self._ssl_context) as resp:  # noqa: S310
                return HttpResponse(
                    status=getattr(resp, "status", 200),
                    url=resp.geturl(),
                    headers={k: v for k, v in resp.headers.items()},
                    body=resp.read(),
                )
        except urllib.error.HTTPError as e:
            raise HttpStatusError(e.code, req.full_url, e.read() or b"") from e


@dataclass(slots=True)
class _PendingCall:
    done: threading.Event = field(default_factory=threading.Event)
    response: HttpResponse | None = None
    error: Exception | None = None

    def run(self, send: Callable[[], HttpResponse]) -> None:
        try:
            self.response = send()
        except Exception as e:  # noqa: BLE001
            self.error = e
        finally:
            self.done.set()


def _is_timeout(err: Exception) -> bool:
    # 连接阶段的超时被包装为 URLError(reason=TimeoutError)
    if isinstance(err, TimeoutError):
        return True
    return isinstance(err, urllib.error.URLError) and isinstance(err.reason, TimeoutError)


def with_query_params(url: str, params: Mapping[str, str | None]) -> str:
    parsed = urllib.parse.urlparse(url)
    q = dict(urllib.parse.parse_qsl(parsed.query, keep_blank_values=True))
    q.update({k: v for k, v in params.items() if v is not None})
    new_query = urllib.parse.urlencode(q)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))
