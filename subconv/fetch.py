"""
fetch.py
========
远程文本拉取（订阅 / profile / 模板 / ruleset）。

- 只允许 http/https，重定向次数有上限
- 响应体流式读取，超过上限立即中止
- 严格 UTF-8 解码
- 单次超时不超过整次转换剩余的时间
- 通过 threading.Event 协作式取消
"""

import logging
import threading
import time
from enum import Enum
from urllib.parse import urlsplit

import requests

from .config import (
    MAX_BYTES_PROFILE,
    MAX_BYTES_RULESET,
    MAX_BYTES_SUBSCRIPTION,
    MAX_BYTES_TEMPLATE,
    ConvertOptions,
)
from .errors import (
    AppError,
    FetchError,
    STAGE_COMPILE,
    STAGE_FETCH_PROFILE,
    STAGE_FETCH_SUB,
    STAGE_FETCH_TEMPLATE,
)

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
RETRY_DELAY = 0.5   # 连接失败后重试前的等待秒数


class FetchKind(Enum):
    SUBSCRIPTION = ("subscription", STAGE_FETCH_SUB, MAX_BYTES_SUBSCRIPTION)
    PROFILE = ("profile", STAGE_FETCH_PROFILE, MAX_BYTES_PROFILE)
    TEMPLATE = ("template", STAGE_FETCH_TEMPLATE, MAX_BYTES_TEMPLATE)
    # ruleset 在编译阶段展开，错误归到 compile
    RULESET = ("ruleset", STAGE_COMPILE, MAX_BYTES_RULESET)

    def __init__(self, label: str, stage: str, max_bytes: int):
        self.label = label
        self.stage = stage
        self.max_bytes = max_bytes


def short_url(url: str) -> str:
    """日志里只保留 URL 的无 query 前缀，避免泄露订阅 token。"""
    return url.split("?", 1)[0].split("#", 1)[0][:80]


def _fetch_error(kind: FetchKind, url: str, status: int, code: str, message: str,
                 cause: BaseException | None = None) -> FetchError:
    return FetchError(status, AppError(code=code, message=message, stage=kind.stage, url=url), cause)


class Fetcher:
    """
    基于 requests 的拉取实现。每次调用使用独立的 Session，
    因此同一个 Fetcher 可以在多个线程中并发使用。
    """

    def __init__(self, options: ConvertOptions | None = None, session_factory=requests.Session):
        self.options = options or ConvertOptions()
        self.session_factory = session_factory

    def fetch_text(self, kind: FetchKind, url: str, *, deadline: float | None = None,
                   cancel: threading.Event | None = None, max_bytes: int | None = None) -> str:
        """
        拉取 url 并返回 UTF-8 文本。
        deadline 为 time.monotonic() 时间戳；所有失败都抛出 FetchError。
        """
        max_bytes = kind.max_bytes if max_bytes is None else max_bytes
        if max_bytes <= 0:
            raise _fetch_error(kind, url, 400, "INVALID_ARGUMENT", "响应大小上限必须大于 0")

        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise _fetch_error(kind, url, 400, "INVALID_ARGUMENT", "仅允许 http/https URL")

        attempts = max(self.options.retries, 0) + 1
        for attempt in range(1, attempts + 1):
            self._check_alive(kind, url, deadline, cancel)
            log.info(f"  正在拉取 {kind.label} ({attempt}/{attempts}): {short_url(url)}")
            try:
                body = self._get(kind, url, deadline, cancel, max_bytes)
                break
            except requests.ConnectionError as e:
                log.warning(f"  请求失败: {e}")
                if attempt == attempts:
                    raise _fetch_error(kind, url, 502, "FETCH_FAILED", "拉取远程资源失败", e) from e
                if (cancel or threading.Event()).wait(RETRY_DELAY):
                    raise _fetch_error(kind, url, 502, "FETCH_FAILED", "请求已取消") from e

        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise _fetch_error(kind, url, 422, "FETCH_INVALID_UTF8", "远程内容不是合法 UTF-8", e) from e
        log.debug(f"  拉取完成 {kind.label}: {len(body)} 字节")
        return text

    def _check_alive(self, kind: FetchKind, url: str, deadline: float | None,
                     cancel: threading.Event | None) -> float:
        """检查取消与截止时间，返回本次可用的超时秒数。"""
        if cancel is not None and cancel.is_set():
            raise _fetch_error(kind, url, 502, "FETCH_FAILED", "请求已取消")
        timeout = self.options.fetch_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise _fetch_error(kind, url, 504, "FETCH_TIMEOUT", "转换总时限已用尽")
            timeout = min(timeout, remaining)
        return timeout

    def _get(self, kind: FetchKind, url: str, deadline: float | None,
             cancel: threading.Event | None, max_bytes: int) -> bytes:
        timeout = self._check_alive(kind, url, deadline, cancel)
        session = self.session_factory()
        session.max_redirects = self.options.max_redirects
        try:
            try:
                resp = session.get(
                    url,
                    headers={"User-Agent": self.options.user_agent},
                    timeout=timeout,
                    stream=True,
                    allow_redirects=True,
                )
            except requests.TooManyRedirects as e:
                raise _fetch_error(kind, url, 502, "FETCH_FAILED",
                                   f"重定向次数超过上限（>{self.options.max_redirects}）", e) from e
            except (requests.exceptions.InvalidSchema, requests.exceptions.MissingSchema,
                    requests.exceptions.InvalidURL) as e:
                raise _fetch_error(kind, url, 400, "INVALID_ARGUMENT", "仅允许 http/https URL（含重定向目标）", e) from e
            except requests.Timeout as e:
                raise _fetch_error(kind, url, 504, "FETCH_TIMEOUT", "拉取远程资源超时", e) from e

            with resp:
                if not 200 <= resp.status_code < 300:
                    raise _fetch_error(kind, url, 502, "FETCH_FAILED",
                                       f"上游返回非 2xx 状态码：{resp.status_code}")
                return self._read_body(kind, url, resp, deadline, cancel, max_bytes)
        except requests.ConnectionError:
            raise
        except requests.RequestException as e:
            raise _fetch_error(kind, url, 502, "FETCH_FAILED", "拉取远程资源失败", e) from e
        finally:
            session.close()

    def _read_body(self, kind: FetchKind, url: str, resp: requests.Response, deadline: float | None,
                   cancel: threading.Event | None, max_bytes: int) -> bytes:
        """流式读取，最多读 max_bytes + 1 字节用于判断超限。"""
        buf = bytearray()
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                buf += chunk
                if len(buf) > max_bytes:
                    raise _fetch_error(kind, url, 422, "TOO_LARGE", f"远程内容超过大小上限（{max_bytes} 字节）")
                self._check_alive(kind, url, deadline, cancel)
        except requests.Timeout as e:
            raise _fetch_error(kind, url, 504, "FETCH_TIMEOUT", "读取远程内容超时", e) from e
        except requests.ConnectionError as e:
            # 读取阶段的 socket 超时会被 requests 包装为 ConnectionError
            if "timed out" in str(e):
                raise _fetch_error(kind, url, 504, "FETCH_TIMEOUT", "读取远程内容超时", e) from e
            raise _fetch_error(kind, url, 502, "FETCH_FAILED", "读取远程内容失败", e) from e
        except requests.exceptions.ChunkedEncodingError as e:
            raise _fetch_error(kind, url, 502, "FETCH_FAILED", "读取远程内容失败", e) from e
        return bytes(buf)
