"""
service.py
==========
一次转换请求的完整编排：

    list   模式：拉取订阅 → 解析 → 规范化 → 规范 ss:// 列表（可 base64）
    config 模式：并行拉取订阅与 profile → 编译 → 渲染 → 拉取模板 → 注入锚点
                 → （surge）写入 #!MANAGED-CONFIG 首行

整次请求受 convert_timeout 总时限约束。
"""

import base64
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from urllib.parse import urlsplit, urlunsplit

from .compiler import compile_profile, normalize_proxies
from .config import DEFAULT_BASE_URL, ConvertOptions
from .errors import AppError, CompileError, STAGE_COMPILE, SubconvError, app_error_for, request_error
from .fetch import FetchKind, short_url
from .metrics import Metrics
from .model import Proxy, has_forbidden_chars
from .profile import ProfileSpec, parse_profile
from .render import Target, render
from .subscription import parse_subscription_text, percent_encode, render_ss_list
from .template import ensure_managed_config, inject_anchors

log = logging.getLogger(__name__)

MODE_CONFIG = "config"
MODE_LIST = "list"
ENCODE_BASE64 = "base64"
ENCODE_RAW = "raw"

FILE_NAME_MAX = 200

_DEFAULT_EXT = {
    Target.CLASH.value: ".yaml",
    Target.SURGE.value: ".conf",
    Target.SHADOWROCKET.value: ".conf",
    Target.QUANX.value: ".conf",
}


# ======================== 请求 ========================

@dataclass(frozen=True)
class ConvertRequest:
    mode: str
    subs: tuple[str, ...]
    target: str = ""
    profile: str = ""
    file_name: str = ""
    encode: str = ""
    expand_rulesets: bool = False

    def validate(self) -> "ConvertRequest":
        """校验请求参数，返回去空白、补全默认值后的新请求。"""
        mode = self.mode.strip()
        if mode not in (MODE_CONFIG, MODE_LIST):
            raise request_error("INVALID_ARGUMENT", "不支持的 mode（仅支持 config/list）", mode)

        if not self.subs:
            raise request_error("INVALID_ARGUMENT", "缺少 sub 参数", "expected: sub=<url>")
        subs = tuple(s.strip() for s in self.subs)
        if any(not s for s in subs):
            raise request_error("INVALID_ARGUMENT", "sub 不能为空")

        target = self.target.strip()
        profile = self.profile.strip()
        encode = self.encode.strip()

        if mode == MODE_LIST:
            if target:
                raise request_error("INVALID_ARGUMENT", "mode=list 不支持 target")
            if profile:
                raise request_error("INVALID_ARGUMENT", "mode=list 不支持 profile")
            if self.expand_rulesets:
                raise request_error("INVALID_ARGUMENT", "mode=list 不支持 expandRulesets")
            encode = encode or ENCODE_BASE64
            if encode not in (ENCODE_BASE64, ENCODE_RAW):
                raise request_error("INVALID_ARGUMENT", "不支持的 encode（仅支持 base64/raw）", encode)
        else:
            if encode:
                raise request_error("INVALID_ARGUMENT", "mode=config 不支持 encode")
            if target not in _DEFAULT_EXT:
                raise request_error("INVALID_ARGUMENT",
                                    "不支持的 target（仅支持 clash/shadowrocket/surge/quanx）", target)
            if not profile:
                raise request_error("INVALID_ARGUMENT", "profile 不能为空")

        request = replace(self, mode=mode, subs=subs, target=target, profile=profile,
                          file_name=self.file_name.strip(), encode=encode)
        output_file_name(request)
        return request


def output_file_name(request: ConvertRequest) -> str:
    """
    附件文件名：优先使用请求中的 file_name，否则按 mode/target 取默认值；
    没有扩展名时补上默认扩展名。
    """
    base = request.file_name.strip()
    if not base:
        base = "ss" if request.mode == MODE_LIST else request.target
    if not base:
        return ""
    if has_forbidden_chars(base):
        raise request_error("INVALID_ARGUMENT", "fileName 含有非法控制字符")
    if "/" in base or "\\" in base:
        raise request_error("INVALID_ARGUMENT", "fileName 不允许包含路径分隔符")
    if len(base.encode("utf-8")) > FILE_NAME_MAX:
        raise request_error("INVALID_ARGUMENT", "fileName 过长", f"max={FILE_NAME_MAX} bytes")

    dot = base.rfind(".")
    if 0 < dot < len(base) - 1:
        return base
    ext = ".txt" if request.mode == MODE_LIST else _DEFAULT_EXT.get(request.target, "")
    return base + ext


def build_managed_config_url(request: ConvertRequest, public_base_url: str = "",
                             base_url: str = DEFAULT_BASE_URL) -> str:
    """
    生成 Surge managed-config 回链地址，query 顺序固定：
    mode, target, fileName?, expandRulesets?, sub...（输入顺序）, profile
    """
    base = public_base_url.strip() or base_url.strip()
    parts = urlsplit(base)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise CompileError(AppError(
            code="PROFILE_VALIDATE_ERROR",
            message="public_base_url 不合法，无法生成 managed-config URL",
            stage=STAGE_COMPILE,
            snippet=base,
        ))

    params = [("mode", MODE_CONFIG), ("target", Target.SURGE.value)]
    if request.file_name.strip():
        params.append(("fileName", request.file_name.strip()))
    if request.expand_rulesets:
        params.append(("expandRulesets", "true"))
    params += [("sub", sub) for sub in request.subs]
    params.append(("profile", request.profile))

    query = "&".join(f"{key}={percent_encode(value)}" for key, value in params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


# ======================== 拉取 ========================

def _fetch_and_parse_sub(fetcher, url: str, deadline: float | None, cancel: threading.Event) -> list[Proxy]:
    text = fetcher.fetch_text(FetchKind.SUBSCRIPTION, url, deadline=deadline, cancel=cancel)
    proxies = parse_subscription_text(url, text)
    log.info(f"  订阅 {short_url(url)} 解析到 {len(proxies)} 个节点")
    return proxies


def fetch_subscriptions(urls, fetcher, *, max_workers: int = 4, deadline: float | None = None,
                        cancel: threading.Event | None = None) -> list[Proxy]:
    """
    并发拉取并解析订阅，结果按 URL 首次出现的顺序拼接。
    相同 URL 只拉取一次；按顺序第一个失败的 URL 的错误胜出，其余任务随即取消。
    """
    urls = [u.strip() for u in urls]
    if any(not u for u in urls):
        raise request_error("INVALID_ARGUMENT", "sub 不能为空")
    unique = list(dict.fromkeys(urls))
    if not unique:
        raise request_error("INVALID_ARGUMENT", "缺少 sub 参数")

    cancel = cancel or threading.Event()
    workers = max(1, min(max_workers, len(unique)))
    log.info(f"开始拉取 {len(unique)} 个订阅（并发 {workers} 线程）...")

    proxies: list[Proxy] = []
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_fetch_and_parse_sub, fetcher, url, deadline, cancel) for url in unique]
        for future in futures:
            try:
                proxies.extend(future.result())
            except Exception:
                cancel.set()
                for pending in futures:
                    pending.cancel()
                raise

    if not proxies:
        raise CompileError(AppError(code="SUB_PARSE_ERROR", message="订阅中没有任何可用节点", stage=STAGE_COMPILE))
    return proxies


def fetch_profile(fetcher, url: str, required_target: str = "", *, deadline: float | None = None,
                  cancel: threading.Event | None = None) -> ProfileSpec:
    url = url.strip()
    if not url:
        raise request_error("INVALID_ARGUMENT", "profile 不能为空")
    text = fetcher.fetch_text(FetchKind.PROFILE, url, deadline=deadline, cancel=cancel)
    return parse_profile(url, text, required_target)


# ======================== 转换 ========================

def _convert_list(request: ConvertRequest, fetcher, options: ConvertOptions, deadline: float) -> str:
    subs = fetch_subscriptions(request.subs, fetcher, max_workers=options.max_workers, deadline=deadline)
    proxies = normalize_proxies(subs)
    raw = render_ss_list(proxies)
    if request.encode == ENCODE_RAW:
        return raw
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def _convert_config(request: ConvertRequest, fetcher, options: ConvertOptions, deadline: float,
                    base_url: str) -> str:
    target = Target(request.target)
    cancel = threading.Event()

    with ThreadPoolExecutor(max_workers=1) as executor:
        profile_future = executor.submit(
            fetch_profile, fetcher, request.profile, target.value, deadline=deadline, cancel=cancel
        )
        try:
            subs = fetch_subscriptions(
                request.subs, fetcher, max_workers=options.max_workers, deadline=deadline, cancel=cancel
            )
        except Exception:
            profile_future.cancel()
            raise
        spec = profile_future.result()

    def fetch_ruleset(url: str) -> str:
        return fetcher.fetch_text(FetchKind.RULESET, url, deadline=deadline)

    result = compile_profile(subs, spec, expand_rulesets=request.expand_rulesets, fetch_ruleset=fetch_ruleset)
    blocks = render(target, result)

    template_url = spec.templates[target.value]
    template_text = fetcher.fetch_text(FetchKind.TEMPLATE, template_url, deadline=deadline)
    out = inject_anchors(template_text, blocks, target, template_url)

    if target == Target.SURGE:
        managed_url = build_managed_config_url(request, spec.public_base_url, base_url)
        out = ensure_managed_config(out, managed_url, template_url)
    return out


def convert(request: ConvertRequest, fetcher, *, options: ConvertOptions | None = None,
            metrics: Metrics | None = None, base_url: str = DEFAULT_BASE_URL) -> str:
    """
    执行一次转换，返回最终文本。
    fetcher 需提供 fetch_text(kind, url, *, deadline=None, cancel=None)。
    失败时抛出 SubconvError（未知异常原样抛出，由调用方映射为 INTERNAL_ERROR）。
    """
    options = options or ConvertOptions()
    try:
        request = request.validate()
        deadline = time.monotonic() + options.convert_timeout
        if request.mode == MODE_LIST:
            out = _convert_list(request, fetcher, options, deadline)
        else:
            out = _convert_config(request, fetcher, options, deadline, base_url)
    except SubconvError as e:
        log.error(f"转换失败: {e}")
        if metrics is not None:
            metrics.inc_error(e.app_error.stage, e.app_error.code)
        raise
    except Exception as e:
        if metrics is not None:
            error = app_error_for(e)
            metrics.inc_error(error.stage, error.code)
        raise

    if metrics is not None:
        metrics.inc_conversion(request.mode, request.target)
    log.info(f"转换完成：mode={request.mode} target={request.target or '-'}，输出 {len(out)} 字符")
    return out
