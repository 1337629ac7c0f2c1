"""
subscription.py
===============
解析 Shadowsocks 订阅文本（原始 ss:// 列表或整体 base64 编码），
产出未规范化的 Proxy 列表；同时提供反向的规范 ss:// URI 生成。

支持的单行格式：
  1. ss://<b64(method:password)>@<host>:<port>[/][?plugin=...][#name]
  2. ss://<b64(method:password@host:port)>[#name]
"""

import base64
import binascii
import logging
import re
from urllib.parse import quote, unquote

from .errors import AppError, STAGE_PARSE_SUB, SubscriptionParseError, truncate_snippet
from .model import PROXY_TYPE_SS, Proxy, has_forbidden_chars

log = logging.getLogger(__name__)

SCHEME = "ss://"
UTF8_BOM = "\ufeff"

# (altchars, 是否带 padding)，按顺序尝试：标准、URL-safe、两种无 padding 变体
_B64_VARIANTS = (
    (None, True),
    (b"-_", True),
    (None, False),
    (b"-_", False),
)

_BAD_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")
_PORT_RE = re.compile(r"[0-9]+")


def _error(source_url: str, line_no: int, snippet: str, code: str, message: str,
           hint: str = "", cause: BaseException | None = None) -> SubscriptionParseError:
    return SubscriptionParseError(
        AppError(
            code=code,
            message=message,
            stage=STAGE_PARSE_SUB,
            url=source_url,
            line=line_no,
            snippet=truncate_snippet(snippet),
            hint=hint,
        ),
        cause,
    )


# ======================== 编解码工具 ========================

def decode_base64(text: str) -> bytes:
    """依次尝试四种 base64 变体，第一个成功的结果生效。"""
    last_error: Exception = binascii.Error("empty input")
    for altchars, padded in _B64_VARIANTS:
        data = text
        if padded:
            if len(data) % 4:
                last_error = binascii.Error("incorrect padding")
                continue
        else:
            if "=" in data or len(data) % 4 == 1:
                last_error = binascii.Error("invalid unpadded length")
                continue
            data += "=" * (-len(data) % 4)
        try:
            return base64.b64decode(data, altchars=altchars, validate=True)
        except ValueError as e:   # binascii.Error 也是 ValueError
            last_error = e
    raise last_error


def _decode_base64_text(text: str) -> str:
    return decode_base64(text).decode("utf-8")


def percent_decode(text: str) -> str:
    """严格的百分号解码：非法转义或非 UTF-8 结果直接报错。"""
    if _BAD_PERCENT.search(text):
        raise ValueError(f"invalid percent escape in {text[:40]!r}")
    return unquote(text, errors="strict")


def percent_encode(text: str) -> str:
    """RFC 3986 百分号编码，空格编码为 %20。"""
    return quote(text, safe="")


def split_host_port(text: str) -> tuple[str, int]:
    """
    拆分 host:port，IPv6 地址必须写成 [addr]:port。
    端口必须位于 1-65535。
    """
    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ValueError("missing ']' in address")
        host = text[1:end]
        rest = text[end + 1:]
        if not rest.startswith(":"):
            raise ValueError("missing port in address")
        port_raw = rest[1:]
    else:
        if text.count(":") != 1:
            raise ValueError("expected host:port")
        host, port_raw = text.split(":")

    host = host.strip()
    if not host:
        raise ValueError("empty host")
    port_raw = port_raw.strip()
    if not _PORT_RE.fullmatch(port_raw):
        raise ValueError(f"invalid port {port_raw!r}")
    port = int(port_raw)
    if port < 1 or port > 65535:
        raise ValueError("port out of range")
    return host, port


def _split_credentials(decoded: str) -> tuple[str, str]:
    colon = decoded.find(":")
    if colon <= 0:
        raise ValueError("missing ':' between cipher and password")
    cipher = decoded[:colon].strip()
    password = decoded[colon + 1:].strip()
    if not cipher or not password:
        raise ValueError("empty cipher or password")
    if has_forbidden_chars(cipher) or has_forbidden_chars(password):
        raise ValueError("control chars in cipher/password")
    return cipher, password


# ======================== 解析 ========================

def parse_subscription_text(source_url: str, content: str) -> list[Proxy]:
    """
    解析一份订阅文本。
    含有 "ss://" 子串时按原始列表处理，否则整体去空白后按 base64 解码再解析。
    """
    text = content.removeprefix(UTF8_BOM).strip()
    if not text:
        raise _error(source_url, 0, "", "SUB_PARSE_ERROR", "订阅内容为空")

    if SCHEME in text:
        return _parse_raw_list(source_url, text)

    compact = "".join(text.split())
    try:
        decoded = _decode_base64_text(compact)
    except (ValueError, UnicodeDecodeError) as e:
        raise _error(source_url, 0, text, "SUB_BASE64_DECODE_ERROR", "订阅 base64 解码失败", cause=e) from e

    decoded = decoded.removeprefix(UTF8_BOM).strip()
    if not decoded:
        raise _error(source_url, 0, "", "SUB_PARSE_ERROR", "订阅内容为空")
    log.debug(f"  订阅为 base64 编码，解码后 {len(decoded)} 字符")
    return _parse_raw_list(source_url, decoded)


def _parse_raw_list(source_url: str, raw: str) -> list[Proxy]:
    proxies: list[Proxy] = []
    for line_no, orig in enumerate(raw.split("\n"), 1):
        line = orig.strip()
        if not line or line.startswith("#"):
            continue
        if not line.startswith(SCHEME):
            raise _error(source_url, line_no, orig, "SUB_UNSUPPORTED_SCHEME",
                         "仅支持 ss:// 协议", hint="expected: ss://...")
        proxies.append(parse_ss_uri(line, source_url=source_url, line_no=line_no))

    if not proxies:
        raise _error(source_url, 0, "", "SUB_PARSE_ERROR", "订阅中没有任何可用节点")
    return proxies


def parse_ss_uri(uri: str, source_url: str = "", line_no: int = 0) -> Proxy:
    """解析单条 ss:// URI，失败时抛出带行号的 SubscriptionParseError。"""

    def fail(message: str, hint: str = "", cause: BaseException | None = None):
        return _error(source_url, line_no, uri, "SUB_PARSE_ERROR", message, hint=hint, cause=cause)

    # 先切 #name
    without_frag, has_frag, frag = uri.partition("#")
    name = ""
    if has_frag:
        try:
            name = percent_decode(frag).strip()
        except ValueError as e:
            raise fail("节点名称 URL 解码失败", cause=e) from e
        if has_forbidden_chars(name):
            raise fail("节点名称包含非法控制字符", hint="forbidden: \\r \\n \\0")

    without_query, has_query, query = without_frag.partition("?")
    plugin_name, plugin_opts = _parse_plugin_query(query if has_query else "", fail)

    rest = without_query.removeprefix(SCHEME)
    if not rest:
        raise fail("ss:// 后缺少内容")

    if "@" in rest:
        # 格式 1：<b64(method:password)>@<host>:<port>
        user_b64, _, host_part = rest.partition("@")
        if not user_b64 or not host_part:
            raise fail("ss uri 格式不合法")
        slash = host_part.find("/")
        if slash >= 0:
            if host_part[slash:] != "/":
                raise fail("ss uri path 不支持（仅允许空或 /）")
            host_part = host_part[:slash]
        try:
            cipher, password = _split_credentials(_decode_base64_text(user_b64))
        except (ValueError, UnicodeDecodeError) as e:
            raise fail("ss userinfo base64 解码失败", cause=e) from e
    else:
        # 格式 2：<b64(method:password@host:port)>
        try:
            decoded = _decode_base64_text(rest)
        except UnicodeDecodeError as e:
            raise fail("ss base64 解码结果不是合法 UTF-8", cause=e) from e
        except ValueError as e:
            raise fail("ss base64 解码失败", cause=e) from e
        cred_part, at, host_part = decoded.rpartition("@")
        if not at:
            raise fail("ss base64 解码结果缺少 @ 分隔符")
        try:
            cipher, password = _split_credentials(cred_part)
        except ValueError as e:
            raise fail("ss base64 解码结果缺少合法的 cipher:password", cause=e) from e

    try:
        server, port = split_host_port(host_part)
    except ValueError as e:
        raise fail("服务器地址或端口不合法", cause=e) from e

    return Proxy(
        type=PROXY_TYPE_SS,
        name=name,
        server=server,
        port=port,
        cipher=cipher,
        password=password,
        plugin_name=plugin_name,
        plugin_opts=plugin_opts,
    )


def _parse_plugin_query(query: str, fail) -> tuple[str, tuple[tuple[str, str], ...]]:
    """
    解析 query，只接受唯一的 plugin 参数。
    SIP002 的 plugin 值内部使用分号，因此这里只按 & 切分参数。
    """
    if not query:
        return "", ()

    plugin_value = None
    for part in query.split("&"):
        if not part:
            continue
        key_raw, has_eq, value_raw = part.partition("=")
        if not has_eq:
            raise fail("query 参数必须是 key=value 形式")
        try:
            key = percent_decode(key_raw)
            value = percent_decode(value_raw)
        except ValueError as e:
            raise fail("query 参数解码失败", cause=e) from e
        if key != "plugin":
            raise fail("出现未知 query 参数（仅支持 plugin）", hint="only allow: plugin")
        if plugin_value is not None:
            raise fail("重复的 plugin 参数")
        plugin_value = value

    if plugin_value is None:
        return "", ()
    if not plugin_value.strip():
        raise fail("plugin 参数不能为空")

    segments = plugin_value.split(";")
    plugin_name = segments[0].strip()
    if not plugin_name:
        raise fail("plugin 名称不能为空")

    opts: list[tuple[str, str]] = []
    for seg in segments[1:]:
        if not seg:
            continue
        key, has_eq, value = seg.partition("=")
        if not has_eq:
            raise fail("plugin 选项必须是 k=v 形式")
        key = key.strip()
        if not key:
            raise fail("plugin 选项 key 不能为空")
        opts.append((key, value))
    return plugin_name, tuple(opts)


# ======================== 生成 ========================

def canonical_ss_uri(proxy: Proxy) -> str:
    """
    生成规范 ss:// URI：
        ss://b64url(cipher:password)@host:port[/?plugin=...]#name
    IPv6 主机加方括号。
    """
    if proxy.type != PROXY_TYPE_SS:
        raise ValueError(f"unsupported proxy type: {proxy.type}")

    userinfo = f"{proxy.cipher.lower()}:{proxy.password}"
    user_b64 = base64.urlsafe_b64encode(userinfo.encode("utf-8")).decode("ascii").rstrip("=")

    host = proxy.server
    if ":" in host and not (host.startswith("[") and host.endswith("]")):
        host = f"[{host}]"

    uri = f"{SCHEME}{user_b64}@{host}:{proxy.port}"
    if proxy.plugin_name.strip():
        spec = proxy.plugin_name.strip()
        for key, value in proxy.plugin_opts:
            spec += f";{key.strip()}={value.strip()}"
        uri += "/?plugin=" + percent_encode(spec)
    if proxy.name:
        uri += "#" + percent_encode(proxy.name)
    return uri


def render_ss_list(proxies) -> str:
    """把节点列表渲染为换行分隔的规范 URI 列表（以换行结尾）。"""
    lines = [canonical_ss_uri(p) for p in proxies]
    if not lines:
        raise ValueError("empty proxies list")
    return "\n".join(lines) + "\n"
