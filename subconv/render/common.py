"""各 target 渲染共用的小工具。"""

from dataclasses import dataclass

from ..errors import AppError, RenderError, STAGE_RENDER, truncate_snippet
from ..model import PROXY_TYPE_SS, Proxy

OBFS_PLUGIN_NAMES = ("simple-obfs", "obfs-local")


@dataclass(frozen=True)
class Blocks:
    """渲染结果：每个字段对应模板中的一个锚点，行之间以 \\n 分隔、不带结尾换行。"""

    proxies: str = ""
    groups: str = ""
    rule_providers: str = ""   # 仅 clash
    rulesets: str = ""         # 仅 quanx
    rules: str = ""


def render_error(code: str, message: str, snippet: str = "", hint: str = "") -> RenderError:
    return RenderError(
        AppError(code=code, message=message, stage=STAGE_RENDER, snippet=truncate_snippet(snippet), hint=hint)
    )


def ensure_ss(proxy: Proxy) -> None:
    if proxy.type != PROXY_TYPE_SS:
        raise render_error("INVALID_ARGUMENT", "仅支持 ss 节点渲染", snippet=proxy.type)


def obfs_plugin(proxy: Proxy) -> tuple[str, str] | None:
    """
    解析 ss 的 obfs 插件，返回 (mode, host)；没有插件时返回 None。
    只接受 simple-obfs / obfs-local，且必须带 obfs=<mode>。
    """
    if not proxy.plugin_name:
        return None
    if proxy.plugin_name not in OBFS_PLUGIN_NAMES:
        raise render_error("UNSUPPORTED_PLUGIN", f"不支持的 SS plugin：{proxy.plugin_name}",
                           snippet=proxy.plugin_name)

    mode = host = ""
    for key, value in proxy.plugin_opts:
        key = key.strip()
        if key == "obfs":
            mode = value.strip()
        elif key == "obfs-host":
            host = value.strip()
    if not mode:
        raise render_error("UNSUPPORTED_PLUGIN", "simple-obfs/obfs-local 缺少必需选项 obfs=<mode>",
                           snippet=proxy.plugin_name,
                           hint="example: ?plugin=simple-obfs;obfs=tls;obfs-host=example.com")
    return mode, host


def yaml_dq(text: str) -> str:
    """YAML 双引号标量，只转义 \\ " \\r \\n \\t。"""
    text = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
        .replace("\t", "\\t")
    )
    return f'"{text}"'


def name_ok(name: str, app: str) -> None:
    """策略组名 / 规则 action 不能包含逗号、等号或控制字符。"""
    if "," in name or "=" in name or any(ch in name for ch in ("\r", "\n", "\x00")):
        raise render_error("PROFILE_VALIDATE_ERROR",
                           f"策略组名/规则 action 含有 {app} 不支持的字符（, 或 = 或控制字符）",
                           snippet=name, hint="rename the group/action in profile")


def ruleset_url_ok(url: str, app: str) -> None:
    if not url.strip():
        raise render_error("PROFILE_VALIDATE_ERROR", "ruleset URL 不能为空")
    if "," in url or any(ch in url for ch in ("\r", "\n", "\x00")):
        raise render_error("PROFILE_VALIDATE_ERROR", f"ruleset URL 含有 {app} 不支持的字符（, 或控制字符）",
                           snippet=url, hint="use a URL without ','")
