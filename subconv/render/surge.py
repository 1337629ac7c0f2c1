"""
Surge / Shadowrocket 渲染。
两者语法几乎一致，差异（managed-config 首行）由模板阶段处理。
"""

from ..model import GROUP_SELECT, GROUP_URL_TEST, RESERVED_NAMES, RULE_MATCH, CompiledResult, Rule
from .common import Blocks, ensure_ss, name_ok, obfs_plugin, render_error, ruleset_url_ok

APP_NAME = "Surge/Shadowrocket"


def proxy_name(name: str) -> str:
    """节点名在 Surge 语法中的表示：含逗号时加双引号，含双引号或 = 无法表示。"""
    if any(ch in name for ch in ("\r", "\n", "\x00")):
        raise render_error("SUB_PARSE_ERROR", "节点名包含非法控制字符", snippet=name)
    if '"' in name:
        raise render_error("SUB_PARSE_ERROR", f"节点名包含双引号，无法输出到 {APP_NAME}",
                           snippet=name, hint="remove '\"' from node name")
    if "=" in name:
        raise render_error("SUB_PARSE_ERROR", f"节点名包含 '='，无法输出到 {APP_NAME}", snippet=name)
    if "," in name:
        return f'"{name}"'
    return name


def rule_line(rule: Rule) -> str:
    if rule.type == RULE_MATCH:
        return f"FINAL,{rule.action}"
    return rule.to_line()


def render_surge_like(result: CompiledResult) -> Blocks:
    names = {proxy.name: proxy_name(proxy.name) for proxy in result.proxies}

    proxy_lines = ["DIRECT = direct", "REJECT = reject"]
    for proxy in result.proxies:
        ensure_ss(proxy)
        line = (
            f"{names[proxy.name]} = ss, {proxy.server}, {proxy.port}, "
            f"encrypt-method={proxy.cipher.lower()}, password={proxy.password}"
        )
        plugin = obfs_plugin(proxy)
        if plugin:
            mode, host = plugin
            line += f", obfs={mode}"
            if host:
                line += f", obfs-host={host}"
        proxy_lines.append(line)

    group_lines = []
    for group in result.groups:
        name_ok(group.name, APP_NAME)
        members = ", ".join(names.get(m, m) for m in group.members)
        if group.type == GROUP_SELECT:
            group_lines.append(f"{group.name} = select, {members}")
        elif group.type == GROUP_URL_TEST:
            line = f"{group.name} = url-test, {members}, url={group.test_url}, interval={group.interval}"
            if group.tolerance is not None:
                line += f", tolerance={group.tolerance}"
            group_lines.append(line)
        else:
            raise render_error("INVALID_ARGUMENT", f"不支持的策略组类型：{group.type}", snippet=group.type)

    rule_lines = []
    # ruleset 以远程引用输出，由客户端自行拉取
    for ref in result.ruleset_refs:
        ruleset_url_ok(ref.url, APP_NAME)
        if ref.action not in RESERVED_NAMES:
            name_ok(ref.action, APP_NAME)
        rule_lines.append(f"RULE-SET,{ref.url},{ref.action}")

    for rule in result.rules:
        if rule.action not in RESERVED_NAMES:
            name_ok(rule.action, APP_NAME)
        rule_lines.append(rule_line(rule))

    return Blocks(
        proxies="\n".join(proxy_lines),
        groups="\n".join(group_lines),
        rules="\n".join(rule_lines),
    )
