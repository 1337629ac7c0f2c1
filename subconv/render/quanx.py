"""Quantumult X 渲染：server_local / policy / filter_remote / filter_local 四段内容。"""

from ..model import DIRECT, GROUP_SELECT, GROUP_URL_TEST, REJECT, RULE_IP_CIDR6, RULE_MATCH, CompiledResult, Rule
from .common import Blocks, ensure_ss, name_ok, obfs_plugin, render_error, ruleset_url_ok

APP_NAME = "Quantumult X"

_BUILTIN_POLICIES = {DIRECT: "direct", REJECT: "reject"}


def proxy_tag(name: str) -> str:
    if any(ch in name for ch in ("\r", "\n", "\x00")):
        raise render_error("SUB_PARSE_ERROR", "节点名包含非法控制字符", snippet=name)
    if '"' in name:
        raise render_error("SUB_PARSE_ERROR", f"节点名包含双引号，无法输出到 {APP_NAME}",
                           snippet=name, hint="remove '\"' from node name")
    if "," in name:
        return f'"{name}"'
    return name


def policy_name(action: str) -> str:
    if action in _BUILTIN_POLICIES:
        return _BUILTIN_POLICIES[action]
    name_ok(action, APP_NAME)
    return action


def rule_line(rule: Rule, action: str) -> str:
    if rule.type == RULE_MATCH:
        return f"FINAL,{action}"
    rule_type = "IP6-CIDR" if rule.type == RULE_IP_CIDR6 else rule.type
    line = f"{rule_type},{rule.value},{action}"
    if rule.no_resolve and rule_type in ("IP-CIDR", "IP6-CIDR"):
        line += ",no-resolve"
    return line


def render_quanx(result: CompiledResult) -> Blocks:
    tags = {proxy.name: proxy_tag(proxy.name) for proxy in result.proxies}

    def member(name: str) -> str:
        return _BUILTIN_POLICIES.get(name) or tags.get(name, name)

    proxy_lines = []
    for proxy in result.proxies:
        ensure_ss(proxy)
        line = (
            f"shadowsocks = {proxy.server}:{proxy.port}, method={proxy.cipher.lower()}, "
            f"password={proxy.password}, tag={tags[proxy.name]}"
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
        members = ", ".join(member(m) for m in group.members)
        if group.type == GROUP_SELECT:
            group_lines.append(f"static={group.name}, {members}")
        elif group.type == GROUP_URL_TEST:
            line = f"url-latency-benchmark={group.name}, {members}, check-interval={group.interval}"
            if group.tolerance is not None:
                line += f", tolerance={group.tolerance}"
            group_lines.append(line)
        else:
            raise render_error("INVALID_ARGUMENT", f"不支持的策略组类型：{group.type}", snippet=group.type)

    # 同一 action 的多个 ruleset 用 tag 后缀区分
    ruleset_lines = []
    tag_counts: dict[str, int] = {}
    for ref in result.ruleset_refs:
        ruleset_url_ok(ref.url, APP_NAME)
        policy = policy_name(ref.action)
        tag_counts[ref.action] = tag_counts.get(ref.action, 0) + 1
        tag = ref.action if tag_counts[ref.action] == 1 else f"{ref.action}-{tag_counts[ref.action]}"
        name_ok(tag, APP_NAME)
        ruleset_lines.append(f"{ref.url}, tag={tag}, force-policy={policy}, enabled=true")

    rule_lines = [rule_line(rule, policy_name(rule.action)) for rule in result.rules]

    return Blocks(
        proxies="\n".join(proxy_lines),
        groups="\n".join(group_lines),
        rulesets="\n".join(ruleset_lines),
        rules="\n".join(rule_lines),
    )
