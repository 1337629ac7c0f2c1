"""Clash (mihomo) YAML 片段渲染。所有字符串值一律双引号输出。"""

import re
from posixpath import basename
from urllib.parse import urlsplit

from ..model import GROUP_URL_TEST, CompiledResult, RulesetRef
from .common import Blocks, ensure_ss, obfs_plugin, render_error, yaml_dq

PROVIDER_INTERVAL = 86400
PROVIDER_NAME_MAX = 60

_UNSAFE_PROVIDER_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def render_clash(result: CompiledResult) -> Blocks:
    proxy_lines = []
    for proxy in result.proxies:
        ensure_ss(proxy)
        proxy_lines += [
            f"- name: {yaml_dq(proxy.name)}",
            "  type: ss",
            f"  server: {yaml_dq(proxy.server)}",
            f"  port: {proxy.port}",
            f"  cipher: {yaml_dq(proxy.cipher.lower())}",
            f"  password: {yaml_dq(proxy.password)}",
        ]
        plugin = obfs_plugin(proxy)
        if plugin:
            mode, host = plugin
            proxy_lines += ["  plugin: obfs", "  plugin-opts:", f"    mode: {yaml_dq(mode)}"]
            if host:
                proxy_lines.append(f"    host: {yaml_dq(host)}")

    group_lines = []
    for group in result.groups:
        group_lines += [f"- name: {yaml_dq(group.name)}", f"  type: {yaml_dq(group.type)}", "  proxies:"]
        group_lines += [f"    - {yaml_dq(member)}" for member in group.members]
        if group.type == GROUP_URL_TEST:
            group_lines += [f"  url: {yaml_dq(group.test_url)}", f"  interval: {group.interval}"]
            if group.tolerance is not None:
                group_lines.append(f"  tolerance: {group.tolerance}")

    providers_block, provider_names = render_rule_providers(result.ruleset_refs)

    rule_lines = [
        f"- {yaml_dq(f'RULE-SET,{name},{ref.action}')}"
        for name, ref in zip(provider_names, result.ruleset_refs)
    ]
    rule_lines += [f"- {yaml_dq(rule.to_line())}" for rule in result.rules]

    return Blocks(
        proxies="\n".join(proxy_lines),
        groups="\n".join(group_lines),
        rule_providers=providers_block,
        rules="\n".join(rule_lines),
    )


def render_rule_providers(refs: tuple[RulesetRef, ...]) -> tuple[str, list[str]]:
    """
    每个 ruleset 生成一个 classical/text 类型的 http rule-provider。
    没有 ruleset 时输出 {}，保证 rule-providers: 下仍是合法 YAML。
    """
    if not refs:
        return "{}", []

    used: dict[str, int] = {}
    names = []
    lines = []
    for ref in refs:
        if not ref.url.strip():
            raise render_error("PROFILE_VALIDATE_ERROR", "ruleset URL 不能为空", snippet=ref.raw)
        if any(ch in ref.url for ch in ("\r", "\n", "\x00")):
            raise render_error("PROFILE_VALIDATE_ERROR", "ruleset URL 含有非法控制字符", snippet=ref.url)

        name = provider_name(ref.url, used)
        names.append(name)
        lines += [
            f"{name}:",
            "  type: http",
            "  behavior: classical",
            f"  url: {yaml_dq(ref.url)}",
            f"  interval: {PROVIDER_INTERVAL}",
            "  format: text",
        ]
    return "\n".join(lines), names


def provider_name(url: str, used: dict[str, int]) -> str:
    """取 URL 路径的文件名（去扩展名）作为 provider 名，重名依次追加 -2、-3。"""
    base = basename(urlsplit(url.strip()).path)
    if "." in base:
        base = base[: base.rfind(".")]
    base = _UNSAFE_PROVIDER_CHARS.sub("_", base.strip()).strip("_-")[:PROVIDER_NAME_MAX]
    if not base:
        base = "ruleset"

    if base not in used:
        used[base] = 1
        return base
    used[base] += 1
    return f"{base}-{used[base]}"
