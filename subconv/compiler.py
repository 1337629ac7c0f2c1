"""
compiler.py
===========
把订阅节点与 profile 编译为最终结果：
  1. 节点规范化 → 去重（保留首次出现）→ 确定性命名 → 按名称排序
  2. 策略组展开（@all / 正则过滤）
  3. 规则集展开（可选）+ 内联规则，校验 ACTION 引用与 MATCH 位置

相同输入（相同顺序）必须得到逐字节相同的结果。
"""

import logging
from dataclasses import replace
from typing import Callable

from .errors import AppError, CompileError, STAGE_COMPILE, truncate_snippet
from .model import (
    GROUP_SELECT,
    GROUP_URL_TEST,
    PROXY_TYPE_SS,
    RESERVED_NAMES,
    RULE_MATCH,
    CompiledResult,
    Group,
    Proxy,
    Rule,
    RulesetRef,
    has_forbidden_chars,
)
from .profile import ALL_MEMBERS, ProfileSpec
from .rules import parse_ruleset_text

log = logging.getLogger(__name__)

# url -> ruleset 文本
RulesetFetcher = Callable[[str], str]


def _compile_error(code: str, message: str, snippet: str = "",
                   cause: BaseException | None = None) -> CompileError:
    return CompileError(
        AppError(code=code, message=message, stage=STAGE_COMPILE, snippet=truncate_snippet(snippet)),
        cause,
    )


# ======================== 节点 ========================

def normalize_proxy(proxy: Proxy) -> Proxy:
    """清理单个节点字段：去空白、server/cipher 小写、拒绝空值与控制字符。"""
    if proxy.type != PROXY_TYPE_SS:
        raise ValueError("only ss proxies are supported")

    name = proxy.name.strip()
    if has_forbidden_chars(name):
        raise ValueError("proxy name contains control chars")
    server = proxy.server.strip().lower()
    if not server:
        raise ValueError("empty server")
    cipher = proxy.cipher.strip().lower()
    if not cipher:
        raise ValueError("empty cipher")
    password = proxy.password.strip()
    if not password:
        raise ValueError("empty password")
    for value in (server, cipher, password):
        if has_forbidden_chars(value):
            raise ValueError("control chars in proxy fields")

    return replace(
        proxy,
        name=name,
        server=server,
        cipher=cipher,
        password=password,
        plugin_name=proxy.plugin_name.strip(),
        plugin_opts=tuple((k.strip(), v.strip()) for k, v in proxy.plugin_opts),
    )


def dedup_key(proxy: Proxy) -> tuple:
    return (
        proxy.type,
        proxy.server,
        proxy.port,
        proxy.cipher,
        proxy.password,
        proxy.plugin_name,
        proxy.plugin_opts,
    )


def normalize_proxies(proxies: list[Proxy]) -> list[Proxy]:
    """
    规范化 + 去重 + 确定性命名 + 排序。
    list 模式与 config 模式共用这一步。
    """
    normalized = []
    for proxy in proxies:
        try:
            normalized.append(normalize_proxy(proxy))
        except ValueError as e:
            raise _compile_error("SUB_PARSE_ERROR", "节点字段不合法", snippet=proxy.name, cause=e) from e

    # 去重：按合并顺序保留第一次出现
    seen = set()
    deduped = []
    for proxy in normalized:
        key = dedup_key(proxy)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(proxy)

    # 命名：名称为空时用 server:port，冲突或保留名时取 base-2、base-3 ...
    used: set[str] = set()
    named = []
    for proxy in deduped:
        base = proxy.name or f"{proxy.server}:{proxy.port}"
        base = base.replace("=", "-")
        name = base
        if name in RESERVED_NAMES or name in used:
            n = 2
            while f"{base}-{n}" in used:
                n += 1
            name = f"{base}-{n}"
        used.add(name)
        named.append(replace(proxy, name=name))

    named.sort(key=lambda p: p.name.encode("utf-8"))
    dropped = len(normalized) - len(named)
    log.info(f"  节点规范化完成：输入 {len(normalized)} 个，去重 {dropped} 个，保留 {len(named)} 个")
    return named


# ======================== 策略组 ========================

def _compile_groups(proxies: list[Proxy], specs) -> list[Group]:
    all_names = [p.name for p in proxies]
    groups = []
    for spec in specs:
        if spec.type == GROUP_SELECT:
            if spec.members:
                members = []
                for member in spec.members:
                    if member == ALL_MEMBERS:
                        members.extend(all_names)
                    else:
                        members.append(member)
            elif spec.pattern is not None:
                members = [name for name in all_names if spec.pattern.search(name)]
            else:
                members = []
            if not members:
                raise _compile_error("GROUP_PARSE_ERROR", f"select 组为空：{spec.name}", snippet=spec.raw)
            groups.append(Group(name=spec.name, type=GROUP_SELECT, members=tuple(members)))
        elif spec.type == GROUP_URL_TEST:
            members = [name for name in all_names if spec.pattern is not None and spec.pattern.search(name)]
            if not members:
                raise _compile_error("GROUP_PARSE_ERROR", f"url-test 组匹配为空：{spec.name}", snippet=spec.raw)
            groups.append(Group(
                name=spec.name,
                type=GROUP_URL_TEST,
                members=tuple(members),
                test_url=spec.test_url,
                interval=spec.interval,
                tolerance=spec.tolerance,
            ))
        else:
            raise _compile_error("GROUP_UNSUPPORTED_TYPE", f"不支持的策略组类型：{spec.type}", snippet=spec.raw)
    return groups


# ======================== 规则 ========================

def _compile_rules(group_names: set[str], spec: ProfileSpec, expand_rulesets: bool,
                   fetch_ruleset: RulesetFetcher | None) -> tuple[list[Rule], list[RulesetRef]]:
    for ruleset in spec.rulesets:
        if ruleset.action not in RESERVED_NAMES and ruleset.action not in group_names:
            raise _compile_error("REFERENCE_NOT_FOUND", f"ruleset ACTION 引用不存在：{ruleset.action}",
                                 snippet=ruleset.raw)

    rules: list[Rule] = []
    refs: list[RulesetRef] = []
    if expand_rulesets:
        if spec.rulesets and fetch_ruleset is None:
            raise _compile_error("INVALID_ARGUMENT", "展开 ruleset 需要提供拉取函数")
        # ruleset 在前，按声明顺序、文件行序展开
        for ruleset in spec.rulesets:
            text = fetch_ruleset(ruleset.url)
            expanded = parse_ruleset_text(ruleset.url, text, ruleset.action)
            log.info(f"  ruleset 展开：{ruleset.action} <- {len(expanded)} 条规则")
            rules.extend(expanded)
    else:
        refs = [RulesetRef(raw=r.raw, action=r.action, url=r.url) for r in spec.rulesets]

    rules.extend(spec.rules)

    match_indexes = [i for i, rule in enumerate(rules) if rule.type == RULE_MATCH]
    if len(match_indexes) != 1:
        raise _compile_error("RULE_PARSE_ERROR",
                             f"兜底规则 MATCH 数量不合法（got={len(match_indexes)}, want=1）")
    if match_indexes[0] != len(rules) - 1:
        raise _compile_error("RULE_PARSE_ERROR", "兜底规则 MATCH 必须是最后一条")

    for rule in rules:
        if rule.action not in RESERVED_NAMES and rule.action not in group_names:
            raise _compile_error("REFERENCE_NOT_FOUND", f"规则 ACTION 引用不存在：{rule.action}",
                                 snippet=rule.to_line())
    return rules, refs


# ======================== 主入口 ========================

def compile_profile(proxies: list[Proxy], spec: ProfileSpec, *, expand_rulesets: bool = False,
                    fetch_ruleset: RulesetFetcher | None = None) -> CompiledResult:
    """
    编译订阅节点与 profile。
    expand_rulesets=True 时通过 fetch_ruleset(url) 拉取规则集并内联，
    此时结果中不再保留 ruleset 引用。
    """
    if spec is None:
        raise _compile_error("PROFILE_VALIDATE_ERROR", "profile 不能为空")

    group_names = {g.name for g in spec.groups}

    final_proxies = normalize_proxies(proxies)
    if not final_proxies:
        raise _compile_error("SUB_PARSE_ERROR", "没有任何可用节点")

    proxy_names = {p.name for p in final_proxies}
    for group in spec.groups:
        if group.name in proxy_names:
            raise _compile_error("PROFILE_VALIDATE_ERROR", f"策略组名与节点名冲突：{group.name}",
                                 snippet=group.raw)

    groups = _compile_groups(final_proxies, spec.groups)
    rules, refs = _compile_rules(group_names, spec, expand_rulesets, fetch_ruleset)

    log.info(f"  编译完成：{len(final_proxies)} 个节点，{len(groups)} 个策略组，{len(rules)} 条规则")
    return CompiledResult(
        proxies=tuple(final_proxies),
        groups=tuple(groups),
        rules=tuple(rules),
        ruleset_refs=tuple(refs),
    )
