"""
规则行语法。

同一套语法服务两个场景：
  - profile.rule 内联规则：ACTION 必填，允许 MATCH；
  - 远程 ruleset 文件：ACTION 可省略（回落到 ruleset 声明的动作），禁止 MATCH。
"""

import ipaddress
import logging

from .errors import AppError, RuleError, RulesetParseError, STAGE_PARSE_RULESET, truncate_snippet
from .model import RULE_IP_CIDR, RULE_IP_CIDR6, RULE_MATCH, Rule

log = logging.getLogger(__name__)

SIMPLE_RULE_TYPES = frozenset({
    "DOMAIN",
    "DOMAIN-SUFFIX",
    "DOMAIN-KEYWORD",
    "GEOIP",
    "PROCESS-NAME",
    "URL-REGEX",
})
RULE_TYPES = SIMPLE_RULE_TYPES | {RULE_IP_CIDR, RULE_IP_CIDR6, RULE_MATCH}

NO_RESOLVE = "no-resolve"


def parse_inline_rule(line: str) -> Rule:
    """解析 profile.rule 中的一行，ACTION 必须显式给出。"""
    line = line.strip()
    if not line:
        raise RuleError("RULE_PARSE_ERROR", "rule line is empty")
    if line.startswith("#"):
        raise RuleError("RULE_PARSE_ERROR", "rule line is comment")
    return _parse_rule_line(line, default_action=None)


def parse_ruleset_rule(line: str, default_action: str) -> Rule:
    """解析 ruleset 文件中的一行，省略 ACTION 时使用 default_action。"""
    if not default_action:
        raise RuleError("RULE_PARSE_ERROR", "ruleset 默认 ACTION 不能为空")
    return _parse_rule_line(line.strip(), default_action=default_action)


def parse_ruleset_text(source_url: str, text: str, default_action: str) -> list[Rule]:
    """
    解析整份 ruleset 文件（每行一条 classical 规则）。
    空行和 # 注释行跳过；出错时带上 URL 和 1-based 行号。
    """
    rules: list[Rule] = []
    for line_no, orig in enumerate(text.removeprefix("\ufeff").split("\n"), 1):
        line = orig.strip()
        if not line or line.startswith("#"):
            continue
        try:
            rules.append(parse_ruleset_rule(line, default_action))
        except RuleError as e:
            raise RulesetParseError(
                AppError(
                    code=e.code,
                    message=e.message,
                    stage=STAGE_PARSE_RULESET,
                    url=source_url,
                    line=line_no,
                    snippet=truncate_snippet(orig),
                    hint=e.hint,
                ),
                e.cause,
            ) from e
    log.debug(f"  ruleset 解析得到 {len(rules)} 条规则")
    return rules


def _parse_rule_line(line: str, default_action: str | None) -> Rule:
    parts = [p.strip() for p in line.split(",")]
    if not parts[0]:
        raise RuleError("RULE_PARSE_ERROR", "规则类型不能为空")

    rule_type = parts[0].upper()
    if rule_type in SIMPLE_RULE_TYPES:
        return _parse_simple(rule_type, parts, default_action)
    if rule_type in (RULE_IP_CIDR, RULE_IP_CIDR6):
        return _parse_cidr(rule_type, parts, default_action)
    if rule_type == RULE_MATCH:
        if default_action is not None:
            raise RuleError("RULE_PARSE_ERROR", "ruleset 文件中不允许出现 MATCH 规则")
        if len(parts) != 2 or not parts[1]:
            raise RuleError("RULE_PARSE_ERROR", "MATCH 规则必须是 MATCH,<ACTION>")
        return Rule(type=RULE_MATCH, value="", action=parts[1])
    raise RuleError("UNSUPPORTED_RULE_TYPE", f"不支持的规则类型：{rule_type}")


def _parse_simple(rule_type: str, parts: list[str], default_action: str | None) -> Rule:
    if len(parts) == 2 and default_action is None:
        raise RuleError("RULE_PARSE_ERROR", "规则缺少 ACTION", hint="expected: TYPE,VALUE,ACTION")
    if len(parts) not in (2, 3):
        raise RuleError("RULE_PARSE_ERROR", "规则字段数量不合法", hint="expected: TYPE,VALUE[,ACTION]")

    value = parts[1]
    action = parts[2] if len(parts) == 3 else default_action
    if not value or not action:
        raise RuleError("RULE_PARSE_ERROR", "规则 VALUE/ACTION 不能为空")
    return Rule(type=rule_type, value=value, action=action)


def _parse_cidr(rule_type: str, parts: list[str], default_action: str | None) -> Rule:
    hint = f"expected: {rule_type},CIDR,ACTION[,no-resolve]"
    inline = default_action is None

    if len(parts) == 2 and not inline:
        action, no_resolve = default_action, False
    elif len(parts) == 3:
        if parts[2].lower() == NO_RESOLVE:
            if inline:
                # 内联规则必须写 ACTION，这里无法区分 no-resolve 与缺失的 ACTION
                raise RuleError("RULE_PARSE_ERROR", f"{rule_type} 缺少 ACTION（不允许仅写 no-resolve）", hint=hint)
            action, no_resolve = default_action, True
        else:
            action, no_resolve = parts[2], False
    elif len(parts) == 4:
        if parts[3].lower() != NO_RESOLVE:
            raise RuleError("RULE_PARSE_ERROR", f"{rule_type} 的可选项仅支持 no-resolve", hint=hint)
        action, no_resolve = parts[2], True
    else:
        raise RuleError("RULE_PARSE_ERROR", f"{rule_type} 规则字段数量不合法", hint=hint)

    if not action:
        raise RuleError("RULE_PARSE_ERROR", f"{rule_type} 的 ACTION 不能为空", hint=hint)
    _validate_cidr(rule_type, parts[1])
    return Rule(type=rule_type, value=parts[1], action=action, no_resolve=no_resolve)


def _validate_cidr(rule_type: str, value: str) -> None:
    want_version = 4 if rule_type == RULE_IP_CIDR else 6
    example = "1.2.3.4/32" if want_version == 4 else "2001:db8::/32"
    message = f"{rule_type} 的 CIDR 不合法"
    hint = f"expected: IPv{want_version} CIDR, e.g. {example}"
    if "/" not in value:
        raise RuleError("RULE_PARSE_ERROR", message, hint=hint)
    try:
        network = ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise RuleError("RULE_PARSE_ERROR", message, hint=hint, cause=e) from e
    if network.version != want_version:
        raise RuleError("RULE_PARSE_ERROR", message, hint=hint)
