"""各 target 允许输出的规则类型。"""

from .common import render_error

_COMMON_RULE_TYPES = frozenset({
    "DOMAIN",
    "DOMAIN-SUFFIX",
    "DOMAIN-KEYWORD",
    "IP-CIDR",
    "IP-CIDR6",
    "GEOIP",
    "PROCESS-NAME",
    "URL-REGEX",
    "MATCH",
})

# target -> 允许的规则类型；未列出的组合一律视为不支持
RULE_CAPABILITIES: dict[str, frozenset[str]] = {
    "clash": _COMMON_RULE_TYPES,
    "surge": _COMMON_RULE_TYPES,
    "shadowrocket": _COMMON_RULE_TYPES,
    "quanx": _COMMON_RULE_TYPES,
}


def check_rules(target: str, rules) -> None:
    allowed = RULE_CAPABILITIES.get(target, frozenset())
    for rule in rules:
        if rule.type not in allowed:
            raise render_error("UNSUPPORTED_RULE_TYPE", f"target={target} 不支持规则类型：{rule.type}",
                               snippet=rule.to_line())
