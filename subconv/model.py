"""流水线各阶段之间传递的不可变数据模型。"""

from dataclasses import dataclass, field

PROXY_TYPE_SS = "ss"

DIRECT = "DIRECT"
REJECT = "REJECT"
RESERVED_NAMES = frozenset({DIRECT, REJECT})

GROUP_SELECT = "select"
GROUP_URL_TEST = "url-test"

RULE_MATCH = "MATCH"
RULE_IP_CIDR = "IP-CIDR"
RULE_IP_CIDR6 = "IP-CIDR6"
CIDR_RULE_TYPES = frozenset({RULE_IP_CIDR, RULE_IP_CIDR6})

# 名称/密码等字段中禁止出现的控制字符
FORBIDDEN_CHARS = ("\r", "\n", "\x00")


def has_forbidden_chars(text: str) -> bool:
    return any(ch in text for ch in FORBIDDEN_CHARS)


@dataclass(frozen=True)
class Proxy:
    """
    最小化的节点表示，目前只会产生 type="ss"。

    name 来自订阅里的 #fragment，可能为空，也不保证唯一；
    编译阶段负责规范化、去重和确定性命名。
    plugin_opts 用元组保序，保证行为确定。
    """

    type: str
    name: str
    server: str
    port: int
    cipher: str
    password: str
    plugin_name: str = ""
    plugin_opts: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Group:
    name: str
    type: str                      # "select" | "url-test"
    members: tuple[str, ...]       # 节点名 / 策略组名 / DIRECT / REJECT
    test_url: str = ""
    interval: int = 0
    tolerance: int | None = None


@dataclass(frozen=True)
class Rule:
    type: str                      # DOMAIN-SUFFIX / IP-CIDR / MATCH ...
    value: str                     # MATCH 时为空
    action: str                    # DIRECT / REJECT / 策略组名
    no_resolve: bool = False       # 仅对 IP-CIDR / IP-CIDR6 有意义

    def to_line(self) -> str:
        if self.type == RULE_MATCH:
            return f"{RULE_MATCH},{self.action}"
        line = f"{self.type},{self.value},{self.action}"
        if self.type in CIDR_RULE_TYPES and self.no_resolve:
            line += ",no-resolve"
        return line


@dataclass(frozen=True)
class RulesetRef:
    """延迟展开的远程规则集引用。"""

    raw: str
    action: str
    url: str


@dataclass(frozen=True)
class CompiledResult:
    proxies: tuple[Proxy, ...]
    groups: tuple[Group, ...]
    rules: tuple[Rule, ...]
    ruleset_refs: tuple[RulesetRef, ...] = field(default_factory=tuple)
