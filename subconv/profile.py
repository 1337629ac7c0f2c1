"""
profile.py
==========
解析并校验 profile YAML：模板地址、策略组指令、ruleset 指令与内联规则。

期望格式:
    version: 1
    template:
      clash: https://example.com/clash.yaml
      surge: https://example.com/surge.conf
    public_base_url: https://sub.example.com/sub     # 可选
    custom_proxy_group:
      - PROXY`select`[]AUTO[]@all[]DIRECT
      - AUTO`url-test`(HK|SG)`http://www.gstatic.com/generate_204`300`50
    ruleset:
      - DIRECT,https://example.com/direct.list
    rule:
      - GEOIP,CN,DIRECT
      - MATCH,PROXY
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

import yaml

from .errors import (
    AppError,
    ProfileParseError,
    RuleError,
    STAGE_PARSE_PROFILE,
    truncate_snippet,
)
from .model import (
    GROUP_SELECT,
    GROUP_URL_TEST,
    RESERVED_NAMES,
    RULE_MATCH,
    Rule,
    has_forbidden_chars,
)
from .rules import parse_inline_rule

log = logging.getLogger(__name__)

TARGETS = ("clash", "shadowrocket", "surge", "quanx")
ALL_MEMBERS = "@all"

_KNOWN_FIELDS = ("version", "template", "public_base_url", "custom_proxy_group", "ruleset", "rule")

GROUP_HINT = "expected: <NAME>`select`[]... or <NAME>`url-test`<REGEX>`<URL>`<INTERVAL>[`<TOLERANCE>]"


@dataclass(frozen=True)
class GroupSpec:
    raw: str
    name: str
    type: str                                  # "select" | "url-test"
    members: tuple[str, ...] = ()              # select 显式成员
    pattern: re.Pattern | None = None          # select 正则过滤 / url-test
    test_url: str = ""
    interval: int = 0
    tolerance: int | None = None


@dataclass(frozen=True)
class RulesetSpec:
    raw: str
    action: str
    url: str


@dataclass(frozen=True)
class ProfileSpec:
    version: int
    templates: dict[str, str]
    public_base_url: str
    groups: tuple[GroupSpec, ...]
    rulesets: tuple[RulesetSpec, ...]
    rules: tuple[Rule, ...]


class DirectiveError(Exception):
    """单条指令的解析错误，由 parse_profile 统一包装。"""

    def __init__(self, code: str, message: str, hint: str = "", cause: BaseException | None = None):
        self.code = code
        self.message = message
        self.hint = hint
        self.cause = cause
        super().__init__(f"{code}: {message}")


def _profile_error(source_url: str, code: str, message: str, snippet: str = "",
                   hint: str = "", cause: BaseException | None = None) -> ProfileParseError:
    return ProfileParseError(
        AppError(
            code=code,
            message=message,
            stage=STAGE_PARSE_PROFILE,
            url=source_url,
            snippet=truncate_snippet(snippet),
            hint=hint,
        ),
        cause,
    )


# ======================== URL 校验 ========================

def validate_http_url(url: str) -> None:
    parts = urlsplit(url.strip())
    if parts.scheme not in ("http", "https"):
        raise ValueError("scheme must be http/https")
    if not parts.netloc:
        raise ValueError("url must be absolute")


def validate_public_base_url(url: str) -> None:
    validate_http_url(url)
    parts = urlsplit(url.strip())
    if parts.query or parts.fragment or "?" in url or "#" in url:
        raise ValueError("public_base_url must not contain query/fragment")


# ======================== YAML 解码 ========================

def _decode_strict(content: str) -> dict:
    """
    严格解码：只允许单个文档、顶层必须是映射、不允许未知字段。
    """
    docs = list(yaml.safe_load_all(content))
    if not docs or docs[0] is None:
        raise ValueError("empty YAML document")
    if len(docs) > 1:
        raise ValueError("multiple YAML documents are not allowed")
    data = docs[0]
    if not isinstance(data, dict):
        raise ValueError("top-level YAML node must be a mapping")
    for key in data:
        if key not in _KNOWN_FIELDS:
            raise ValueError(f"field {key!r} not found in profile schema")

    version = data.get("version")
    if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
        raise ValueError("version must be an integer")

    templates = data.get("template") or {}
    if not isinstance(templates, dict):
        raise ValueError("template must be a mapping")
    for key, value in templates.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValueError("template entries must be string: string")

    public_base_url = data.get("public_base_url") or ""
    if not isinstance(public_base_url, str):
        raise ValueError("public_base_url must be a string")

    for key in ("custom_proxy_group", "ruleset", "rule"):
        items = data.get(key) or []
        if not isinstance(items, list) or not all(isinstance(item, str) for item in items):
            raise ValueError(f"{key} must be a list of strings")

    return {
        "version": version or 0,
        "template": templates,
        "public_base_url": public_base_url,
        "custom_proxy_group": data.get("custom_proxy_group") or [],
        "ruleset": data.get("ruleset") or [],
        "rule": data.get("rule") or [],
    }


# ======================== 主入口 ========================

def parse_profile(source_url: str, content: str, required_target: str = "") -> ProfileSpec:
    """
    解析并校验 profile。
    required_target 非空时，template 中必须包含该 target。
    """
    try:
        raw = _decode_strict(content)
    except (yaml.YAMLError, ValueError) as e:
        raise _profile_error(source_url, "PROFILE_PARSE_ERROR", "profile YAML 解析失败",
                             snippet=content, cause=e) from e

    if raw["version"] != 1:
        raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", "profile version 必须为 1")

    templates = raw["template"]
    if not templates:
        raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", "template 不能为空",
                             hint="expected: template: {clash: ..., shadowrocket: ..., surge: ..., quanx: ...}")
    for target, url in templates.items():
        if target not in TARGETS:
            raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", f"template key 不支持：{target}")
        try:
            validate_http_url(url)
        except ValueError as e:
            raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", f"template.{target} URL 不合法",
                                 snippet=url, cause=e) from e
    if required_target and required_target not in templates:
        raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", f"template 缺少 target={required_target}")

    public_base_url = raw["public_base_url"].strip()
    if public_base_url:
        try:
            validate_public_base_url(public_base_url)
        except ValueError as e:
            raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", "public_base_url 不合法",
                                 snippet=public_base_url, cause=e) from e

    groups = _parse_groups(source_url, raw["custom_proxy_group"])
    rulesets = _parse_rulesets(source_url, raw["ruleset"])
    rules = _parse_rules(source_url, raw["rule"])

    log.info(f"  profile 解析完成：{len(groups)} 个策略组，{len(rulesets)} 个 ruleset，{len(rules)} 条内联规则")
    return ProfileSpec(
        version=raw["version"],
        templates=dict(templates),
        public_base_url=public_base_url,
        groups=tuple(groups),
        rulesets=tuple(rulesets),
        rules=tuple(rules),
    )


def _parse_groups(source_url: str, directives: list[str]) -> list[GroupSpec]:
    groups: list[GroupSpec] = []
    for raw in directives:
        raw = raw.strip()
        if not raw:
            continue
        try:
            groups.append(parse_group_directive(raw))
        except DirectiveError as e:
            raise _profile_error(source_url, e.code, e.message, snippet=raw, hint=e.hint, cause=e.cause) from e

    names: set[str] = set()
    for group in groups:
        if group.name in RESERVED_NAMES:
            raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", "策略组名不能使用保留名 DIRECT/REJECT",
                                 snippet=group.raw)
        if group.name in names:
            raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", f"重复的策略组名：{group.name}",
                                 snippet=group.raw)
        names.add(group.name)

    # 节点集合此时未知，显式成员只能引用策略组或保留名
    for group in groups:
        if group.type != GROUP_SELECT:
            continue
        for member in group.members:
            if member == ALL_MEMBERS or member in RESERVED_NAMES:
                continue
            if member not in names:
                raise _profile_error(source_url, "GROUP_PARSE_ERROR", f"策略组引用不存在：{member}",
                                     snippet=group.raw)
    return groups


def _parse_rulesets(source_url: str, directives: list[str]) -> list[RulesetSpec]:
    rulesets: list[RulesetSpec] = []
    for raw in directives:
        raw = raw.strip()
        if not raw:
            continue
        try:
            rulesets.append(parse_ruleset_directive(raw))
        except ValueError as e:
            raise _profile_error(source_url, "RULESET_PARSE_ERROR", "ruleset 指令解析失败",
                                 snippet=raw, hint="expected: ACTION,URL", cause=e) from e
    return rulesets


def _parse_rules(source_url: str, directives: list[str]) -> list[Rule]:
    rules: list[Rule] = []
    for raw in directives:
        raw = raw.strip()
        if not raw:
            continue
        try:
            rules.append(parse_inline_rule(raw))
        except RuleError as e:
            raise _profile_error(source_url, e.code, e.message, snippet=raw, hint=e.hint, cause=e.cause) from e

    if not any(rule.type == RULE_MATCH for rule in rules):
        raise _profile_error(source_url, "PROFILE_VALIDATE_ERROR", "缺少兜底规则 MATCH,<ACTION>",
                             hint="add at end of rule: MATCH,PROXY")
    return rules


# ======================== 指令解析 ========================

def parse_ruleset_directive(raw: str) -> RulesetSpec:
    """ACTION,URL"""
    action, has_comma, url = raw.partition(",")
    if not has_comma:
        raise ValueError("expected: ACTION,URL")
    action = action.strip()
    url = url.strip()
    if not action or not url:
        raise ValueError("ACTION/URL must not be empty")
    validate_http_url(url)
    return RulesetSpec(raw=raw, action=action, url=url)


def _compile_pattern(pattern: str, message: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise DirectiveError("GROUP_PARSE_ERROR", message, hint=GROUP_HINT, cause=e) from e


def parse_group_directive(raw: str) -> GroupSpec:
    """
    解析一条 custom_proxy_group 指令（字段以反引号分隔）：
      <NAME>`select`[]A[]B[]@all      显式成员
      <NAME>`select`<REGEX>           按节点名正则过滤
      <NAME>`url-test`<REGEX>`<URL>`<INTERVAL>[`<TOLERANCE>]
    """
    parts = raw.split("`")
    if len(parts) < 2:
        raise DirectiveError("GROUP_PARSE_ERROR", "custom_proxy_group 指令格式不合法", hint=GROUP_HINT)

    name = parts[0].strip()
    group_type = parts[1].strip()
    if has_forbidden_chars(name):
        raise DirectiveError("GROUP_PARSE_ERROR", "策略组名包含非法控制字符")
    if not name:
        raise DirectiveError("GROUP_PARSE_ERROR", "策略组名不能为空")
    if not group_type:
        raise DirectiveError("GROUP_PARSE_ERROR", "策略组类型不能为空", hint=GROUP_HINT)

    if group_type == GROUP_SELECT:
        return _parse_select(raw, name, parts)
    if group_type == GROUP_URL_TEST:
        return _parse_url_test(raw, name, parts)
    raise DirectiveError("GROUP_UNSUPPORTED_TYPE", f"不支持的策略组类型：{group_type}")


def _parse_select(raw: str, name: str, parts: list[str]) -> GroupSpec:
    if len(parts) != 3:
        raise DirectiveError("GROUP_PARSE_ERROR",
                             "select 组必须是 <NAME>`select`[]<MEMBER>... 或 <NAME>`select`<REGEX>",
                             hint=GROUP_HINT)
    third = parts[2].strip()
    if not third:
        raise DirectiveError("GROUP_PARSE_ERROR", "select 组缺少成员列表或正则", hint=GROUP_HINT)

    if not third.startswith("[]"):
        pattern = _compile_pattern(third, "select 正则不可编译")
        return GroupSpec(raw=raw, name=name, type=GROUP_SELECT, pattern=pattern)

    members: list[str] = []
    for token in third.split("[]")[1:]:
        token = token.strip()
        if not token:
            raise DirectiveError("GROUP_PARSE_ERROR", "select 组包含空成员", hint=GROUP_HINT)
        members.append(token)
    return GroupSpec(raw=raw, name=name, type=GROUP_SELECT, members=tuple(members))


def _parse_url_test(raw: str, name: str, parts: list[str]) -> GroupSpec:
    if len(parts) not in (5, 6):
        raise DirectiveError("GROUP_PARSE_ERROR",
                             "url-test 组必须是 <NAME>`url-test`<REGEX>`<URL>`<INTERVAL>[`<TOLERANCE>]",
                             hint=GROUP_HINT)
    pattern_raw = parts[2]
    test_url = parts[3].strip()
    interval_raw = parts[4].strip()
    if not pattern_raw or not test_url or not interval_raw:
        raise DirectiveError("GROUP_PARSE_ERROR", "url-test 的 regex/url/interval 不能为空", hint=GROUP_HINT)

    pattern = _compile_pattern(pattern_raw, "url-test 正则不可编译")
    try:
        validate_http_url(test_url)
    except ValueError as e:
        raise DirectiveError("GROUP_PARSE_ERROR", "url-test 的测试 URL 不合法", cause=e) from e

    interval = _parse_int(interval_raw)
    if interval is None or interval <= 0:
        raise DirectiveError("GROUP_PARSE_ERROR", "url-test interval 必须是正整数")

    tolerance = None
    if len(parts) == 6:
        tolerance = _parse_int(parts[5].strip())
        if tolerance is None or tolerance < 0:
            raise DirectiveError("GROUP_PARSE_ERROR", "url-test tolerance 必须是非负整数")

    return GroupSpec(
        raw=raw,
        name=name,
        type=GROUP_URL_TEST,
        pattern=pattern,
        test_url=test_url,
        interval=interval,
        tolerance=tolerance,
    )


def _parse_int(text: str) -> int | None:
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        return None
    return int(text)
