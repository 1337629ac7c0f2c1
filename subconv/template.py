"""
template.py
===========
模板锚点注入与 Surge managed-config 首行处理。

锚点必须独占一行，且每个锚点在模板中只能出现一次：
    #@PROXIES@#  #@GROUPS@#  #@RULE_PROVIDERS@#（仅 clash）
    #@RULESETS@#（仅 quanx）  #@RULES@#
"""

import logging

from .config import MANAGED_CONFIG_DEFAULT_PARAMS
from .errors import AppError, STAGE_VALIDATE_TEMPLATE, TemplateError, truncate_snippet
from .render import Blocks, Target, parse_target

log = logging.getLogger(__name__)

ANCHOR_PROXIES = "#@PROXIES@#"
ANCHOR_GROUPS = "#@GROUPS@#"
ANCHOR_RULE_PROVIDERS = "#@RULE_PROVIDERS@#"
ANCHOR_RULESETS = "#@RULESETS@#"
ANCHOR_RULES = "#@RULES@#"

ANCHORS = (ANCHOR_PROXIES, ANCHOR_GROUPS, ANCHOR_RULE_PROVIDERS, ANCHOR_RULESETS, ANCHOR_RULES)

# 锚点 -> Blocks 字段
_BLOCK_FIELDS = {
    ANCHOR_PROXIES: "proxies",
    ANCHOR_GROUPS: "groups",
    ANCHOR_RULE_PROVIDERS: "rule_providers",
    ANCHOR_RULESETS: "rulesets",
    ANCHOR_RULES: "rules",
}

# target -> 必需锚点
REQUIRED_ANCHORS = {
    Target.CLASH: (ANCHOR_PROXIES, ANCHOR_GROUPS, ANCHOR_RULE_PROVIDERS, ANCHOR_RULES),
    Target.SURGE: (ANCHOR_PROXIES, ANCHOR_GROUPS, ANCHOR_RULES),
    Target.SHADOWROCKET: (ANCHOR_PROXIES, ANCHOR_GROUPS, ANCHOR_RULES),
    Target.QUANX: (ANCHOR_PROXIES, ANCHOR_GROUPS, ANCHOR_RULESETS, ANCHOR_RULES),
}

_SURGE_SECTIONS = {ANCHOR_PROXIES: "proxy", ANCHOR_GROUPS: "proxy group", ANCHOR_RULES: "rule"}

# target -> {锚点: 必须所在的段（小写）}；clash 没有段结构
REQUIRED_SECTIONS = {
    Target.CLASH: {},
    Target.SURGE: _SURGE_SECTIONS,
    Target.SHADOWROCKET: _SURGE_SECTIONS,
    Target.QUANX: {
        ANCHOR_PROXIES: "server_local",
        ANCHOR_GROUPS: "policy",
        ANCHOR_RULESETS: "filter_remote",
        ANCHOR_RULES: "filter_local",
    },
}

MANAGED_CONFIG_PREFIX = "#!MANAGED-CONFIG"
_MANAGED_HINT = "Surge managed config 必须唯一且位于第一个非空行"


def _template_error(code: str, message: str, template_url: str, line: int = 0,
                    snippet: str = "", hint: str = "") -> TemplateError:
    return TemplateError(
        AppError(
            code=code,
            message=message,
            stage=STAGE_VALIDATE_TEMPLATE,
            url=template_url,
            line=line,
            snippet=truncate_snippet(snippet),
            hint=hint,
        )
    )


# ======================== 文本工具 ========================

def detect_newline(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def _split_lines(text: str) -> tuple[list[str], str, bool]:
    """统一换行为 \\n 后按行切分，返回 (行列表, 原换行风格, 是否以换行结尾)。"""
    newline = detect_newline(text)
    normalized = text.replace("\r\n", "\n")
    return normalized.split("\n"), newline, normalized.endswith("\n")


def _join_lines(lines: list[str], newline: str, ends_with_newline: bool) -> str:
    out = "\n".join(lines)
    if not ends_with_newline:
        out = out.removesuffix("\n")
    if newline == "\r\n":
        out = out.replace("\n", "\r\n")
    return out


def leading_whitespace(line: str) -> str:
    return line[: len(line) - len(line.lstrip(" \t"))]


def parse_section_header(stripped: str) -> str | None:
    """"[Proxy Group]" -> "proxy group"；不是段标题时返回 None。"""
    if len(stripped) < 3 or not (stripped.startswith("[") and stripped.endswith("]")):
        return None
    return stripped[1:-1].strip().lower()


def indent_block(anchor_line: str, block: str) -> str:
    """用锚点行的缩进替换锚点；空块时整行内容置空。"""
    if not block:
        return ""
    indent = leading_whitespace(anchor_line)
    return "\n".join(indent + line for line in block.split("\n"))


# ======================== 锚点注入 ========================

def find_anchors(lines: list[str], target: Target, template_url: str = "") -> dict[str, int]:
    """
    校验锚点并返回 {锚点: 行下标}。
    检查顺序：独占一行 → 重复 → 缺失 → 所在段 → clash 缩进。
    """
    positions: dict[str, list[int]] = {anchor: [] for anchor in ANCHORS}
    sections: dict[int, str] = {}

    section = ""
    for index, line in enumerate(lines):
        stripped = line.strip()
        header = parse_section_header(stripped)
        for anchor in ANCHORS:
            if anchor in line and stripped != anchor:
                raise _template_error("TEMPLATE_SECTION_ERROR", "锚点必须独占一行", template_url,
                                      line=index + 1, snippet=line, hint=anchor)
        if header is not None:
            section = header
            continue
        if stripped in positions:
            positions[stripped].append(index)
            sections[index] = section

    for anchor in ANCHORS:
        if len(positions[anchor]) > 1:
            raise _template_error("TEMPLATE_ANCHOR_DUP", f"锚点 {anchor} 重复出现", template_url,
                                  line=positions[anchor][1] + 1)

    required = REQUIRED_ANCHORS[target]
    for anchor in required:
        if not positions[anchor]:
            raise _template_error("TEMPLATE_ANCHOR_MISSING", f"缺少锚点 {anchor}", template_url)

    found = {anchor: idx[0] for anchor, idx in positions.items() if idx}
    for anchor, index in found.items():
        if anchor not in required:
            raise _template_error("TEMPLATE_SECTION_ERROR", f"{anchor} 不支持 target={target.value} 的模板",
                                  template_url, line=index + 1, snippet=lines[index])
        want = REQUIRED_SECTIONS[target].get(anchor)
        if want is not None and sections[index] != want:
            raise _template_error("TEMPLATE_SECTION_ERROR", f"{anchor} 必须位于 [{want}] 段内",
                                  template_url, line=index + 1, snippet=lines[index])

    if target == Target.CLASH:
        for anchor, index in found.items():
            if not leading_whitespace(lines[index]):
                raise _template_error("TEMPLATE_SECTION_ERROR",
                                      "Clash 模板锚点缩进不能为 0（应位于对应列表下方）",
                                      template_url, line=index + 1, snippet=lines[index])
    return found


def inject_anchors(template_text: str, blocks: Blocks, target, template_url: str = "") -> str:
    """校验模板锚点并注入渲染结果，保留缩进、换行风格和结尾换行。"""
    if not template_text:
        raise _template_error("INVALID_ARGUMENT", "template 不能为空", template_url)
    target = parse_target(target)

    lines, newline, ends_with_newline = _split_lines(template_text)
    found = find_anchors(lines, target, template_url)
    for anchor, index in found.items():
        lines[index] = indent_block(lines[index], getattr(blocks, _BLOCK_FIELDS[anchor]))

    log.debug(f"  模板注入完成：{len(found)} 个锚点")
    return _join_lines(lines, newline, ends_with_newline)


# ======================== managed-config ========================

def is_managed_config_line(line: str) -> bool:
    return line.lstrip(" \t").startswith(MANAGED_CONFIG_PREFIX)


def _rewrite_managed_url(line: str, url: str, template_url: str) -> str:
    lead = leading_whitespace(line)
    after = line[len(lead) + len(MANAGED_CONFIG_PREFIX):]

    start = len(after) - len(after.lstrip(" \t"))
    if start == len(after):
        raise _template_error("TEMPLATE_SECTION_ERROR", "#!MANAGED-CONFIG 缺少 URL", template_url,
                              snippet=line, hint=_MANAGED_HINT)
    end = start
    while end < len(after) and after[end] not in " \t":
        end += 1
    return lead + MANAGED_CONFIG_PREFIX + after[:start] + url + after[end:]


def ensure_managed_config(text: str, url: str, template_url: str = "") -> str:
    """
    保证第一个非空行是唯一的 #!MANAGED-CONFIG 行：
    已存在时只替换其中的 URL，其余参数原样保留；不存在时插入默认行。
    """
    if not url.strip():
        raise _template_error("INVALID_ARGUMENT", "managed-config URL 不能为空", template_url)
    if not text:
        raise _template_error("INVALID_ARGUMENT", "template 不能为空", template_url)

    lines, newline, ends_with_newline = _split_lines(text)
    managed = [i for i, line in enumerate(lines) if is_managed_config_line(line)]
    if len(managed) > 1:
        raise _template_error("TEMPLATE_SECTION_ERROR", "模板包含多条 #!MANAGED-CONFIG", template_url,
                              line=managed[1] + 1, hint=_MANAGED_HINT)

    if managed:
        index = managed[0]
        first_non_empty = next(i for i, line in enumerate(lines) if line.strip())
        if index != first_non_empty:
            raise _template_error("TEMPLATE_SECTION_ERROR", "#!MANAGED-CONFIG 必须是第一个非空行",
                                  template_url, line=index + 1, hint=_MANAGED_HINT)
        lines[index] = _rewrite_managed_url(lines[index], url, template_url)
    else:
        lines.insert(0, f"{MANAGED_CONFIG_PREFIX} {url} {MANAGED_CONFIG_DEFAULT_PARAMS}")

    return _join_lines(lines, newline, ends_with_newline)
