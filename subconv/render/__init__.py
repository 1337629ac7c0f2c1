"""
按 target 把编译结果渲染为各客户端的文本片段（Blocks），
再由 template 模块注入到模板锚点中。
"""

from enum import Enum

from ..errors import AppError, RenderError, STAGE_RENDER
from ..model import CompiledResult
from .capabilities import RULE_CAPABILITIES, check_rules
from .clash import render_clash
from .common import Blocks
from .quanx import render_quanx
from .surge import render_surge_like


class Target(str, Enum):
    CLASH = "clash"
    SURGE = "surge"
    SHADOWROCKET = "shadowrocket"
    QUANX = "quanx"


_RENDERERS = {
    Target.CLASH: render_clash,
    Target.SURGE: render_surge_like,
    Target.SHADOWROCKET: render_surge_like,
    Target.QUANX: render_quanx,
}


def parse_target(value: str) -> Target:
    try:
        return Target(value)
    except ValueError:
        raise RenderError(
            AppError(code="UNSUPPORTED_TARGET", message=f"不支持的 target：{value}", stage=STAGE_RENDER)
        ) from None


def render(target, result: CompiledResult) -> Blocks:
    """渲染入口：target 可以是 Target 或其字符串值。"""
    if result is None:
        raise RenderError(AppError(code="INVALID_ARGUMENT", message="render input 不能为空", stage=STAGE_RENDER))
    target = parse_target(target)
    check_rules(target.value, result.rules)
    return _RENDERERS[target](result)


__all__ = ["Blocks", "RULE_CAPABILITIES", "Target", "parse_target", "render"]
