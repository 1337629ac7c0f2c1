"""
统一错误模型。

所有阶段只抛出携带 AppError 的异常，错误码是稳定的机器可读字符串，
上层（CLI / HTTP 胶水层）根据异常类型映射到固定的状态码类别。
"""

from dataclasses import dataclass, asdict

from .config import SNIPPET_MAX

# ======================== 阶段标识 ========================
STAGE_VALIDATE_REQUEST = "validate_request"
STAGE_FETCH_SUB = "fetch_sub"
STAGE_FETCH_PROFILE = "fetch_profile"
STAGE_FETCH_TEMPLATE = "fetch_template"
STAGE_PARSE_SUB = "parse_sub"
STAGE_PARSE_PROFILE = "parse_profile"
STAGE_PARSE_RULESET = "parse_ruleset"
STAGE_COMPILE = "compile"
STAGE_RENDER = "render"
STAGE_VALIDATE_TEMPLATE = "validate_template"
STAGE_INTERNAL = "internal"


@dataclass(frozen=True)
class AppError:
    code: str
    message: str
    stage: str
    url: str = ""
    line: int = 0          # 1-based；0 表示未设置
    snippet: str = ""
    hint: str = ""

    def to_dict(self) -> dict:
        """转为 JSON 友好的 dict，省略空的可选字段。"""
        data = asdict(self)
        for key in ("url", "line", "snippet", "hint"):
            if not data[key]:
                del data[key]
        return data


def truncate_snippet(text: str, limit: int = SNIPPET_MAX) -> str:
    text = text.replace("\r", "").replace("\n", "")
    if limit <= 0:
        return ""
    return text[:limit]


class SubconvError(Exception):
    """所有流水线错误的基类。"""

    status = 422

    def __init__(self, app_error: AppError, cause: BaseException | None = None):
        self.app_error = app_error
        self.cause = cause
        super().__init__(str(self))

    @property
    def code(self) -> str:
        return self.app_error.code

    def __str__(self) -> str:
        text = f"{self.app_error.code}: {self.app_error.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        return text


class RequestError(SubconvError):
    status = 400


class FetchError(SubconvError):
    def __init__(self, status: int, app_error: AppError, cause: BaseException | None = None):
        super().__init__(app_error, cause)
        self.status = status


class SubscriptionParseError(SubconvError):
    pass


class ProfileParseError(SubconvError):
    pass


class RulesetParseError(SubconvError):
    pass


class CompileError(SubconvError):
    pass


class RenderError(SubconvError):
    pass


class TemplateError(SubconvError):
    pass


class RuleError(Exception):
    """
    规则行语法错误。

    规则语法同时服务于 profile 内联规则与远程 ruleset 文件，
    这里不带阶段/URL 信息，由调用方包装为 ProfileParseError 或 RulesetParseError。
    """

    def __init__(self, code: str, message: str, hint: str = "", cause: BaseException | None = None):
        self.code = code
        self.message = message
        self.hint = hint
        self.cause = cause
        super().__init__(f"{code}: {message}")


def request_error(code: str, message: str, hint: str = "") -> RequestError:
    return RequestError(AppError(code=code, message=message, stage=STAGE_VALIDATE_REQUEST, hint=hint))


def status_for(exc: BaseException) -> int:
    """把异常映射到 HTTP 等价状态码。"""
    if isinstance(exc, SubconvError):
        return exc.status
    return 500


def app_error_for(exc: BaseException) -> AppError:
    """
    取出异常携带的 AppError。
    未知异常统一归为 INTERNAL_ERROR，原始信息只放在 hint 里用于排障。
    """
    if isinstance(exc, SubconvError):
        return exc.app_error
    return AppError(
        code="INTERNAL_ERROR",
        message="内部错误",
        stage=STAGE_INTERNAL,
        hint=truncate_snippet(f"{type(exc).__name__}: {exc}"),
    )
