"""
运行时配置：默认常量 + 可由环境变量覆盖的转换参数。
"""

import logging
import os
from dataclasses import dataclass

log = logging.getLogger(__name__)

# ======================== 网络请求配置 ========================
FETCH_TIMEOUT = 15.0     # 单次远程拉取超时秒数
CONVERT_TIMEOUT = 60.0   # 单次转换（含全部拉取）的总时限秒数
MAX_REDIRECTS = 5        # 重定向次数上限
MAX_RETRIES = 1          # 连接级失败的重试次数
MAX_WORKERS = 4          # 订阅并发拉取线程数
HEADERS = {
    "User-Agent": "subconv/1.0 (+ClashMetaForAndroid; Surge; Shadowrocket; QuantumultX)"
}

# ======================== 响应大小上限 ========================
MAX_BYTES_SUBSCRIPTION = 5 * 1024 * 1024
MAX_BYTES_PROFILE = 1 * 1024 * 1024
MAX_BYTES_TEMPLATE = 2 * 1024 * 1024
MAX_BYTES_RULESET = 5 * 1024 * 1024

# ======================== 输出配置 ========================
DEFAULT_BASE_URL = "http://127.0.0.1:25500/sub"   # managed-config 默认回链地址
MANAGED_CONFIG_DEFAULT_PARAMS = "interval=86400"
SNIPPET_MAX = 200

# 环境变量名 -> (字段名, 类型)
_ENV_OVERRIDES = {
    "SUBCONV_FETCH_TIMEOUT": ("fetch_timeout", float),
    "SUBCONV_CONVERT_TIMEOUT": ("convert_timeout", float),
    "SUBCONV_MAX_REDIRECTS": ("max_redirects", int),
    "SUBCONV_MAX_WORKERS": ("max_workers", int),
    "SUBCONV_MAX_RETRIES": ("retries", int),
}


@dataclass(frozen=True)
class ConvertOptions:
    """一次转换请求使用的运行参数。"""

    fetch_timeout: float = FETCH_TIMEOUT
    convert_timeout: float = CONVERT_TIMEOUT
    max_redirects: int = MAX_REDIRECTS
    max_workers: int = MAX_WORKERS
    retries: int = MAX_RETRIES
    user_agent: str = HEADERS["User-Agent"]

    @classmethod
    def from_env(cls, environ=None) -> "ConvertOptions":
        """
        读取 SUBCONV_* 环境变量覆盖默认值。
        非法取值（无法解析或 <= 0）会被忽略并记录警告。
        """
        environ = os.environ if environ is None else environ
        values = {}
        for env_name, (field_name, caster) in _ENV_OVERRIDES.items():
            raw = environ.get(env_name, "").strip()
            if not raw:
                continue
            try:
                value = caster(raw)
            except ValueError:
                log.warning(f"环境变量 {env_name}={raw!r} 无法解析，使用默认值")
                continue
            if value < 0 or (value == 0 and field_name != "retries"):
                log.warning(f"环境变量 {env_name}={raw!r} 超出范围，使用默认值")
                continue
            values[field_name] = value

        user_agent = environ.get("SUBCONV_USER_AGENT", "").strip()
        if user_agent:
            values["user_agent"] = user_agent
        return cls(**values)
