"""进程内计数器：按 (mode, target) 统计转换次数，按 (stage, code) 统计错误。"""

import threading
from collections import Counter

UNKNOWN = "(unknown)"


class Metrics:
    """线程安全的累加计数器，由调用方创建并传入 service，不影响转换结果。"""

    def __init__(self):
        self._lock = threading.Lock()
        self._conversions: Counter = Counter()
        self._errors: Counter = Counter()

    def inc_conversion(self, mode: str, target: str = "") -> None:
        key = (mode.strip() or UNKNOWN, target.strip() or "-")
        with self._lock:
            self._conversions[key] += 1

    def inc_error(self, stage: str, code: str) -> None:
        key = (stage.strip() or UNKNOWN, code.strip() or UNKNOWN)
        with self._lock:
            self._errors[key] += 1

    def snapshot(self) -> dict:
        """返回排序后的快照：{"conversions": [((mode, target), n), ...], "errors": [((stage, code), n), ...]}"""
        with self._lock:
            return {
                "conversions": sorted(self._conversions.items()),
                "errors": sorted(self._errors.items()),
            }

    def render_text(self) -> str:
        """Prometheus 风格的纯文本输出。"""
        snap = self.snapshot()
        lines = [
            "# HELP subconv_conversions_total Successful conversions by mode and target.",
            "# TYPE subconv_conversions_total counter",
        ]
        for (mode, target), n in snap["conversions"]:
            lines.append(f'subconv_conversions_total{{mode="{_escape(mode)}",target="{_escape(target)}"}} {n}')
        lines += [
            "# HELP subconv_app_errors_total Application errors by stage and code.",
            "# TYPE subconv_app_errors_total counter",
        ]
        for (stage, code), n in snap["errors"]:
            lines.append(f'subconv_app_errors_total{{stage="{_escape(stage)}",code="{_escape(code)}"}} {n}')
        return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
