"""转换编排测试：使用内存中的假 fetcher，不访问网络。"""

import base64
import threading
import time
import unittest

import yaml

from subconv.errors import (
    AppError,
    CompileError,
    FetchError,
    ProfileParseError,
    RequestError,
    SubscriptionParseError,
)
from subconv.fetch import FetchKind
from subconv.metrics import Metrics
from subconv.service import (
    ConvertRequest,
    build_managed_config_url,
    convert,
    fetch_subscriptions,
    output_file_name,
)
from subconv.subscription import parse_ss_uri

SUB_A = "https://sub.example.com/a?token=1"
SUB_B = "https://sub.example.com/b"
PROFILE = "https://cfg.example.com/p.yaml"
CLASH_TPL = "https://tpl.example.com/clash.yaml"
SURGE_TPL = "https://tpl.example.com/surge.conf"
RULESET = "https://rules.example.com/direct.list"


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def ss_line(name: str, host: str, password: str = "pw") -> str:
    return f"ss://{b64('aes-128-gcm:' + password)}@{host}:8388#{name}"


def profile_text(**overrides) -> str:
    data = {
        "version": 1,
        "template": {"clash": CLASH_TPL, "surge": SURGE_TPL},
        "custom_proxy_group": [
            "PROXY`select`[]AUTO[]@all[]DIRECT",
            "AUTO`url-test`.*`http://www.gstatic.com/generate_204`300",
        ],
        "ruleset": [f"DIRECT,{RULESET}"],
        "rule": ["GEOIP,CN,DIRECT", "MATCH,PROXY"],
    }
    data.update(overrides)
    return yaml.safe_dump(data, allow_unicode=True, sort_keys=False)


CLASH_TEMPLATE = """\
proxies:
  #@PROXIES@#
proxy-groups:
  #@GROUPS@#
rule-providers:
  #@RULE_PROVIDERS@#
rules:
  #@RULES@#
"""

SURGE_TEMPLATE = """\
[Proxy]
#@PROXIES@#
[Proxy Group]
#@GROUPS@#
[Rule]
#@RULES@#
"""


class FakeFetcher:
    """按 URL 返回预置内容；值为异常时抛出。可为个别 URL 设置延迟。"""

    def __init__(self, responses: dict, delays: dict | None = None):
        self.responses = responses
        self.delays = delays or {}
        self.calls: list[tuple[FetchKind, str]] = []
        self._lock = threading.Lock()

    def fetch_text(self, kind, url, *, deadline=None, cancel=None):
        with self._lock:
            self.calls.append((kind, url))
        if url in self.delays:
            time.sleep(self.delays[url])
        value = self.responses.get(url)
        if value is None:
            raise FetchError(502, AppError(code="FETCH_FAILED", message="not found", stage=kind.stage, url=url))
        if isinstance(value, BaseException):
            raise value
        return value


def default_responses(**overrides) -> dict:
    responses = {
        SUB_A: "\n".join([ss_line("HK", "hk.example.com"), ss_line("JP", "jp.example.com")]) + "\n",
        SUB_B: b64(ss_line("HK", "hk2.example.com") + "\n" + ss_line("JP", "jp.example.com") + "\n"),
        PROFILE: profile_text(),
        CLASH_TPL: CLASH_TEMPLATE,
        SURGE_TPL: SURGE_TEMPLATE,
        RULESET: "DOMAIN-SUFFIX,cn\nIP-CIDR,10.0.0.0/8,no-resolve\n",
    }
    responses.update(overrides)
    return responses


def fetch_error(url: str, code: str) -> FetchError:
    return FetchError(502, AppError(code=code, message=code, stage="fetch_sub", url=url))


class ListModeTests(unittest.TestCase):
    def test_raw(self) -> None:
        fetcher = FakeFetcher(default_responses())
        request = ConvertRequest(mode="list", subs=(SUB_A, SUB_B, SUB_A), encode="raw")
        out = convert(request, fetcher)

        lines = out.splitlines()
        self.assertTrue(out.endswith("\n"))
        self.assertEqual([parse_ss_uri(line).name for line in lines], ["HK", "HK-2", "JP"])
        self.assertCountEqual([url for _, url in fetcher.calls], [SUB_A, SUB_B])

    def test_base64_is_default(self) -> None:
        fetcher = FakeFetcher(default_responses())
        out = convert(ConvertRequest(mode="list", subs=(SUB_A,)), fetcher)
        decoded = base64.b64decode(out).decode("utf-8")
        self.assertEqual(len(decoded.splitlines()), 2)

    def test_first_failing_url_wins(self) -> None:
        responses = default_responses(**{SUB_A: fetch_error(SUB_A, "FIRST"), SUB_B: fetch_error(SUB_B, "SECOND")})
        fetcher = FakeFetcher(responses, delays={SUB_A: 0.2})
        with self.assertRaises(FetchError) as ctx:
            fetch_subscriptions([SUB_A, SUB_B], fetcher, max_workers=2)
        self.assertEqual(ctx.exception.code, "FIRST")

    def test_parse_error_carries_url(self) -> None:
        fetcher = FakeFetcher(default_responses(**{SUB_B: "vmess://abc\n"}))
        with self.assertRaises(SubscriptionParseError) as ctx:
            convert(ConvertRequest(mode="list", subs=(SUB_A, SUB_B)), fetcher)
        self.assertEqual(ctx.exception.app_error.code, "SUB_UNSUPPORTED_SCHEME")
        self.assertEqual(ctx.exception.app_error.url, SUB_B)


class ConfigModeTests(unittest.TestCase):
    def test_clash(self) -> None:
        fetcher = FakeFetcher(default_responses())
        request = ConvertRequest(mode="config", subs=(SUB_A, SUB_B), target="clash", profile=PROFILE)
        out = convert(request, fetcher)

        self.assertIn('  - name: "HK"\n    type: ss\n', out)
        self.assertIn('  - name: "HK-2"\n', out)
        self.assertIn('      - "AUTO"\n      - "HK"\n      - "HK-2"\n      - "JP"\n      - "DIRECT"\n', out)
        self.assertIn("rule-providers:\n  direct:\n    type: http\n", out)
        self.assertIn('rules:\n  - "RULE-SET,direct,DIRECT"\n  - "GEOIP,CN,DIRECT"\n  - "MATCH,PROXY"\n', out)
        self.assertNotIn("#@", out)

        kinds = {kind for kind, _ in fetcher.calls}
        self.assertEqual(kinds, {FetchKind.SUBSCRIPTION, FetchKind.PROFILE, FetchKind.TEMPLATE})

    def test_surge_managed_config(self) -> None:
        fetcher = FakeFetcher(default_responses())
        request = ConvertRequest(mode="config", subs=(SUB_A,), target="surge", profile=PROFILE)
        out = convert(request, fetcher)
        first_line = out.split("\n", 1)[0]
        self.assertEqual(
            first_line,
            "#!MANAGED-CONFIG http://127.0.0.1:25500/sub?mode=config&target=surge"
            "&sub=https%3A%2F%2Fsub.example.com%2Fa%3Ftoken%3D1"
            "&profile=https%3A%2F%2Fcfg.example.com%2Fp.yaml interval=86400",
        )
        self.assertIn("[Rule]\nRULE-SET,https://rules.example.com/direct.list,DIRECT\nGEOIP,CN,DIRECT\nFINAL,PROXY\n",
                      out)

    def test_public_base_url(self) -> None:
        responses = default_responses(**{PROFILE: profile_text(public_base_url="https://sub.example.org/convert")})
        request = ConvertRequest(mode="config", subs=(SUB_A, SUB_B), target="surge", profile=PROFILE,
                                 file_name="my.conf", expand_rulesets=True)
        out = convert(request, FakeFetcher(responses))
        self.assertTrue(out.startswith(
            "#!MANAGED-CONFIG https://sub.example.org/convert?mode=config&target=surge&fileName=my.conf"
            "&expandRulesets=true&sub=https%3A%2F%2Fsub.example.com%2Fa%3Ftoken%3D1"
            "&sub=https%3A%2F%2Fsub.example.com%2Fb&profile=https%3A%2F%2Fcfg.example.com%2Fp.yaml interval=86400\n"
        ))

    def test_expand_rulesets(self) -> None:
        fetcher = FakeFetcher(default_responses())
        request = ConvertRequest(mode="config", subs=(SUB_A,), target="clash", profile=PROFILE,
                                 expand_rulesets=True)
        out = convert(request, fetcher)
        self.assertIn("rule-providers:\n  {}\n", out)
        self.assertIn(
            'rules:\n  - "DOMAIN-SUFFIX,cn,DIRECT"\n  - "IP-CIDR,10.0.0.0/8,DIRECT,no-resolve"\n'
            '  - "GEOIP,CN,DIRECT"\n  - "MATCH,PROXY"\n',
            out,
        )
        self.assertIn((FetchKind.RULESET, RULESET), fetcher.calls)

    def test_missing_template_for_target(self) -> None:
        fetcher = FakeFetcher(default_responses())
        request = ConvertRequest(mode="config", subs=(SUB_A,), target="quanx", profile=PROFILE)
        with self.assertRaises(ProfileParseError) as ctx:
            convert(request, fetcher)
        self.assertEqual(ctx.exception.code, "PROFILE_VALIDATE_ERROR")

    def test_template_fetch_error_stage(self) -> None:
        responses = default_responses()
        del responses[CLASH_TPL]
        request = ConvertRequest(mode="config", subs=(SUB_A,), target="clash", profile=PROFILE)
        with self.assertRaises(FetchError) as ctx:
            convert(request, FakeFetcher(responses))
        self.assertEqual(ctx.exception.app_error.stage, "fetch_template")


class RequestValidationTests(unittest.TestCase):
    def assertInvalid(self, request: ConvertRequest) -> None:
        with self.assertRaises(RequestError) as ctx:
            request.validate()
        self.assertEqual(ctx.exception.code, "INVALID_ARGUMENT")
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(ctx.exception.app_error.stage, "validate_request")

    def test_invalid_requests(self) -> None:
        cases = [
            ConvertRequest(mode="yaml", subs=(SUB_A,)),
            ConvertRequest(mode="list", subs=()),
            ConvertRequest(mode="list", subs=(SUB_A, " ")),
            ConvertRequest(mode="list", subs=(SUB_A,), target="clash"),
            ConvertRequest(mode="list", subs=(SUB_A,), profile=PROFILE),
            ConvertRequest(mode="list", subs=(SUB_A,), encode="hex"),
            ConvertRequest(mode="list", subs=(SUB_A,), expand_rulesets=True),
            ConvertRequest(mode="config", subs=(SUB_A,), target="clash"),
            ConvertRequest(mode="config", subs=(SUB_A,), target="v2ray", profile=PROFILE),
            ConvertRequest(mode="config", subs=(SUB_A,), target="clash", profile=PROFILE, encode="raw"),
            ConvertRequest(mode="config", subs=(SUB_A,), target="clash", profile=PROFILE, file_name="a/b"),
            ConvertRequest(mode="list", subs=(SUB_A,), file_name="a" * 201),
        ]
        for request in cases:
            with self.subTest(request=request):
                self.assertInvalid(request)

    def test_output_file_name(self) -> None:
        self.assertEqual(output_file_name(ConvertRequest(mode="list", subs=(SUB_A,))), "ss.txt")
        self.assertEqual(
            output_file_name(ConvertRequest(mode="config", subs=(SUB_A,), target="clash")), "clash.yaml"
        )
        self.assertEqual(
            output_file_name(ConvertRequest(mode="config", subs=(SUB_A,), target="quanx", file_name="my")),
            "my.conf",
        )
        self.assertEqual(
            output_file_name(ConvertRequest(mode="config", subs=(SUB_A,), target="surge", file_name="x.ini")),
            "x.ini",
        )

    def test_managed_url_requires_http_base(self) -> None:
        request = ConvertRequest(mode="config", subs=(SUB_A,), target="surge", profile=PROFILE)
        with self.assertRaises(CompileError) as ctx:
            build_managed_config_url(request, base_url="not-a-url")
        self.assertEqual(ctx.exception.app_error.code, "PROFILE_VALIDATE_ERROR")


class MetricsTests(unittest.TestCase):
    def test_counts(self) -> None:
        metrics = Metrics()
        fetcher = FakeFetcher(default_responses())
        convert(ConvertRequest(mode="list", subs=(SUB_A,)), fetcher, metrics=metrics)
        convert(ConvertRequest(mode="config", subs=(SUB_A,), target="clash", profile=PROFILE), fetcher,
                metrics=metrics)
        with self.assertRaises(RequestError):
            convert(ConvertRequest(mode="nope", subs=(SUB_A,)), fetcher, metrics=metrics)
        with self.assertRaises(RuntimeError):
            convert(ConvertRequest(mode="list", subs=(SUB_B,)), FakeFetcher({SUB_B: RuntimeError("boom")}),
                    metrics=metrics)

        snap = metrics.snapshot()
        self.assertEqual(snap["conversions"], [(("config", "clash"), 1), (("list", "-"), 1)])
        self.assertEqual(snap["errors"], [(("internal", "INTERNAL_ERROR"), 1),
                                          (("validate_request", "INVALID_ARGUMENT"), 1)])
        text = metrics.render_text()
        self.assertIn('subconv_conversions_total{mode="list",target="-"} 1', text)
        self.assertIn('subconv_app_errors_total{stage="internal",code="INTERNAL_ERROR"} 1', text)


if __name__ == "__main__":
    unittest.main()
