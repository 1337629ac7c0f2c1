"""profile YAML 解析与校验测试。"""

import unittest

import yaml

from subconv.errors import ProfileParseError
from subconv.model import Rule
from subconv.profile import parse_group_directive, parse_profile

PROFILE_URL = "https://cfg.example.com/profile.yaml"


def profile_yaml(**overrides) -> str:
    data = {
        "version": 1,
        "template": {
            "clash": "https://example.com/clash.yaml",
            "surge": "https://example.com/surge.conf",
        },
        "custom_proxy_group": [
            "PROXY`select`[]AUTO[]@all[]DIRECT",
            "AUTO`url-test`(HK|SG)`http://www.gstatic.com/generate_204`300`50",
        ],
        "ruleset": ["DIRECT,https://example.com/rules/direct.list"],
        "rule": ["GEOIP,CN,DIRECT", "MATCH,PROXY"],
    }
    data.update(overrides)
    return yaml.safe_dump(data, allow_unicode=True, sort_keys=False)


class ParseProfileTests(unittest.TestCase):
    def assertProfileError(self, content: str, code: str, required_target: str = "") -> ProfileParseError:
        with self.assertRaises(ProfileParseError) as ctx:
            parse_profile(PROFILE_URL, content, required_target)
        err = ctx.exception.app_error
        self.assertEqual(err.code, code)
        self.assertEqual(err.stage, "parse_profile")
        self.assertEqual(err.url, PROFILE_URL)
        return ctx.exception

    def test_valid_profile(self) -> None:
        spec = parse_profile(PROFILE_URL, profile_yaml(), "surge")
        self.assertEqual(spec.version, 1)
        self.assertEqual(spec.templates["clash"], "https://example.com/clash.yaml")
        self.assertEqual(spec.public_base_url, "")

        proxy, auto = spec.groups
        self.assertEqual(proxy.name, "PROXY")
        self.assertEqual(proxy.type, "select")
        self.assertEqual(proxy.members, ("AUTO", "@all", "DIRECT"))
        self.assertIsNone(proxy.pattern)

        self.assertEqual(auto.type, "url-test")
        self.assertTrue(auto.pattern.search("香港 HK 01"))
        self.assertIsNone(auto.pattern.search("JP 01"))
        self.assertEqual(auto.test_url, "http://www.gstatic.com/generate_204")
        self.assertEqual((auto.interval, auto.tolerance), (300, 50))

        self.assertEqual(len(spec.rulesets), 1)
        self.assertEqual(spec.rulesets[0].action, "DIRECT")
        self.assertEqual(spec.rulesets[0].url, "https://example.com/rules/direct.list")
        self.assertEqual(spec.rules[-1], Rule(type="MATCH", value="", action="PROXY"))

    def test_public_base_url(self) -> None:
        spec = parse_profile(PROFILE_URL, profile_yaml(public_base_url="https://sub.example.com/sub"))
        self.assertEqual(spec.public_base_url, "https://sub.example.com/sub")
        self.assertProfileError(profile_yaml(public_base_url="https://sub.example.com/sub?x=1"),
                                "PROFILE_VALIDATE_ERROR")
        self.assertProfileError(profile_yaml(public_base_url="/sub"), "PROFILE_VALIDATE_ERROR")

    def test_unknown_field(self) -> None:
        self.assertProfileError(profile_yaml(extra=True), "PROFILE_PARSE_ERROR")

    def test_multiple_documents(self) -> None:
        self.assertProfileError(profile_yaml() + "---\nversion: 1\n", "PROFILE_PARSE_ERROR")

    def test_invalid_yaml(self) -> None:
        self.assertProfileError("version: [1\n", "PROFILE_PARSE_ERROR")
        self.assertProfileError("- a\n- b\n", "PROFILE_PARSE_ERROR")
        self.assertProfileError("", "PROFILE_PARSE_ERROR")

    def test_wrong_field_types(self) -> None:
        self.assertProfileError(profile_yaml(rule="MATCH,DIRECT"), "PROFILE_PARSE_ERROR")
        self.assertProfileError(profile_yaml(version="1"), "PROFILE_PARSE_ERROR")

    def test_version_must_be_one(self) -> None:
        self.assertProfileError(profile_yaml(version=2), "PROFILE_VALIDATE_ERROR")

    def test_template_validation(self) -> None:
        self.assertProfileError(profile_yaml(template={}), "PROFILE_VALIDATE_ERROR")
        self.assertProfileError(profile_yaml(template={"v2ray": "https://example.com/t"}),
                                "PROFILE_VALIDATE_ERROR")
        self.assertProfileError(profile_yaml(template={"clash": "ftp://example.com/t"}),
                                "PROFILE_VALIDATE_ERROR")

    def test_required_target(self) -> None:
        self.assertProfileError(profile_yaml(), "PROFILE_VALIDATE_ERROR", required_target="quanx")

    def test_group_errors(self) -> None:
        cases = [
            (["X`fallback`(HK)`http://t.com`300"], "GROUP_UNSUPPORTED_TYPE"),
            (["X`url-test`(HK)`http://t.com`0"], "GROUP_PARSE_ERROR"),
            (["X`url-test`(HK)`http://t.com`300`-1"], "GROUP_PARSE_ERROR"),
            (["X`url-test`(HK)`http://t.com"], "GROUP_PARSE_ERROR"),
            (["X`select`("], "GROUP_PARSE_ERROR"),
            (["X`select`[]A[][]B"], "GROUP_PARSE_ERROR"),
            (["X`select`[]NOPE"], "GROUP_PARSE_ERROR"),
            (["X"], "GROUP_PARSE_ERROR"),
            (["X`select`[]DIRECT", "X`select`[]REJECT"], "PROFILE_VALIDATE_ERROR"),
            (["DIRECT`select`[]REJECT"], "PROFILE_VALIDATE_ERROR"),
        ]
        for groups, code in cases:
            with self.subTest(groups=groups):
                err = self.assertProfileError(
                    profile_yaml(custom_proxy_group=groups, rule=["MATCH,DIRECT"], ruleset=[]), code
                )
                self.assertTrue(err.app_error.snippet)

    def test_select_may_reference_later_group(self) -> None:
        spec = parse_profile(PROFILE_URL, profile_yaml(custom_proxy_group=[
            "A`select`[]B[]DIRECT",
            "B`select`.*",
        ]))
        self.assertEqual([g.name for g in spec.groups], ["A", "B"])

    def test_ruleset_errors(self) -> None:
        for ruleset in (["DIRECT"], ["DIRECT,"], [",https://example.com/a.list"], ["DIRECT,ftp://example.com/a"]):
            with self.subTest(ruleset=ruleset):
                self.assertProfileError(profile_yaml(ruleset=ruleset), "RULESET_PARSE_ERROR")

    def test_rule_errors(self) -> None:
        err = self.assertProfileError(profile_yaml(rule=["IP-CIDR,1.1.1.1/32,no-resolve", "MATCH,PROXY"]),
                                      "RULE_PARSE_ERROR")
        self.assertEqual(err.app_error.snippet, "IP-CIDR,1.1.1.1/32,no-resolve")
        self.assertProfileError(profile_yaml(rule=["PROTOCOL,udp,DIRECT", "MATCH,PROXY"]), "UNSUPPORTED_RULE_TYPE")

    def test_match_required(self) -> None:
        self.assertProfileError(profile_yaml(rule=["GEOIP,CN,DIRECT"]), "PROFILE_VALIDATE_ERROR")


class GroupDirectiveTests(unittest.TestCase):
    def test_select_regex(self) -> None:
        group = parse_group_directive("JP`select`^JP")
        self.assertEqual(group.members, ())
        self.assertTrue(group.pattern.search("JP 01"))

    def test_url_test_without_tolerance(self) -> None:
        group = parse_group_directive("AUTO`url-test`.*`https://cp.cloudflare.com`600")
        self.assertIsNone(group.tolerance)
        self.assertEqual(group.interval, 600)


if __name__ == "__main__":
    unittest.main()
