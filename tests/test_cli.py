"""命令行、环境变量配置与错误信封测试。"""

import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr
from pathlib import Path

from subconv.cli import build_options, main, parse_args, write_output
from subconv.config import FETCH_TIMEOUT, ConvertOptions
from subconv.errors import AppError, app_error_for, request_error, status_for, truncate_snippet
from subconv.service import ConvertRequest


class ConvertOptionsTests(unittest.TestCase):
    def test_from_env(self) -> None:
        options = ConvertOptions.from_env({
            "SUBCONV_FETCH_TIMEOUT": "3.5",
            "SUBCONV_MAX_WORKERS": "8",
            "SUBCONV_MAX_RETRIES": "0",
            "SUBCONV_USER_AGENT": "ua/1",
        })
        self.assertEqual(options.fetch_timeout, 3.5)
        self.assertEqual(options.max_workers, 8)
        self.assertEqual(options.retries, 0)
        self.assertEqual(options.user_agent, "ua/1")

    def test_invalid_values_ignored(self) -> None:
        with self.assertLogs("subconv.config", level="WARNING"):
            options = ConvertOptions.from_env({"SUBCONV_FETCH_TIMEOUT": "abc", "SUBCONV_MAX_REDIRECTS": "-1"})
        self.assertEqual(options, ConvertOptions())
        self.assertEqual(options.fetch_timeout, FETCH_TIMEOUT)


class ErrorEnvelopeTests(unittest.TestCase):
    def test_to_dict_omits_empty_fields(self) -> None:
        error = AppError(code="X", message="m", stage="compile", line=3)
        self.assertEqual(error.to_dict(), {"code": "X", "message": "m", "stage": "compile", "line": 3})

    def test_unknown_exception(self) -> None:
        error = app_error_for(ValueError("boom"))
        self.assertEqual((error.code, error.stage), ("INTERNAL_ERROR", "internal"))
        self.assertEqual(status_for(ValueError()), 500)
        self.assertEqual(status_for(request_error("INVALID_ARGUMENT", "x")), 400)

    def test_truncate_snippet(self) -> None:
        self.assertEqual(truncate_snippet("a\r\nb" + "c" * 300), ("ab" + "c" * 300)[:200])


class CLITests(unittest.TestCase):
    def test_parse_args(self) -> None:
        args = parse_args(["--sub", "https://a", "--sub", "https://b", "--target", "clash",
                           "--profile", "https://p", "--workers", "2"])
        self.assertEqual(args.mode, "config")
        self.assertEqual(args.sub, ["https://a", "https://b"])
        self.assertEqual(build_options(args).max_workers, 2)

    def test_request_error_exit_code(self) -> None:
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = main(["--mode", "list", "--sub", "https://a.example.com/s", "--target", "clash"])
        self.assertEqual(code, 1)
        last_line = stderr.getvalue().strip().splitlines()[-1]
        envelope = json.loads(last_line)
        self.assertEqual(envelope["error"]["code"], "INVALID_ARGUMENT")
        self.assertEqual(envelope["error"]["stage"], "validate_request")

    def test_write_output_to_directory(self) -> None:
        request = ConvertRequest(mode="config", subs=("https://a",), target="clash", profile="https://p")
        with tempfile.TemporaryDirectory() as tmp:
            write_output("proxies: []\r\n", tmp, request)
            self.assertEqual((Path(tmp) / "clash.yaml").read_bytes(), b"proxies: []\r\n")


if __name__ == "__main__":
    unittest.main()
