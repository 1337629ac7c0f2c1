"""基于本地 HTTP 服务的拉取测试：重定向上限、大小上限、UTF-8、超时与取消。"""

import socket
import threading
import time
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import requests

from subconv.config import ConvertOptions
from subconv.errors import FetchError
from subconv.fetch import FetchKind, Fetcher, short_url


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        path = self.path
        if path == "/ok":
            self._send(200, "节点列表\n".encode("utf-8"))
        elif path.startswith("/redirect/"):
            remaining = int(path.rsplit("/", 1)[1])
            if remaining == 0:
                self._send(200, b"done")
            else:
                self.send_response(302)
                self.send_header("Location", f"/redirect/{remaining - 1}")
                self.send_header("Content-Length", "0")
                self.end_headers()
        elif path == "/redirect-ftp":
            self.send_response(302)
            self.send_header("Location", "ftp://example.com/file")
            self.send_header("Content-Length", "0")
            self.end_headers()
        elif path == "/status/404":
            self._send(404, b"not found")
        elif path == "/big":
            self._send(200, b"x" * 2000)
        elif path == "/badutf8":
            self._send(200, b"\xff\xfe\xfd")
        elif path == "/slow":
            time.sleep(1.0)
            self._send(200, b"late")
        elif path == "/ua":
            self._send(200, self.headers.get("User-Agent", "").encode("utf-8"))
        else:
            self._send(404, b"")

    def _send(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


def _session() -> requests.Session:
    session = requests.Session()
    # 忽略环境中的代理设置，保证请求直达本地服务
    session.trust_env = False
    return session


class FetcherTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        cls.server.daemon_threads = True
        cls.base = f"http://127.0.0.1:{cls.server.server_address[1]}"
        cls.thread = threading.Thread(target=cls.server.serve_forever, daemon=True)
        cls.thread.start()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.server.shutdown()
        cls.server.server_close()

    def fetcher(self, **kwargs) -> Fetcher:
        options = ConvertOptions(**{"fetch_timeout": 5.0, "retries": 0, **kwargs})
        return Fetcher(options, session_factory=_session)

    def assertFetchError(self, code: str, status: int, fetch, *args, **kwargs) -> FetchError:
        with self.assertRaises(FetchError) as ctx:
            fetch(*args, **kwargs)
        self.assertEqual(ctx.exception.code, code)
        self.assertEqual(ctx.exception.status, status)
        return ctx.exception

    def test_ok(self) -> None:
        text = self.fetcher().fetch_text(FetchKind.SUBSCRIPTION, f"{self.base}/ok")
        self.assertEqual(text, "节点列表\n")

    def test_redirect_limit(self) -> None:
        fetcher = self.fetcher(max_redirects=2)
        self.assertEqual(fetcher.fetch_text(FetchKind.SUBSCRIPTION, f"{self.base}/redirect/2"), "done")
        err = self.assertFetchError("FETCH_FAILED", 502, fetcher.fetch_text,
                                    FetchKind.SUBSCRIPTION, f"{self.base}/redirect/3")
        self.assertEqual(err.app_error.stage, "fetch_sub")

    def test_redirect_to_other_scheme(self) -> None:
        self.assertFetchError("INVALID_ARGUMENT", 400, self.fetcher().fetch_text,
                              FetchKind.TEMPLATE, f"{self.base}/redirect-ftp")

    def test_scheme_must_be_http(self) -> None:
        err = self.assertFetchError("INVALID_ARGUMENT", 400, self.fetcher().fetch_text,
                                    FetchKind.PROFILE, "ftp://example.com/profile.yaml")
        self.assertEqual(err.app_error.stage, "fetch_profile")

    def test_non_2xx(self) -> None:
        err = self.assertFetchError("FETCH_FAILED", 502, self.fetcher().fetch_text,
                                    FetchKind.RULESET, f"{self.base}/status/404")
        self.assertEqual(err.app_error.stage, "compile")
        self.assertEqual(err.app_error.url, f"{self.base}/status/404")

    def test_too_large(self) -> None:
        self.assertFetchError("TOO_LARGE", 422, self.fetcher().fetch_text,
                              FetchKind.SUBSCRIPTION, f"{self.base}/big", max_bytes=1000)
        text = self.fetcher().fetch_text(FetchKind.SUBSCRIPTION, f"{self.base}/big", max_bytes=2000)
        self.assertEqual(len(text), 2000)

    def test_invalid_utf8(self) -> None:
        self.assertFetchError("FETCH_INVALID_UTF8", 422, self.fetcher().fetch_text,
                              FetchKind.TEMPLATE, f"{self.base}/badutf8")

    def test_timeout(self) -> None:
        err = self.assertFetchError("FETCH_TIMEOUT", 504, self.fetcher(fetch_timeout=0.2).fetch_text,
                                    FetchKind.SUBSCRIPTION, f"{self.base}/slow")
        self.assertEqual(err.app_error.stage, "fetch_sub")

    def test_deadline_caps_timeout(self) -> None:
        deadline = time.monotonic() + 0.2
        self.assertFetchError("FETCH_TIMEOUT", 504, self.fetcher().fetch_text,
                              FetchKind.SUBSCRIPTION, f"{self.base}/slow", deadline=deadline)

    def test_deadline_exhausted(self) -> None:
        self.assertFetchError("FETCH_TIMEOUT", 504, self.fetcher().fetch_text,
                              FetchKind.SUBSCRIPTION, f"{self.base}/ok", deadline=time.monotonic() - 1)

    def test_cancelled(self) -> None:
        cancel = threading.Event()
        cancel.set()
        self.assertFetchError("FETCH_FAILED", 502, self.fetcher().fetch_text,
                              FetchKind.SUBSCRIPTION, f"{self.base}/ok", cancel=cancel)

    def test_connection_refused(self) -> None:
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        self.assertFetchError("FETCH_FAILED", 502, self.fetcher().fetch_text,
                              FetchKind.SUBSCRIPTION, f"http://127.0.0.1:{port}/")

    def test_user_agent(self) -> None:
        text = self.fetcher(user_agent="subconv-test/1").fetch_text(FetchKind.TEMPLATE, f"{self.base}/ua")
        self.assertEqual(text, "subconv-test/1")


class ShortURLTests(unittest.TestCase):
    def test_drops_query(self) -> None:
        self.assertEqual(short_url("https://a.com/sub?token=secret#x"), "https://a.com/sub")


if __name__ == "__main__":
    unittest.main()
