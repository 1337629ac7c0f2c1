"""命令行入口：python -m subconv / subconv。"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .config import DEFAULT_BASE_URL, ConvertOptions
from .errors import SubconvError, app_error_for
from .fetch import Fetcher
from .service import ConvertRequest, convert, output_file_name

log = logging.getLogger(__name__)

EXIT_CLIENT_ERROR = 1
EXIT_INTERNAL_ERROR = 2


def parse_args(argv=None) -> argparse.Namespace:
    """解析命令行参数。未指定的网络参数使用 SUBCONV_* 环境变量或内置默认值。"""

    parser = argparse.ArgumentParser(
        prog="subconv",
        description="把 Shadowsocks 订阅与 profile 转换为 Clash/Surge/Shadowrocket/Quantumult X 配置",
    )
    parser.add_argument(
        "--mode",
        choices=("config", "list"),
        default="config",
        help="输出模式：config(客户端配置)/list(ss:// 列表)（默认：config）",
    )
    parser.add_argument(
        "--target",
        default="",
        help="config 模式的目标客户端：clash/surge/shadowrocket/quanx",
    )
    parser.add_argument(
        "--sub",
        action="append",
        default=[],
        required=True,
        help="订阅 URL，可重复指定，按给定顺序合并",
    )
    parser.add_argument("--profile", default="", help="profile YAML 的 URL（config 模式必填）")
    parser.add_argument(
        "--encode",
        default="",
        help="list 模式的输出编码：base64/raw（默认：base64）",
    )
    parser.add_argument("--file-name", default="", help="输出文件名；与 --output 目录配合使用")
    parser.add_argument(
        "--expand-rulesets",
        action="store_true",
        help="拉取 ruleset 并展开为内联规则，而不是输出远程引用",
    )
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help=f"profile 未设置 public_base_url 时 managed-config 使用的地址（默认：{DEFAULT_BASE_URL}）",
    )
    parser.add_argument(
        "--output",
        default="",
        help="输出路径；为目录时使用 --file-name 或默认文件名；为空时写到标准输出",
    )
    parser.add_argument("--fetch-timeout", type=float, default=None, help="单次拉取超时秒数")
    parser.add_argument("--convert-timeout", type=float, default=None, help="整次转换总时限秒数")
    parser.add_argument("--max-redirects", type=int, default=None, help="重定向次数上限")
    parser.add_argument("--workers", type=int, default=None, help="订阅并发拉取线程数")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出 DEBUG 日志")
    return parser.parse_args(argv)


def build_options(args: argparse.Namespace) -> ConvertOptions:
    options = ConvertOptions.from_env()
    overrides = {
        "fetch_timeout": args.fetch_timeout,
        "convert_timeout": args.convert_timeout,
        "max_redirects": args.max_redirects,
        "max_workers": args.workers,
    }
    return replace(options, **{k: v for k, v in overrides.items() if v is not None})


def write_output(text: str, output: str, request: ConvertRequest) -> None:
    if not output:
        sys.stdout.write(text)
        sys.stdout.flush()
        return
    path = Path(output)
    if path.is_dir():
        path = path / output_file_name(request)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    log.info(f"配置文件已写入: {path}")


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    request = ConvertRequest(
        mode=args.mode,
        subs=tuple(args.sub),
        target=args.target,
        profile=args.profile,
        file_name=args.file_name,
        encode=args.encode,
        expand_rulesets=args.expand_rulesets,
    )
    options = build_options(args)

    try:
        text = convert(request, Fetcher(options), options=options, base_url=args.base_url)
        write_output(text, args.output, request.validate())
    except Exception as e:
        internal = not isinstance(e, SubconvError)
        if internal:
            log.exception("内部错误")
        envelope = {"error": app_error_for(e).to_dict()}
        print(json.dumps(envelope, ensure_ascii=False), file=sys.stderr)
        return EXIT_INTERNAL_ERROR if internal else EXIT_CLIENT_ERROR
    return 0


if __name__ == "__main__":
    sys.exit(main())
