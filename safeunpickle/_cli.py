"""safeunpickle command-line interface.

Usage:
    safeunpickle dump --input data.pkl [--indent 2]
    cat data.pkl | python3 -m safeunpickle dump
    python3 -m safeunpickle version
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import BinaryIO, List, Optional

from . import DecodeError, __version__, decode, to_plain


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safeunpickle",
        description="Decode Python pickles without executing them",
    )
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Log decoder activity to stderr")
    sub = parser.add_subparsers(dest="command")

    # ── dump ──
    dump_p = sub.add_parser("dump", help="Decode a pickle and print it as JSON")
    dump_p.add_argument("--input", "-i", metavar="FILE",
                        help="Read the pickle from FILE instead of stdin")
    dump_p.add_argument("--indent", type=int, default=None, metavar="N",
                        help="Pretty-print with N spaces of indentation")

    # ── version ──
    sub.add_parser("version", help="Print version and exit")

    return parser


def _open_input(filepath: Optional[str]) -> BinaryIO:
    if filepath:
        return open(filepath, "rb")
    if sys.stdin.isatty():
        print("safeunpickle: reading from stdin (Ctrl-D to end)...", file=sys.stderr)
    return sys.stdin.buffer


def _cmd_dump(args: argparse.Namespace) -> None:
    source = _open_input(args.input)
    try:
        value = decode(source)
    finally:
        if args.input:
            source.close()
    try:
        text = json.dumps(to_plain(value), indent=args.indent, ensure_ascii=False)
    except RecursionError:
        print("safeunpickle: decoded value is nested too deeply to print", file=sys.stderr)
        sys.exit(2)
    print(text)


def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s: %(levelname)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "version":
        print(f"safeunpickle {__version__}")
        return

    try:
        if args.command == "dump":
            _cmd_dump(args)
    except DecodeError as e:
        where = "" if e.offset is None else f" at offset {e.offset}"
        print(f"safeunpickle: error [{e.code}]{where}: {e.msg}", file=sys.stderr)
        sys.exit(2)
    except OSError as e:
        print(f"safeunpickle: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
