"""plistcodec command-line interface.

Usage:
    python3 -m plistcodec convert save.plist save.xml --fmt xml [--short-tags]
    python3 -m plistcodec dump save.plist
    python3 -m plistcodec show save.plist
    python3 -m plistcodec version
"""

import argparse
import logging
import pprint
import sys
from typing import List, Optional

from . import File, PlistError, PlistFormat, __version__, dump, to_python


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plistcodec",
        description="Read, convert and inspect binary and XML property lists",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log decoder details to stderr")
    sub = parser.add_subparsers(dest="command")

    convert_p = sub.add_parser("convert", help="Convert a plist to another format")
    convert_p.add_argument("input", metavar="IN")
    convert_p.add_argument("output", metavar="OUT")
    convert_p.add_argument("--fmt", choices=[f.value for f in PlistFormat], default=PlistFormat.XML.value,
                           help="Output format (default: xml)")
    convert_p.add_argument("--short-tags", action="store_true",
                           help="Write XML with the abbreviated tag set")

    dump_p = sub.add_parser("dump", help="List the objects of a plist file")
    dump_p.add_argument("input", metavar="IN")

    show_p = sub.add_parser("show", help="Print the decoded document")
    show_p.add_argument("input", metavar="IN")

    sub.add_parser("version", help="Print version and exit")

    return parser


def _cmd_convert(args: argparse.Namespace) -> None:
    with File(args.input, 'r') as f:
        value = f.read()
    with open(args.output, 'wb') as out:
        dump(value, out, fmt=PlistFormat(args.fmt), short_tags=args.short_tags)


def _cmd_dump(args: argparse.Namespace) -> None:
    with File(args.input, 'r') as f:
        for line in f.read_debug():
            print(line)


def _cmd_show(args: argparse.Namespace) -> None:
    with File(args.input, 'r') as f:
        pprint.pprint(to_python(f.read()), sort_dicts=False)


def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "version":
        print(f"plistcodec {__version__}")
        return

    try:
        if args.command == "convert":
            _cmd_convert(args)
        elif args.command == "dump":
            _cmd_dump(args)
        elif args.command == "show":
            _cmd_show(args)
    except PlistError as e:
        print(f"plistcodec: error [{e.code}]: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
