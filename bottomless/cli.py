"""Command line tool for inspecting, restoring and pruning replicated generations."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid
from collections.abc import Sequence
from datetime import date
from typing import TextIO

from .admin import Admin
from .replicator import Replicator, ReplicatorError
from .storage import ObjectStore, S3Store, StorageError, store_from_env

logger = logging.getLogger(__name__)

_FAILURES = (StorageError, ReplicatorError, ValueError, OSError)


def _generation(text: str) -> uuid.UUID:
    try:
        return uuid.UUID(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid generation: {text!r}") from exc


def _date(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date: {text!r}") from exc


def _count(text: str) -> int:
    try:
        value = int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid count: {text!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"invalid count: {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the command line tool."""
    parser = argparse.ArgumentParser(prog="bottomless-cli", description="Bottomless CLI")
    parser.add_argument("-e", "--endpoint")
    parser.add_argument("-b", "--bucket")
    parser.add_argument("-d", "--database")
    commands = parser.add_subparsers(dest="command", required=True)

    ls = commands.add_parser("ls", help="List available generations")
    ls.add_argument("-g", "--generation", type=_generation,
                    help="List details about single generation")
    ls.add_argument("-l", "--limit", type=_count, help="List only <limit> newest generations")
    ls.add_argument("--older-than", type=_date,
                    help="List only generations older than given date")
    ls.add_argument("--newer-than", type=_date,
                    help="List only generations newer than given date")
    ls.add_argument("-v", "--verbose", action="store_true",
                    help="Print detailed information on each generation")

    restore = commands.add_parser("restore", help="Restore the database")
    restore.add_argument(
        "-g", "--generation", type=_generation,
        help="Generation to restore from. Skip this parameter to restore from the newest "
             "generation.",
    )

    rm = commands.add_parser("rm", help="Remove given generation from remote storage")
    rm.add_argument("-g", "--generation", type=_generation)
    rm.add_argument("--older-than", type=_date, help="Remove generations older than given date")
    rm.add_argument("-v", "--verbose", action="store_true")
    return parser


def _check_conflicts(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.command not in ("ls", "rm") or args.generation is None:
        return
    others = ["limit", "older_than", "newer_than"] if args.command == "ls" else ["older_than"]
    for name in others:
        if getattr(args, name) is not None:
            option = "--" + name.replace("_", "-")
            parser.error(f"argument {option} cannot be used with --generation")


def _execute(args: argparse.Namespace, store: ObjectStore, env: dict[str, str],
             out: TextIO | None) -> int:
    admin = Admin(Replicator.create(store=store, environ=env), out=out)
    stream = out if out is not None else sys.stdout

    database = args.database
    if database is None:
        database = admin.detect_db()
        if database is None:
            print("Could not autodetect the database. Please pass it explicitly with -d option",
                  file=stream)
            return 0
    logger.info("Database: %s", database)
    admin.replicator.register_db(database)

    if args.command == "ls":
        if args.generation is not None:
            admin.list_generation(args.generation)
        else:
            admin.list_generations(args.limit, args.older_than, args.newer_than, args.verbose)
    elif args.command == "restore":
        if args.generation is not None:
            admin.replicator.restore_from(args.generation)
        else:
            admin.replicator.restore()
    elif args.command == "rm":
        if args.older_than is not None:
            admin.remove_many(args.older_than, args.verbose)
        elif args.generation is not None:
            admin.remove(args.generation, args.verbose)
        else:
            print("rm command cannot be run without parameters; see -h or --help for details",
                  file=stream)
    return 0


def run(
    argv: Sequence[str] | None = None,
    store: ObjectStore | None = None,
    out: TextIO | None = None,
) -> int:
    """Parse arguments and run one command; return the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _check_conflicts(parser, args)

    env = dict(os.environ)
    if args.endpoint is not None:
        env["LIBSQL_BOTTOMLESS_ENDPOINT"] = args.endpoint
    if args.bucket is not None:
        env["LIBSQL_BOTTOMLESS_BUCKET"] = args.bucket

    owned: S3Store | None = None
    try:
        if store is None:
            owned = store_from_env(env)
            store = owned
        return _execute(args, store, env, out)
    except _FAILURES as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if owned is not None:
            owned.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of the command line tool."""
    logging.basicConfig(level=logging.INFO)
    return run(argv)


if __name__ == "__main__":
    sys.exit(main())