"""
Command-line interface for the dictionary engine.
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .cancel import CancelToken
from .config import EngineConfig, load_config
from .engine import DictionaryEngine
from .exceptions import (
    ConfigError,
    DictionaryEngineError,
    DictionaryNotFoundError,
    OperationCancelledError,
)
from .models import Progress, Stage, format_progress


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the dict-engine CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        config = load_config(args.config) if args.config else EngineConfig()
    except ConfigError as e:
        print(f"\n  [CONFIG ERROR] {e}")
        if e.line:
            print(f"                Line: {e.line}")
        return 1
    except FileNotFoundError as e:
        print(f"\n  [ERROR] {e}")
        return 1

    _configure_logging(config, args.verbose)
    args.engine_config = config
    return args.func(args)


def _configure_logging(config: EngineConfig, verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = config.log_level_value
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="dict-engine",
        description="Import, query and manage local StarDict and Yomitan dictionaries",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s (dictionary-engine)",
    )
    parser.add_argument(
        "--db",
        type=str,
        help="SQLite database file (default: from config, else in-memory)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML configuration file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Increase log output (-v info, -vv debug)",
    )

    subparsers = parser.add_subparsers(title="commands", dest="command")

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import a dictionary archive",
    )
    import_parser.add_argument(
        "file",
        type=Path,
        help="ZIP or tar archive (StarDict or Yomitan)",
    )
    import_parser.add_argument(
        "--timeout",
        type=float,
        help="Abort the import after this many seconds",
    )
    import_parser.set_defaults(func=cmd_import)

    # list command
    list_parser = subparsers.add_parser(
        "list",
        help="List installed dictionaries",
    )
    list_parser.add_argument(
        "--counts",
        action="store_true",
        help="Verify recorded term totals against stored rows",
    )
    list_parser.set_defaults(func=cmd_list)

    # lookup command
    lookup_parser = subparsers.add_parser(
        "lookup",
        help="Look up a word",
    )
    lookup_parser.add_argument("expression", help="Word to look up")
    lookup_parser.add_argument("--reading", help="Reading to match or fall back to")
    lookup_parser.add_argument(
        "--dict",
        dest="dict_names",
        action="append",
        help="Restrict to this dictionary (repeatable; order is kept)",
    )
    lookup_parser.set_defaults(func=cmd_lookup)

    # suggest command
    suggest_parser = subparsers.add_parser(
        "suggest",
        help="List expressions starting with a prefix",
    )
    suggest_parser.add_argument("prefix", help="Prefix to complete")
    suggest_parser.add_argument(
        "--max",
        type=int,
        default=20,
        help="Maximum number of suggestions (default: 20)",
    )
    suggest_parser.add_argument(
        "--dict",
        dest="dict_names",
        action="append",
        help="Restrict to this dictionary (repeatable)",
    )
    suggest_parser.set_defaults(func=cmd_suggest)

    # did-you-mean command
    dym_parser = subparsers.add_parser(
        "did-you-mean",
        help="Suggest longer entries formed with the following characters",
    )
    dym_parser.add_argument("word", help="Selected word")
    dym_parser.add_argument("next_chars", help="Text that follows the word")
    dym_parser.add_argument(
        "--max",
        type=int,
        default=10,
        help="Maximum number of results (default: 10)",
    )
    dym_parser.add_argument(
        "--dict",
        dest="dict_names",
        action="append",
        help="Restrict to this dictionary (repeatable)",
    )
    dym_parser.set_defaults(func=cmd_did_you_mean)

    # delete command
    delete_parser = subparsers.add_parser(
        "delete",
        help="Delete an installed dictionary",
    )
    delete_parser.add_argument("title", help="Dictionary title")
    delete_parser.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )
    delete_parser.set_defaults(func=cmd_delete)

    return parser


def _open_engine(args: argparse.Namespace) -> DictionaryEngine:
    return DictionaryEngine(args.db, config=args.engine_config)


def _print_progress(progress: Progress) -> None:
    if progress.stage in (Stage.PARSE, Stage.PERSIST) and progress.total:
        print(f"  {progress.stage.value}: {format_progress(progress.current, progress.total)}")
    elif progress.message:
        print(f"  {progress.stage.value}: {progress.message}")


def cmd_import(args: argparse.Namespace) -> int:
    """Handle import command."""
    print(f"\nImporting {args.file}...")
    try:
        data = args.file.read_bytes()
    except OSError as e:
        print(f"\n  [ERROR] {e}")
        return 1

    cancel = CancelToken(timeout=args.timeout) if args.timeout else None
    with _open_engine(args) as engine:
        try:
            summary = engine.import_dictionary(
                data, progress_cb=_print_progress, cancel=cancel,
            )
        except OperationCancelledError as e:
            print(f"\n  [CANCELLED] {e}")
            return 1
        except DictionaryEngineError as e:
            print(f"\n  [IMPORT ERROR] {e}")
            return 1

    print(f"\nImported \"{summary.title}\" ({summary.format})")
    print(f"  Terms: {summary.counts.terms_total}")
    if summary.counts.kanji_total:
        print(f"  Kanji: {summary.counts.kanji_total}")
    if summary.counts.media_total:
        print(f"  Media: {summary.counts.media_total}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """Handle list command."""
    with _open_engine(args) as engine:
        dictionaries = engine.list_dictionaries()
        counts = engine.term_counts() if args.counts else {}

    if not dictionaries:
        print("No dictionaries installed.")
        return 0

    print(f"\n{'Title':<32} {'Format':<10} {'Revision':<12} {'Terms':>8}")
    print("-" * 65)
    mismatched = 0
    for d in dictionaries:
        line = f"{d.title[:32]:<32} {d.format:<10} {d.revision[:12]:<12} {d.counts.terms_total:>8}"
        if d.title in counts:
            recorded, actual = counts[d.title]
            if recorded != actual:
                mismatched += 1
                line += f"  [MISMATCH: {actual} rows]"
        print(line)

    return 1 if mismatched else 0


def cmd_lookup(args: argparse.Namespace) -> int:
    """Handle lookup command."""
    with _open_engine(args) as engine:
        if args.dict_names:
            result = engine.lookup_in_dictionaries(
                args.expression,
                args.dict_names,
                reading=args.reading,
                order=args.dict_names,
            )
        else:
            result = engine.lookup(args.expression, reading=args.reading)

    if result is None:
        print(f"No entry for \"{args.expression}\".")
        return 1
    print(result)
    return 0


def cmd_suggest(args: argparse.Namespace) -> int:
    """Handle suggest command."""
    with _open_engine(args) as engine:
        results = engine.suggest_prefix(
            args.prefix, max_results=args.max, dict_names=args.dict_names,
        )
    for expression in results:
        print(expression)
    return 0 if results else 1


def cmd_did_you_mean(args: argparse.Namespace) -> int:
    """Handle did-you-mean command."""
    with _open_engine(args) as engine:
        results = engine.suggest_did_you_mean(
            args.word,
            args.next_chars,
            max_results=args.max,
            dict_names=args.dict_names,
        )
    for expression in results:
        print(expression)
    return 0 if results else 1


def cmd_delete(args: argparse.Namespace) -> int:
    """Handle delete command."""
    if not args.yes:
        response = input(f"\nDelete dictionary \"{args.title}\"? [y/N] ")
        if response.lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    with _open_engine(args) as engine:
        try:
            deleted = engine.delete_dictionary(args.title, progress_cb=_print_progress)
        except DictionaryNotFoundError as e:
            print(f"\n  [ERROR] {e}")
            return 1

    print(f"\nDeleted \"{args.title}\" ({deleted} rows)")
    return 0
