"""Command line interface (``bctb``).

Usage:
    bctb init                       # Write a starter .bctb-config.json
    bctb validate -p production     # Check a profile for missing settings
    bctb list-profiles
    bctb test-auth -p production
    bctb query "traces | take 10" --limit 5
    bctb cache stats|clear|cleanup
    bctb queries search errors      # Saved .kql files: list|search|save|categories|external
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable

from colorama import Fore, Style, init as colorama_init

from .auth import AuthProvider, DeviceCodeStrategy
from .cache import QueryCache
from .client import QueryExecutor, QueryResult
from .config import CONFIG_FILE_NAME, ConfigurationDocument, list_profiles, write_template
from .errors import TelemetryBuddyError
from .profiles import AuthFlow, ResolvedProfile, resolve_profile, validate_profile
from .queries import QueryLibrary, SavedQuery
from .references import ReferenceFetcher
from .telemetry import Events, create_usage_telemetry, get_default_telemetry, set_default_telemetry
from .telemetry_utils import CorrelationContext

logger = logging.getLogger(__name__)


def _ok(message: str) -> None:
    print(f"{Fore.GREEN}✓ {message}{Style.RESET_ALL}")


def _fail(message: str) -> None:
    print(f"{Fore.RED}✗ {message}{Style.RESET_ALL}", file=sys.stderr)


def _heading(message: str) -> None:
    print(f"{Style.BRIGHT}{message}{Style.RESET_ALL}")


def _load_profile(args: argparse.Namespace) -> ResolvedProfile:
    document = ConfigurationDocument.load(args.config)
    profile = resolve_profile(document, args.profile)
    if profile.telemetry is not None and profile.telemetry.enabled:
        set_default_telemetry(create_usage_telemetry(
            profile.telemetry,
            common_properties={"component": "cli"},
            repo_root=str(Path(__file__).resolve().parent),
        ))
    return profile


def _print_device_code(verification_uri: str, user_code: str, expires_on: datetime) -> None:
    print(
        f"{Fore.YELLOW}To sign in, open {Style.BRIGHT}{verification_uri}{Style.NORMAL} "
        f"and enter the code {Style.BRIGHT}{user_code}{Style.RESET_ALL}"
    )


def _auth_provider(profile: ResolvedProfile) -> AuthProvider:
    strategy = None
    if profile.auth_flow == AuthFlow.DEVICE_CODE:
        strategy = DeviceCodeStrategy(prompt_callback=_print_device_code)
    return AuthProvider(profile, strategy)


def cmd_init(args: argparse.Namespace) -> int:
    try:
        path = write_template(args.output)
    except FileExistsError as e:
        _fail(str(e))
        return 1

    _ok(f"Created config template: {path}")
    print("\nNext steps:")
    print("1. Edit the config file with your Application Insights details")
    print("2. Run: bctb validate")
    print("3. Run: bctb test-auth")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    profile = _load_profile(args)
    problems = validate_profile(profile)
    if problems:
        _fail("Configuration has problems:")
        for problem in problems:
            print(f"  - {problem}")
        return 1

    _ok("Configuration is valid")
    if profile.name:
        print(f"  Profile: {profile.name}")
    print(f"  Connection: {profile.connection_name}")
    print(f"  Auth flow: {profile.auth_flow.value}")
    print(f"  App Insights: {profile.app_insights_app_id or 'Not configured'}")
    return 0


def cmd_list_profiles(args: argparse.Namespace) -> int:
    document = ConfigurationDocument.load(args.config)
    summaries = list_profiles(document)

    if not document.is_multi_profile:
        print("No profiles found (single config mode)")
        print(f"Connection: {summaries[0].connection_name or 'Unnamed'}")
        return 0

    _heading("Available profiles:\n")
    for summary in summaries:
        marker = f"{Fore.GREEN}*{Style.RESET_ALL}" if summary.is_default else " "
        base = f"{Fore.CYAN}(base){Style.RESET_ALL}" if summary.is_base else ""
        print(f"  [{marker}] {summary.name}")
        print(f"      {summary.connection_name or 'Unnamed'} {base}".rstrip())
        if summary.extends:
            print(f"      Extends: {summary.extends}")
        print("")

    if document.default_profile:
        print(f"Default profile: {document.default_profile}")
    return 0


def cmd_test_auth(args: argparse.Namespace) -> int:
    profile = _load_profile(args)
    print(f"Testing authentication for: {profile.connection_name}")
    print(f"Auth flow: {profile.auth_flow.value}\n")

    result = _auth_provider(profile).authenticate()
    _ok("Authentication successful")
    print(f"  User: {result.user}")
    if result.expires_on:
        print(f"  Expires: {result.expires_on.isoformat()}")
    return 0


def _read_query(args: argparse.Namespace) -> str:
    if args.file:
        return Path(args.file).read_text(encoding="utf-8")
    if args.query == "-":
        return sys.stdin.read()
    return args.query or ""


def _print_table(result: QueryResult) -> None:
    if not result.columns:
        print(result.summary)
        return
    cells = [[str(c) for c in result.columns]] + [
        ["" if value is None else str(value) for value in row] for row in result.rows
    ]
    widths = [max(len(row[i]) for row in cells) for i in range(len(result.columns))]
    header, *body = cells
    print(f"{Style.BRIGHT}" + "  ".join(h.ljust(w) for h, w in zip(header, widths)) + f"{Style.RESET_ALL}")
    for row in body:
        print("  ".join(v.ljust(w) for v, w in zip(row, widths)))
    suffix = f" {Fore.CYAN}(cached){Style.RESET_ALL}" if result.cached else ""
    print(f"\n{result.summary}{suffix}")


def cmd_query(args: argparse.Namespace) -> int:
    profile = _load_profile(args)
    query = _read_query(args)
    context = CorrelationContext.create("cli.query")

    token = _auth_provider(profile).get_access_token()
    result = QueryExecutor().execute(
        profile,
        query,
        token,
        correlation_id=context.correlation_id,
        limit=args.limit,
        query_name=args.name or (Path(args.file).stem if args.file else None),
    )

    if args.json:
        print(json.dumps({**result.to_dict(), "cached": result.cached}, indent=2, default=str))
    else:
        _print_table(result)
    return 0


def cmd_cache(args: argparse.Namespace) -> int:
    profile = _load_profile(args)
    cache = QueryCache(profile.cache_dir)

    if args.action == "stats":
        stats = cache.stats()
        _heading("Cache statistics:")
        print(f"  Path: {stats.cache_path}")
        print(f"  Entries: {stats.total_entries} ({stats.expired_entries} expired)")
        print(f"  Size: {stats.total_size_bytes} bytes")
    elif args.action == "clear":
        removed = cache.clear()
        get_default_telemetry().track_event(Events.CACHE_CLEARED, {"entries": removed})
        _ok(f"Cleared {removed} cache entries")
    else:
        removed = cache.cleanup_expired()
        _ok(f"Removed {removed} expired cache entries")
    return 0


def _print_saved_query(query: SavedQuery) -> None:
    print(f"  {Style.BRIGHT}{query.name}{Style.RESET_ALL} {Fore.CYAN}[{query.category}]{Style.RESET_ALL}")
    if query.purpose:
        print(f"      {query.purpose}")
    if query.tags:
        print(f"      Tags: {', '.join(query.tags)}")
    print(f"      {query.file_path}")


def cmd_queries(args: argparse.Namespace) -> int:
    profile = _load_profile(args)
    library = QueryLibrary.for_profile(profile)

    if args.action == "save":
        kql = _read_query(args)
        tags = [tag for tag in (args.tags or "").split(",") if tag.strip()]
        path = library.save(
            args.name,
            kql,
            purpose=args.purpose,
            use_case=args.use_case,
            tags=tags,
            category=args.category,
        )
        get_default_telemetry().track_event(Events.QUERY_SAVED, {"category": args.category or "Root"})
        _ok(f"Saved query: {path}")
        return 0

    if args.action == "categories":
        categories = library.categories()
        if not categories:
            print("No categories")
        for category in categories:
            print(f"  {category}")
        return 0

    if args.action == "external":
        external = ReferenceFetcher.for_profile(profile).fetch_all()
        _heading(f"External queries ({len(external)}):")
        for item in external:
            print(f"  {item.file_name} {Fore.CYAN}[{item.source}]{Style.RESET_ALL}")
            print(f"      {item.url}")
        return 0

    if args.action == "search":
        found = library.search(args.terms)
        _heading(f"Matching queries ({len(found)}):")
    else:
        found = library.list_queries()
        if args.category:
            found = [q for q in found if q.category == args.category]
        _heading(f"Saved queries in {library.root} ({len(found)}):")
    for query in found:
        _print_saved_query(query)
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    "init": cmd_init,
    "validate": cmd_validate,
    "list-profiles": cmd_list_profiles,
    "test-auth": cmd_test_auth,
    "query": cmd_query,
    "cache": cmd_cache,
    "queries": cmd_queries,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", help=f"Path to config file (default: discover {CONFIG_FILE_NAME})")
    common.add_argument("-p", "--profile", help="Profile name (for multi-profile configs)")
    common.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

    parser = argparse.ArgumentParser(prog="bctb", description="Query telemetry with named connection profiles")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", parents=[common], help="Create a config file template")
    init.add_argument("-o", "--output", default=CONFIG_FILE_NAME, help=f"Output path (default: {CONFIG_FILE_NAME})")

    sub.add_parser("validate", parents=[common], help="Validate a config file")
    sub.add_parser("list-profiles", parents=[common], help="List all available profiles")
    sub.add_parser("test-auth", parents=[common], help="Test authentication")

    query = sub.add_parser("query", parents=[common], help="Run a query")
    query.add_argument("query", nargs="?", help="Query text, or - to read from stdin")
    query.add_argument("-f", "--file", help="Read the query from a file")
    query.add_argument("-l", "--limit", type=int, help="Maximum rows to return")
    query.add_argument("-n", "--name", help="Query name reported in usage telemetry")
    query.add_argument("--json", action="store_true", help="Print the result as JSON")

    cache = sub.add_parser("cache", parents=[common], help="Inspect or clear the query cache")
    cache.add_argument("action", choices=["stats", "clear", "cleanup"])

    # Common options go on the leaf parsers only, so their defaults cannot mask each other
    queries = sub.add_parser("queries", help="Manage saved queries in the queries folder")
    actions = queries.add_subparsers(dest="action", required=True)
    listing = actions.add_parser("list", parents=[common], help="List saved queries")
    listing.add_argument("--category", help="Only queries in this category")
    search = actions.add_parser("search", parents=[common], help="Search saved queries")
    search.add_argument("terms", nargs="+", help="Search terms (any may match)")
    save = actions.add_parser("save", parents=[common], help="Save a query to the library")
    save.add_argument("name", help="Query title")
    save.add_argument("query", nargs="?", help="Query text, or - to read from stdin")
    save.add_argument("-f", "--file", help="Read the query from a file")
    save.add_argument("--purpose", help="What the query finds")
    save.add_argument("--use-case", dest="use_case", help="When to run it")
    save.add_argument("--tags", help="Comma separated tags")
    save.add_argument("--category", help="Subfolder to save into")
    actions.add_parser("categories", parents=[common], help="List query categories")
    actions.add_parser("external", parents=[common], help="Fetch queries from the profile's references")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "query" and not (args.query or args.file):
        parser.error("query: provide query text, - for stdin, or --file")
    if args.command == "queries" and args.action == "save" and not (args.query or args.file):
        parser.error("queries save: provide query text, - for stdin, or --file")

    colorama_init()
    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    # Profile loading may replace the default gate, so look it up on every use
    try:
        code = COMMANDS[args.command](args)
        get_default_telemetry().track_event(
            Events.COMMAND_COMPLETED, {"command": args.command, "exitCode": code}
        )
        return code
    except TelemetryBuddyError as e:
        get_default_telemetry().track_exception(e, {"command": args.command})
        get_default_telemetry().track_event(
            Events.COMMAND_FAILED, {"command": args.command, "errorType": type(e).__name__}
        )
        _fail(str(e))
        return 1
    except OSError as e:
        _fail(str(e))
        return 1
    finally:
        get_default_telemetry().flush()


if __name__ == "__main__":
    sys.exit(main())
