"""CLI commands for browsing the catalog."""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from .errors import CatalogError
from .models import FeedKey, ListType, RepositoryEntry
from .presentation import SignInPrompter, error_message, format_count, format_date
from .settings import Settings, get_settings
from .states import Error, FeedState, visible_entries


def _progress(msg: str):
    sys.stderr.write(f"\033[2K\r{msg}")
    sys.stderr.flush()


def _log(msg: str):
    sys.stderr.write(f"\033[2K\r[catalog] {msg}\n")
    sys.stderr.flush()


def _dump(data) -> None:
    json.dump(data, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def _entry_json(entry: RepositoryEntry) -> dict:
    return entry.to_dict()


def _settings(args) -> Settings:
    settings = get_settings()
    if args.cache_dir:
        settings = settings.model_copy(update={"cache_dir": args.cache_dir})
    return settings


def _report_error(state: Error, prompter: SignInPrompter) -> None:
    _log(state.message)
    if prompter.should_prompt(state):
        _log("Sign in to raise the limit: github-catalog sign-in --token <token>")


async def _collect_feed(repo, key: FeedKey, pages: int, prompter: SignInPrompter) -> FeedState:
    if key.list_type is ListType.SEARCH:
        repo.search(key.query or "", category=key.category)
    else:
        repo.open(key)
    state = await repo.join(key)

    for page in range(1, pages):
        if repo.load_more(key) is None:
            break
        state = await repo.join(key)
        _progress(f"  page {page + 1}/{pages}: {len(visible_entries(state))} entries")
        if isinstance(state, Error):
            break
    if pages > 1:
        sys.stderr.write("\n")

    if isinstance(state, Error):
        _report_error(state, prompter)
    return state


async def _run_feed(args, key: FeedKey) -> int:
    from .repository import CatalogRepository

    repo = CatalogRepository.create(_settings(args))
    prompter = SignInPrompter()
    try:
        state = await _collect_feed(repo, key, args.pages, prompter)
        entries = visible_entries(state)
        if args.featured:
            entries = repo.featured_rail(key)
        _dump(
            {
                "feed": key.describe(),
                "state": type(state).__name__,
                "entries": [_entry_json(e) for e in entries],
            }
        )
        return 1 if isinstance(state, Error) else 0
    finally:
        await repo.close()


async def _run_developer(args) -> int:
    from .repository import CatalogRepository

    repo = CatalogRepository.create(_settings(args))
    key = FeedKey.developer(args.login)
    try:
        try:
            profile = await repo.get_developer(args.login)
        except CatalogError as e:
            _log(error_message(e, subject="Developer"))
            return 1
        state = await _collect_feed(repo, key, args.pages, SignInPrompter())
        _dump(
            {
                "profile": asdict(profile),
                "state": type(state).__name__,
                "entries": [_entry_json(e) for e in visible_entries(state)],
            }
        )
        return 1 if isinstance(state, Error) else 0
    finally:
        await repo.close()


async def _run_details(args) -> int:
    from .repository import CatalogRepository

    owner, _, name = args.repo.partition("/")
    repo = CatalogRepository.create(_settings(args))
    try:
        try:
            details = await repo.load_details(owner, name)
        except CatalogError as e:
            _log(error_message(e))
            return 1
        release = details.latest_release
        installable = release.installable_asset() if release else None
        _dump(
            {
                "repository": _entry_json(details.entry),
                "stars": format_count(details.entry.star_count),
                "latest_release": None
                if release is None
                else {
                    "tag_name": release.tag_name,
                    "name": release.display_name or release.tag_name,
                    "published": format_date(release.published_at),
                    "html_url": release.html_url,
                    "download_url": installable.download_url if installable else None,
                    "assets": [a.name for a in release.assets],
                },
                "screenshots": list(details.screenshots),
                "readme_length": len(details.readme or ""),
            }
        )
        return 0
    finally:
        await repo.close()


async def _run_banner(args) -> int:
    from .banner import BannerResolver, fallback_gradient

    owner, _, name = args.repo.partition("/")
    resolver = BannerResolver(max_probes=_settings(args).banner_max_probes)
    try:
        url = await resolver.resolve(owner, name, args.branch)
    finally:
        await resolver.close()
    _dump({"banner": url, "fallback": None if url else list(fallback_gradient(args.position)), "probes": resolver.probes})
    return 0


async def _run_rate_limit(args) -> int:
    from .repository import CatalogRepository

    repo = CatalogRepository.create(_settings(args))
    try:
        token, signed_in = await repo.resolve_token()
        try:
            rate = await repo.client.get_rate_limit(token=token)
        except CatalogError as e:
            _log(error_message(e))
            return 1
        state = repo.monitor.state
        _dump(
            {
                "authenticated": bool(token),
                "signed_in": signed_in,
                "limit": rate.get("limit", state.limit),
                "remaining": rate.get("remaining", state.remaining),
                "reset_at": state.reset_at,
                "seconds_until_reset": repo.monitor.seconds_until_reset,
            }
        )
        return 0
    finally:
        await repo.close()


def _sign_in(args) -> int:
    from .auth import sign_in
    from .vault import create_vault

    token = args.token or getpass.getpass("GitHub token: ")
    vault = create_vault(get_settings())
    try:
        credential = sign_in(vault, token)
    except CatalogError as e:
        _log(error_message(e, subject="Account"))
        return 1
    print(f"Signed in as {credential.login}")
    return 0


def _sign_out(args) -> int:
    from .auth import sign_out
    from .vault import create_vault

    sign_out(create_vault(get_settings()))
    print("Signed out")
    return 0


def _whoami(args) -> int:
    from .vault import create_vault

    vault = create_vault(get_settings())
    credential = vault.get()
    if credential is None:
        print("Not signed in")
        return 1
    _dump(
        {
            "login": credential.login,
            "name": credential.display_name,
            "avatar_url": credential.avatar_url,
            "encrypted": vault.encrypted,
            "migrated_from_legacy": credential.migrated,
        }
    )
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Browse GitHub repositories as ranked, paginated feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Cache directory (default: ~/.cache/github-catalog-sync)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # feed subcommand
    feed_parser = subparsers.add_parser(
        "feed",
        help="Show a feed (trending, featured, updated)",
    )
    feed_parser.add_argument(
        "list_type",
        type=str.upper,
        choices=[t.value for t in ListType if t not in (ListType.SEARCH, ListType.DEVELOPER)],
        help="Feed to show",
    )
    feed_parser.add_argument(
        "--category",
        default=None,
        help="Restrict to a category topic (e.g. games)",
    )
    feed_parser.add_argument(
        "--pages",
        type=int,
        default=1,
        help="Number of pages to load (default: 1)",
    )
    feed_parser.add_argument(
        "--featured",
        action="store_true",
        help="Only print the top entries by stars",
    )

    # search subcommand
    search_parser = subparsers.add_parser(
        "search",
        help="Search repositories",
    )
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--category", default=None, help="Restrict to a category topic")
    search_parser.add_argument("--pages", type=int, default=1, help="Number of pages to load (default: 1)")

    # developer subcommand
    dev_parser = subparsers.add_parser(
        "developer",
        help="Show a developer's profile and repositories",
    )
    dev_parser.add_argument("login", help="GitHub login")
    dev_parser.add_argument("--pages", type=int, default=1, help="Number of pages to load (default: 1)")

    # details subcommand
    details_parser = subparsers.add_parser(
        "details",
        help="Show repository details, latest release and screenshots",
    )
    details_parser.add_argument("repo", help="owner/repo")

    # banner subcommand
    banner_parser = subparsers.add_parser(
        "banner",
        help="Look for a repository banner image",
    )
    banner_parser.add_argument("repo", help="owner/repo")
    banner_parser.add_argument("--branch", default="main", help="Branch to probe (default: main)")
    banner_parser.add_argument(
        "--position",
        type=int,
        default=0,
        help="List position, picks the fallback gradient when no banner exists",
    )

    # account subcommands
    sign_in_parser = subparsers.add_parser(
        "sign-in",
        help="Store a GitHub token (raises the rate limit to 5000 requests/hour)",
    )
    sign_in_parser.add_argument("--token", default=None, help="Token (prompted when omitted)")
    subparsers.add_parser("sign-out", help="Remove the stored token")
    subparsers.add_parser("whoami", help="Show the signed-in account")
    subparsers.add_parser("rate-limit", help="Show the current API quota")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "feed":
        key = FeedKey(ListType(args.list_type), category=args.category)
        code = asyncio.run(_run_feed(args, key))
    elif args.command == "search":
        args.featured = False
        key = FeedKey.search(args.query, category=args.category)
        if not key.query:
            _log("Search text must not be empty")
            code = 1
        else:
            code = asyncio.run(_run_feed(args, key))
    elif args.command == "developer":
        code = asyncio.run(_run_developer(args))
    elif args.command == "details":
        code = asyncio.run(_run_details(args))
    elif args.command == "banner":
        code = asyncio.run(_run_banner(args))
    elif args.command == "rate-limit":
        code = asyncio.run(_run_rate_limit(args))
    elif args.command == "sign-in":
        code = _sign_in(args)
    elif args.command == "sign-out":
        code = _sign_out(args)
    elif args.command == "whoami":
        code = _whoami(args)
    else:
        parser.print_help()
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
