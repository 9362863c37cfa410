"""Command-line entry point for the NewDoli offline core."""

from __future__ import annotations

import argparse
import asyncio
import getpass
from typing import Sequence

from newdoli.core.context import AppContext
from newdoli.core.errors import NewDoliError
from newdoli.core.logging_config import setup_logging
from newdoli.core.models import COLLECTIONS
from newdoli.core.sync import ENTITY_TYPES


async def _diagnostics(ctx: AppContext) -> None:
    print("DB URL:", ctx.db.url)
    print("Dolibarr URL:", await ctx.config.dolibarr_url() or "<not configured>")
    print("Authenticated:", ctx.auth.is_authenticated)
    for name in COLLECTIONS:
        print(f"{name} rows:", await ctx.store.count(name))
    status = await ctx.sync.sync_status()
    print("pending changes:", status["pending"], "last:", status["last_pending_at"])


async def _run(args: argparse.Namespace) -> int:
    async with AppContext(args.database_url) as ctx:
        if args.set_url:
            await ctx.config.set_dolibarr_url(args.set_url)

        if args.check:
            online = await ctx.connectivity.check_now()
            print("Online:", online, f"({ctx.connectivity.error})" if ctx.connectivity.error else "")

        if args.login:
            password = getpass.getpass(f"Password for {args.login}: ")
            await ctx.auth.login(args.login, password)
            user = ctx.auth.current_user
            print(f"Logged in as {user.login}; modules: {', '.join(ctx.auth.accessible_modules())}")

        if args.refresh:
            outcomes = await ctx.sync.refresh_all()
            for name in ENTITY_TYPES:
                outcome = outcomes[name]
                suffix = f" error: {outcome.error}" if outcome.error else ""
                print(f"{name}: {len(outcome.items)} rows from {outcome.source}{suffix}")

        if args.logout:
            await ctx.auth.logout()
            print("Logged out")

        if args.diag:
            await _diagnostics(ctx)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI arguments and dispatch to the requested workflow."""

    parser = argparse.ArgumentParser(
        prog="newdoli",
        description="Offline-first Dolibarr client core: configure, sign in and sync.",
    )
    parser.add_argument("--database-url", help="SQLAlchemy URL of the local store.")
    parser.add_argument("--set-url", metavar="URL", help="Store the Dolibarr server URL.")
    parser.add_argument("--check", action="store_true", help="Probe connectivity to the server.")
    parser.add_argument("--login", metavar="USER", help="Sign in (password is prompted).")
    parser.add_argument("--refresh", action="store_true", help="Refresh every mirrored collection.")
    parser.add_argument("--logout", action="store_true", help="Sign out and forget the credential.")
    parser.add_argument("--diag", action="store_true", help="Print local store diagnostics.")
    parser.add_argument("--log-level", default=None, help="Logging level (default from settings).")

    args = parser.parse_args(None if argv is None else list(argv))
    setup_logging(args.log_level)

    try:
        return asyncio.run(_run(args))
    except NewDoliError as exc:
        print("ERROR:", exc)
        return 1
