"""Command-line interface for Spec Builder."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

# Add parent directory to path to allow imports when run as script
sys.path.insert(0, str(Path(__file__).parent.parent))

from specbuilder.api_client import SpecBuilderAPIClient
from specbuilder.config import BATCH_SIZE, DB_PATH, LOOKUP_TABLES, SPEC_BUILDER_API_URL
from specbuilder.db import (
    get_connection,
    get_specification_count,
    get_users,
    init_db,
    seed_demo_data,
)
from specbuilder.logging_config import setup_logging
from specbuilder.product_cache import ProductCache
from specbuilder.session import DatabaseSpecificationSource, SpecBuilderSession
from specbuilder.shopify import ShopifyClient
from specbuilder.shutdown import WarmupInterrupt

__all__ = ["main", "parse_args", "show_stats", "warm_cache", "show_specifications"]


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Spec Builder: product cache and specification tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the database and demo users/lookups
  python -m specbuilder.cli --seed

  # List users available for dev-mode login
  python -m specbuilder.cli --list-users

  # Walk the whole Shopify catalog into the product cache
  python -m specbuilder.cli --warm-cache

  # Show a user's specifications joined to their products, most complete first
  python -m specbuilder.cli --specs USER_ID

  # Same, but through a running Spec Builder server
  python -m specbuilder.cli --specs USER_ID --source api
        """,
    )

    # Database options
    parser.add_argument(
        "--db",
        default=DB_PATH,
        help=f"SQLite database path (default: {DB_PATH})",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the database schema and exit",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Create demo users and lookup values and exit",
    )

    # Info commands
    parser.add_argument(
        "--list-users",
        action="store_true",
        help="List users and exit",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show database statistics and exit",
    )

    # Cache commands
    parser.add_argument(
        "--warm-cache",
        action="store_true",
        help="Load every product page into the cache and report progress",
    )
    parser.add_argument(
        "--specs",
        metavar="USER_ID",
        help="Show a user's specifications joined to their products",
    )
    parser.add_argument(
        "--source",
        choices=["shopify", "api"],
        default="shopify",
        help="shopify: query Shopify and the local database (default); api: use a Spec Builder server",
    )
    parser.add_argument(
        "--api-url",
        default=SPEC_BUILDER_API_URL,
        help=f"Spec Builder server for --source api (default: {SPEC_BUILDER_API_URL})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=BATCH_SIZE,
        help=f"Products per page (default: {BATCH_SIZE})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug output to the console",
    )

    return parser.parse_args(argv)


def show_stats(db_path: str) -> None:
    """Display database statistics."""
    init_db(db_path)

    print(f"\n{'='*50}")
    print(f"Database: {db_path}")
    print(f"{'='*50}")

    users = get_users(db_path)
    print(f"\nUsers: {len(users)}")
    print(f"Total specifications: {get_specification_count(db_path)}")

    if users:
        print("\nSpecifications by user:")
        for user in users:
            count = get_specification_count(db_path, user_id=user["id"])
            print(f"  {user['email']} ({user['role']}): {count}")

    print("\nLookup values:")
    with get_connection(db_path) as conn:
        for table in list(LOOKUP_TABLES.values()) + ["tasting_notes", "tobacco_types", "cures"]:
            row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            print(f"  {table}: {row['count']}")

    print()


def list_users(db_path: str) -> None:
    init_db(db_path)
    users = get_users(db_path)
    if not users:
        print("No users yet. Run with --seed to create demo users.")
        return
    print("Users:")
    for user in users:
        print(f"  {user['id']}  {user['email']:<30} {user['role']:<9} {user['name'] or ''}")


def _product_source(args: argparse.Namespace):
    if args.source == "api":
        return SpecBuilderAPIClient(args.api_url)
    return ShopifyClient()


def warm_cache(args: argparse.Namespace) -> ProductCache:
    """Walk the product listing until it is exhausted or the retry ceiling is hit."""
    cache = ProductCache(_product_source(args), page_size=args.batch_size)

    with WarmupInterrupt(cache) as interrupt:
        page = cache.preload(start_background=False)
        if page is None:
            print(f"❌ Initial product load failed: {cache.state.error}")
            return cache
        print(f"First page: {len(page.products)} products")

        if page.has_next_page and not interrupt.interrupted:
            cache.run_background_loading()

    state = cache.state
    print(f"\n{'='*50}")
    print(f"Products cached: {state.total_products_loaded}")
    print(f"Batches loaded: {state.batches_loaded}")
    if state.completion_reason is not None:
        print(f"Stopped: {state.completion_reason.value}")
    elif interrupt.interrupted:
        print(f"Stopped: interrupted by {interrupt.signal_name}")
    if state.error:
        print(f"Last error: {state.error}")
    print(f"{'='*50}\n")
    return cache


def show_specifications(args: argparse.Namespace, user_id: str) -> None:
    """Log in as ``user_id`` and print their specifications, most complete first."""
    if args.source == "api":
        client = SpecBuilderAPIClient(args.api_url)
        session = SpecBuilderSession(client, client, client)
    else:
        init_db(args.db)
        db_source = DatabaseSpecificationSource(args.db)
        session = SpecBuilderSession(ShopifyClient(), db_source, db_source)

    try:
        user = session.login(user_id, wait=True, background=False)
        if user is None:
            print(f"❌ Login failed: {session.error}")
            return

        state = session.specification_cache.state
        if state.error:
            print(f"❌ Could not load specifications: {state.error}")
            return

        specs = session.specification_cache.get_specifications_sorted_by_completeness()
        print(f"\nSpecifications for {user.name or user.email} ({len(specs)}):\n")
        for spec in specs:
            marker = "✓" if spec.product else ("…" if spec.is_product_loading else "✗")
            rating = f"{spec.specification.star_rating}★" if spec.specification.star_rating else "  "
            print(f"  {marker} {spec.completion_percent or 0:5.1f}%  {rating}  {spec.display_title}")
        print()
    finally:
        session.close()


def main(argv: Optional[list] = None) -> None:
    """Main entry point for CLI."""
    args = parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.init_db:
        init_db(args.db)
        print(f"Database initialized: {args.db}")
        return

    if args.seed:
        user_ids = seed_demo_data(args.db)
        print(f"Seeded {len(user_ids)} demo users into {args.db}")
        list_users(args.db)
        return

    if args.list_users:
        list_users(args.db)
        return

    if args.stats:
        show_stats(args.db)
        return

    if args.warm_cache:
        warm_cache(args)
        return

    if args.specs:
        show_specifications(args, args.specs)
        return

    print("Nothing to do. See --help for available commands.")


if __name__ == "__main__":
    main()
