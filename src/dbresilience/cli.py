"""
Command line connection check.

Probes the configured database, prints where it connected to and which tables
exist, and exits 0 on success or 1 on failure.
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from dbresilience.config import ResilienceConfig
from dbresilience.database.client import PostgreSQLClient
from dbresilience.exceptions import ConfigValidationError, DatabaseException
from dbresilience.monitoring.logging import mask_dsn, setup_structured_logging

logger = logging.getLogger(__name__)

LIST_TABLES_SQL = (
    "SELECT table_name FROM information_schema.tables "
    "WHERE table_schema = current_schema() ORDER BY table_name"
)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="dbresilience-check", description="Check that the database is reachable."
    )
    ap.add_argument("--config", type=str, default=None, help="YAML configuration file")
    ap.add_argument("--env-file", type=str, default=None, help=".env file to load")
    ap.add_argument("--timeout", type=float, default=None, help="Probe timeout in seconds")
    ap.add_argument("--list-tables", action="store_true", help="Also list tables")
    ap.add_argument("--log-level", type=str, default="WARNING")
    return ap


async def check_connection(
    client: PostgreSQLClient, timeout: float, list_tables: bool = False
) -> int:
    """Probe the database and print what it reports. Returns the exit code."""
    print("Checking database connection...")
    try:
        await client.probe(timeout)
        info = await client.get_connection_info()
        print("Database connection successful")
        print(f"Connected to database: {info.get('database')}")
        print(f"Using schema: {info.get('schema')}")

        if list_tables:
            tables = await client.fetch_all(LIST_TABLES_SQL)
            if tables:
                print(f"Found {len(tables)} tables:")
                for row in tables:
                    print(f"- {row['table_name']}")
            else:
                print("No tables found.")
    except DatabaseException as e:
        print(f"Database connection failed: {e}", file=sys.stderr)
        return 1
    finally:
        try:
            await client.disconnect()
        except DatabaseException as e:
            logger.warning(f"Error closing connection pool: {e}")

    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_structured_logging(level=args.log_level, format_type="text")

    try:
        if args.config:
            config = ResilienceConfig.from_yaml(args.config)
        else:
            config = ResilienceConfig.from_env(args.env_file)
    except (ConfigValidationError, FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    timeout = args.timeout if args.timeout is not None else config.health_check.probe_timeout
    print(f"Target: {mask_dsn(config.database.url)}")

    client = PostgreSQLClient(config.database, config.logging)
    return asyncio.run(check_connection(client, timeout, args.list_tables))


if __name__ == "__main__":
    sys.exit(main())
