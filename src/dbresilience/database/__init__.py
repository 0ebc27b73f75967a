"""
Database Module

PostgreSQL access for the resilience layer, built on psycopg3 and its
connection pool.
"""

from .client import DatabaseClient, PostgreSQLClient

__all__ = [
    "DatabaseClient",
    "PostgreSQLClient",
]
