"""
Database Resilience Layer

Keeps an asyncio application usable while its PostgreSQL database is slow,
restarting or briefly unreachable: retry with backoff for transient failures,
connection lifecycle management, debounced health monitoring and safe
operation wrappers.
"""

__version__ = "0.1.0"
