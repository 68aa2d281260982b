"""
SPiD Application Layer

Everything a client application or a long-running service needs around the
core client.

Key Components:
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics abstraction with Telegraf and no-op backends
- tasks.py: Background credential refresh with exponential backoff
- cli.py: The `spid` command line tool
"""
