# resforge/__init__.py
"""resforge - reproducible build orchestrator for sandboxed, checksummed result builds."""

__version__ = "0.1.0"
