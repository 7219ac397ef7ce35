"""Libra: job orchestration and multi-source manga metadata fusion."""

__version__ = "0.1.0"
