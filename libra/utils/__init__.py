"""Utility helpers for Libra."""
