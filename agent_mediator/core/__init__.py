"""Ambient configuration: settings and logging setup."""
