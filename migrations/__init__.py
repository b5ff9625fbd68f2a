"""Schema migrations for the audit issue store (see ``runner.MigrationRunner``)."""

from .runner import MigrationRunner

__all__ = ['MigrationRunner']
