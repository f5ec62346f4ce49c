"""Reconciles App and PackageRepository resources through fetch → template → deploy."""

__version__ = "0.1.0"
