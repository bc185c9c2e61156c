"""Persistence for invoice lines, audit history and submissions."""

from .customs_db import CustomsDatabase

__all__ = ["CustomsDatabase"]
