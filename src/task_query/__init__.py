"""Declarative task queries over a record store with substring-only predicates."""

__version__ = "0.1.0"
