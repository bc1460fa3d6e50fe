"""Relational state store: tables, engines, and repositories."""
