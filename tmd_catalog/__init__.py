"""Catalog of local download roots for remote accounts and lists."""
