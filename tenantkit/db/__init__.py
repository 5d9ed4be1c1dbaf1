"""Persistence adapters: in-memory and SQLAlchemy."""
