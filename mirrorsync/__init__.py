"""mirrorsync: keeps a local canonical mirror of external resource collections in sync."""

__version__ = "0.1.0"
