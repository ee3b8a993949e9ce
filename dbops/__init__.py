"""Database operations and performance management for an embedded SQLite store.

Exports for testing and module access.
"""

from dbops import lib, models

__all__ = ['lib', 'models']
