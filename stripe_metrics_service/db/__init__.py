"""Database package."""

from .models import Base, ScrapedData
from .session import Database, normalize_database_url
from .store import ResultStore

__all__ = ["Base", "Database", "ResultStore", "ScrapedData", "normalize_database_url"]
