"""Database module for review persistence."""

from .db import SessionLocal, engine, get_db, init_db
from .store import ReviewStore, SqlReviewStore

__all__ = ["engine", "SessionLocal", "get_db", "init_db", "ReviewStore", "SqlReviewStore"]
