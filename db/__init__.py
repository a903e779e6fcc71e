"""Database package for the CRM Digiforma sync engine."""
from db.connection import dispose_engine, get_db, get_engine, get_sessionmaker, session_scope

__all__ = ["get_engine", "get_sessionmaker", "get_db", "session_scope", "dispose_engine"]
