"""Database layer for fundflow."""
