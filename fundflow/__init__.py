"""Fundflow: approval workflow for activity budget changes."""

__version__ = "0.1.0"
