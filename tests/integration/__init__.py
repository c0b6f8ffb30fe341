"""
Integration tests for the Parking Session Engine

These tests run the engine against SQLAlchemy (in-memory SQLite), the
command processor and the command-line entry point.
"""
