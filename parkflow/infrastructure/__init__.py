# File: parkflow/infrastructure/__init__.py
"""Infrastructure layer: persistence, messaging, locking and configuration"""
