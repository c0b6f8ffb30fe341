# File: parkflow/__init__.py
"""Parking session lifecycle and fee computation engine"""

__version__ = "1.0.0"
