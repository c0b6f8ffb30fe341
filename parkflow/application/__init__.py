# File: parkflow/application/__init__.py
"""Application layer: DTOs, session service and command processing"""
