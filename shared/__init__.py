"""
Shared data models, interfaces, exceptions and logging configuration.
"""
