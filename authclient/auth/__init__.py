"""
Authentication package for the authenticated API client.

This package contains session-related functionality including token storage,
single-flight token refresh, and the login/logout service.
"""
