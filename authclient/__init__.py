"""
Authenticated network-access layer for the remote API.

Expired access tokens are refreshed once per expiry event and the affected
calls are replayed; when recovery is impossible the session is dropped.
"""

__version__ = "1.0.0"
