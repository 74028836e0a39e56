"""
Core data models for the authenticated API client.

This module defines the data structures shared by the token store, the request
dispatcher, the refresh coordinator and the retry policy.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum


MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})


class RefreshPhase(Enum):
    """Phase of the single-flight refresh state machine."""
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class TokenPair:
    """Access/refresh token pair held by the token store."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        # Never leak credentials into logs or tracebacks
        return (
            f"TokenPair(access_token={'***' if self.access_token else None}, "
            f"refresh_token={'***' if self.refresh_token else None})"
        )


@dataclass
class Identity:
    """The current authenticated user."""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    credits: Optional[int] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Identity id cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'role': self.role,
            'credits': self.credits,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Identity':
        """Create from a stored dictionary."""
        return cls(
            id=str(data['id']),
            name=data.get('name'),
            email=data.get('email'),
            first_name=data.get('first_name'),
            last_name=data.get('last_name'),
            role=data.get('role'),
            credits=data.get('credits'),
        )

    @classmethod
    def from_api_user(cls, user: Dict[str, Any]) -> 'Identity':
        """Create from the user object returned by the login and register endpoints."""
        first_name = user.get('firstName')
        last_name = user.get('lastName')
        name = " ".join(part for part in (first_name, last_name) if part) or None
        return cls(
            id=str(user['id']),
            name=name,
            email=user.get('email'),
            first_name=first_name,
            last_name=last_name,
            role=user.get('role'),
            credits=user.get('credits'),
        )


@dataclass
class SessionContext:
    """Session snapshot handed to the request dispatcher."""
    access_token: Optional[str] = None
    identity: Optional[Identity] = None

    @classmethod
    def from_store(cls, token_store) -> 'SessionContext':
        """Read the current values from a token store."""
        return cls(
            access_token=token_store.get_access_token(),
            identity=token_store.get_current_identity(),
        )


@dataclass
class RequestDescriptor:
    """An outgoing call plus its retry bookkeeping."""
    method: str
    path: str
    json: Any = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    retried: bool = False

    def __post_init__(self):
        self.method = self.method.upper()
        if not self.path:
            raise ValueError("Request path cannot be empty")

    @property
    def is_mutating(self) -> bool:
        return self.method in MUTATING_METHODS

    def mark_retried(self) -> None:
        """Flip ``retried`` to True. A request may only be retried once."""
        if self.retried:
            raise RuntimeError(f"{self.method} {self.path} has already been retried")
        self.retried = True

    def get_header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def remove_header(self, name: str) -> None:
        """Case-insensitive header removal."""
        lowered = name.lower()
        for key in [k for k in self.headers if k.lower() == lowered]:
            del self.headers[key]


@dataclass
class ApiResponse:
    """A received HTTP response with its decoded body."""
    status: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def message(self) -> Optional[str]:
        """The upstream ``{"message": ...}`` field, if the body has one."""
        if isinstance(self.data, dict):
            message = self.data.get('message')
            if isinstance(message, str):
                return message
        return None
