"""
User Service - user records

Other services only ever see the summary (id, name, email) when they look
a buyer up; the full record is served from /users/{id}/profile.
"""

from datetime import datetime
from typing import Any

PROFILE_FIELDS = ("name", "email", "phone", "address", "demographics", "preferences")

DEFAULT_PREFERENCES = {"currency": "INR", "language": "en", "notifications": True}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class User:
    def __init__(
        self,
        id: int,
        name: str,
        email: str,
        phone: str | None = None,
        address: Any = None,
        demographics: Any = None,
        preferences: Any = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        last_login_at: datetime | None = None,
        last_accessed_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.name = name
        self.email = email
        self.phone = phone
        self.address = address
        self.demographics = demographics
        self.preferences = preferences
        self.created_at = created_at
        self.updated_at = updated_at
        self.last_login_at = last_login_at
        self.last_accessed_at = last_accessed_at

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "demographics": self.demographics,
            "preferences": self.preferences,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastLoginAt": _iso(self.last_login_at),
            "lastAccessedAt": _iso(self.last_accessed_at),
        }


def activity_dict(id, user_id, action, details, created_at) -> dict:
    return {
        "id": id,
        "userId": user_id,
        "action": action,
        "details": details,
        "createdAt": _iso(created_at),
    }


def session_dict(
    id, session_id, user_id, device_info, ip_address, status, created_at, last_active_at
) -> dict:
    return {
        "id": id,
        "sessionId": session_id,
        "userId": user_id,
        "deviceInfo": device_info,
        "ipAddress": ip_address,
        "status": status,
        "createdAt": _iso(created_at),
        "lastActiveAt": _iso(last_active_at),
    }
