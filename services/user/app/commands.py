"""
User Service - account commands (write side)

Every user-facing action leaves a row in the activity log. Other services
are told about profile updates and logins through webhooks; those calls
are best-effort, a slow or missing peer never fails the local write.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from services.shared.errors import ConflictError, NotFoundError, ValidationError

from .aggregate import User
from .store import UserStore

logger = logging.getLogger(__name__)


def parse_user_id(raw: str) -> int:
    try:
        user_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid user ID") from None
    if user_id <= 0:
        raise ValidationError("Invalid user ID")
    return user_id


def _check_email(email: Any) -> None:
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("Invalid email address")


class UserAccounts:
    def __init__(
        self,
        store: UserStore,
        caller,
        *,
        order_service_url: str,
        payment_service_url: str,
        webhook_timeout: float,
    ) -> None:
        self.store = store
        self.caller = caller
        self.order_url = order_service_url
        self.payment_url = payment_service_url
        self.webhook_timeout = webhook_timeout

    async def load(self, user_id: int) -> User:
        user = await self.store.get(user_id)
        if user is None:
            logger.warning("User %s not found", user_id)
            raise NotFoundError("User not found")
        return user

    async def register(self, fields: dict) -> User:
        if not fields.get("name") or not fields.get("email"):
            raise ValidationError("Missing required fields: name and email are required")
        _check_email(fields["email"])
        if await self.store.find_by_email(fields["email"]) is not None:
            raise ConflictError("Email already registered")

        user = await self.store.create(**fields)
        if user is None:
            raise ConflictError("Email already registered")
        logger.info("User %s registered (%s)", user.id, user.email)
        return user

    async def view(self, user_id: int, *, full: bool = False) -> User:
        """Lookup by another service or client; recorded in the activity log."""
        user = await self.load(user_id)
        if full:
            await self.store.add_activity(
                user_id, "full_profile_viewed", {"route": "/users/:id/profile"}
            )
        else:
            await self.store.mark_accessed(user_id)
            await self.store.add_activity(user_id, "profile_viewed", {"route": "/users/:id"})
        return user

    async def update_profile(self, user_id: int, changes: dict) -> User:
        changes = {k: v for k, v in changes.items() if v is not None}
        if "email" in changes:
            _check_email(changes["email"])
            owner = await self.store.find_by_email(changes["email"])
            if owner is not None and owner.id != user_id:
                raise ConflictError("Email already registered")

        user = await self.store.update_profile(user_id, changes)
        if user is None:
            logger.warning("User %s not found for profile update", user_id)
            raise NotFoundError("User not found")

        await self.store.add_activity(
            user_id,
            "profile_updated",
            {"updated_fields": sorted(changes), "changes": changes},
        )
        await self.caller.best_effort(
            "orderService",
            "POST",
            f"{self.order_url}/webhooks/user-updated",
            json={
                "userId": user_id,
                "changes": changes,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            timeout=self.webhook_timeout,
        )
        logger.info("User %s profile updated: %s", user_id, sorted(changes))
        return user

    async def start_session(
        self, user_id: int, device_info: str | None, ip_address: str | None
    ) -> dict:
        user = await self.load(user_id)
        device_info = device_info or "unknown"
        ip_address = ip_address or "unknown"

        session = await self.store.create_session(user_id, device_info, ip_address)
        await self.store.add_activity(
            user_id,
            "user_login",
            {
                "sessionId": session["sessionId"],
                "deviceInfo": device_info,
                "ipAddress": ip_address,
            },
        )
        await self.caller.best_effort(
            "paymentService",
            "POST",
            f"{self.payment_url}/webhooks/user-activity",
            json={
                "userId": user_id,
                "activity": "login",
                "sessionId": session["sessionId"],
                "ipAddress": ip_address,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            timeout=self.webhook_timeout,
        )
        logger.info("Session %s started for %s", session["sessionId"], user.name)
        return session
