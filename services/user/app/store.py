"""
User Service - user, activity and session storage

  InMemoryUserStore  process-local, used when DATABASE_URL is unset and in tests
  SqlUserStore       PostgreSQL through SQLAlchemy async

Profile updates follow COALESCE semantics: a field left out (or sent as
null) keeps its stored value.
"""

import asyncio
import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.shared import db

from .aggregate import DEFAULT_PREFERENCES, PROFILE_FIELDS, User, activity_dict, session_dict

SEED_USERS = [
    {
        "name": "Alice",
        "email": "alice@example.com",
        "phone": "+91-9876543210",
        "address": {
            "street": "123 MG Road", "city": "Mumbai", "state": "Maharashtra",
            "pincode": "400001", "country": "India",
        },
        "demographics": {
            "age": 28, "gender": "female", "occupation": "Software Engineer",
            "income_bracket": "high",
        },
        "preferences": {"currency": "INR", "language": "en", "notifications": True},
        "last_login_at": datetime(2025, 8, 10, 14, 22, tzinfo=timezone.utc),
    },
    {
        "name": "Bob",
        "email": "bob@example.com",
        "phone": "+91-9876543211",
        "address": {
            "street": "456 Brigade Road", "city": "Bangalore", "state": "Karnataka",
            "pincode": "560025", "country": "India",
        },
        "demographics": {
            "age": 34, "gender": "male", "occupation": "Marketing Manager",
            "income_bracket": "medium",
        },
        "preferences": {"currency": "INR", "language": "en", "notifications": False},
        "last_login_at": datetime(2025, 8, 11, 8, 45, tzinfo=timezone.utc),
    },
    {
        "name": "Priya",
        "email": "priya@example.com",
        "phone": "+91-9876543212",
        "address": {
            "street": "789 Connaught Place", "city": "Delhi", "state": "Delhi",
            "pincode": "110001", "country": "India",
        },
        "demographics": {
            "age": 25, "gender": "female", "occupation": "Designer",
            "income_bracket": "medium",
        },
        "preferences": {"currency": "INR", "language": "hi", "notifications": True},
        "last_login_at": datetime(2025, 8, 9, 20, 10, tzinfo=timezone.utc),
    },
]


def new_session_id(user_id: int) -> str:
    return f"session_{uuid.uuid4().hex[:16]}_{user_id}"


class UserStore(Protocol):
    async def ping(self) -> None: ...

    async def create(self, **fields) -> User | None: ...

    async def get(self, user_id: int) -> User | None: ...

    async def find_by_email(self, email: str) -> User | None: ...

    async def list_users(
        self, *, search: str | None = None, limit: int = 10, offset: int = 0
    ) -> tuple[list[User], int]: ...

    async def all(self) -> list[User]: ...

    async def update_profile(self, user_id: int, changes: dict) -> User | None: ...

    async def mark_accessed(self, user_id: int) -> None: ...

    async def add_activity(self, user_id: int, action: str, details: Any = None) -> dict: ...

    async def list_activity(
        self, user_id: int, *, action: str | None = None, limit: int | None = None
    ) -> list[dict]: ...

    async def activity_since(self, since: datetime) -> list[dict]: ...

    async def create_session(
        self, user_id: int, device_info: str, ip_address: str
    ) -> dict: ...

    async def counts(self) -> dict: ...


class InMemoryUserStore:
    def __init__(self, users: list[dict] | None = None) -> None:
        self._users: dict[int, User] = {}
        self._activity: list[dict] = []
        self._sessions: list[dict] = []
        self._user_ids = itertools.count(1)
        self._activity_ids = itertools.count(1)
        self._session_ids = itertools.count(1)
        self._lock = asyncio.Lock()
        for fields in users or []:
            self._insert(**fields)

    def _insert(self, **fields) -> User:
        now = datetime.now(timezone.utc)
        fields.setdefault("preferences", dict(DEFAULT_PREFERENCES))
        user = User(
            id=next(self._user_ids),
            created_at=now,
            updated_at=now,
            **copy.deepcopy(fields),
        )
        self._users[user.id] = user
        return user

    async def ping(self) -> None:
        return None

    async def create(self, **fields) -> User | None:
        async with self._lock:
            if any(u.email == fields["email"] for u in self._users.values()):
                return None
            return copy.deepcopy(self._insert(**fields))

    async def get(self, user_id):
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find_by_email(self, email):
        for user in self._users.values():
            if user.email == email:
                return copy.deepcopy(user)
        return None

    async def list_users(self, *, search=None, limit=10, offset=0):
        needle = (search or "").lower()
        matches = [
            u
            for u in self._users.values()
            if not needle or needle in u.name.lower() or needle in u.email.lower()
        ]
        matches.sort(key=lambda u: u.id)
        page = matches[offset : offset + limit]
        return [copy.deepcopy(u) for u in page], len(matches)

    async def all(self):
        return [copy.deepcopy(u) for u in self._users.values()]

    async def update_profile(self, user_id, changes):
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            for field in PROFILE_FIELDS:
                if changes.get(field) is not None:
                    setattr(user, field, copy.deepcopy(changes[field]))
            user.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(user)

    async def mark_accessed(self, user_id):
        user = self._users.get(user_id)
        if user is not None:
            user.last_accessed_at = datetime.now(timezone.utc)

    async def add_activity(self, user_id, action, details=None):
        record = activity_dict(
            next(self._activity_ids), user_id, action,
            copy.deepcopy(details), datetime.now(timezone.utc),
        )
        self._activity.append(record)
        return copy.deepcopy(record)

    async def list_activity(self, user_id, *, action=None, limit=None):
        matches = [
            a
            for a in reversed(self._activity)
            if a["userId"] == user_id and (action is None or a["action"] == action)
        ]
        if limit:
            matches = matches[:limit]
        return copy.deepcopy(matches)

    async def activity_since(self, since):
        cutoff = since.isoformat()
        return [copy.deepcopy(a) for a in self._activity if a["createdAt"] > cutoff]

    async def create_session(self, user_id, device_info, ip_address):
        async with self._lock:
            now = datetime.now(timezone.utc)
            record = session_dict(
                next(self._session_ids), new_session_id(user_id), user_id,
                device_info, ip_address, "active", now, now,
            )
            self._sessions.append(record)
            user = self._users.get(user_id)
            if user is not None:
                user.last_login_at = now
            return copy.deepcopy(record)

    async def counts(self) -> dict:
        return {
            "users": len(self._users),
            "activities": len(self._activity),
            "sessions": len(self._sessions),
        }


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        email VARCHAR(100) UNIQUE NOT NULL,
        phone VARCHAR(20),
        address JSONB,
        demographics JSONB,
        preferences JSONB DEFAULT '{"currency": "INR", "language": "en", "notifications": true}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_login_at TIMESTAMPTZ,
        last_accessed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_activity (
        id SERIAL PRIMARY KEY,
        user_id INTEGER REFERENCES users(id),
        action VARCHAR(50) NOT NULL,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_sessions (
        id SERIAL PRIMARY KEY,
        session_id VARCHAR(100) UNIQUE NOT NULL,
        user_id INTEGER REFERENCES users(id),
        device_info TEXT,
        ip_address VARCHAR(64),
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_active_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_activity_user_id ON user_activity(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_user_activity_created_at ON user_activity(created_at)",
]

_INSERT_USER = """
    INSERT INTO users (name, email, phone, address, demographics, preferences, last_login_at)
    VALUES (:name, :email, :phone, CAST(:address AS JSONB), CAST(:demographics AS JSONB),
            COALESCE(CAST(:preferences AS JSONB),
                     '{"currency": "INR", "language": "en", "notifications": true}'::jsonb),
            :last_login_at)
    RETURNING *
"""


def _user_params(fields: dict) -> dict:
    return {
        "name": fields["name"],
        "email": fields["email"],
        "phone": fields.get("phone"),
        "address": db.dumps(fields.get("address")),
        "demographics": db.dumps(fields.get("demographics")),
        "preferences": db.dumps(fields.get("preferences")),
        "last_login_at": fields.get("last_login_at"),
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        address=db.loads(row.address),
        demographics=db.loads(row.demographics),
        preferences=db.loads(row.preferences),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
        last_accessed_at=row.last_accessed_at,
    )


def _row_to_activity(row) -> dict:
    return activity_dict(row.id, row.user_id, row.action, db.loads(row.details), row.created_at)


def _row_to_session(row) -> dict:
    return session_dict(
        row.id, row.session_id, row.user_id, row.device_info,
        row.ip_address, row.status, row.created_at, row.last_active_at,
    )


class SqlUserStore:
    def __init__(self, async_session: sessionmaker) -> None:
        self.async_session = async_session

    async def init_schema(self) -> None:
        await db.run_ddl(self.async_session, SCHEMA)

    async def seed_if_empty(self, users: list[dict]) -> int:
        async with self.async_session() as session:
            existing = await session.execute(text("SELECT COUNT(*) FROM users"))
            if existing.scalar_one():
                return 0
            for fields in users:
                await session.execute(text(_INSERT_USER), _user_params(fields))
            await session.commit()
            return len(users)

    async def ping(self) -> None:
        await db.ping(self.async_session)

    async def create(self, **fields) -> User | None:
        async with self.async_session() as session:
            try:
                result = await session.execute(text(_INSERT_USER), _user_params(fields))
                row = result.fetchone()
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return _row_to_user(row)

    async def get(self, user_id):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT * FROM users WHERE id = :id"), {"id": user_id}
            )
            row = result.fetchone()
            return _row_to_user(row) if row else None

    async def find_by_email(self, email):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT * FROM users WHERE email = :email"), {"email": email}
            )
            row = result.fetchone()
            return _row_to_user(row) if row else None

    async def list_users(self, *, search=None, limit=10, offset=0):
        where = ""
        params: dict[str, Any] = {}
        if search:
            where = " WHERE name ILIKE :search OR email ILIKE :search"
            params["search"] = f"%{search}%"
        async with self.async_session() as session:
            result = await session.execute(
                text(f"SELECT * FROM users{where} ORDER BY id LIMIT :limit OFFSET :offset"),
                {**params, "limit": limit, "offset": offset},
            )
            rows = result.fetchall()
            total = await session.execute(text(f"SELECT COUNT(*) FROM users{where}"), params)
            return [_row_to_user(r) for r in rows], total.scalar_one()

    async def all(self):
        async with self.async_session() as session:
            result = await session.execute(text("SELECT * FROM users ORDER BY id"))
            return [_row_to_user(r) for r in result.fetchall()]

    async def update_profile(self, user_id, changes):
        async with self.async_session() as session:
            result = await session.execute(
                text("""
                    UPDATE users
                    SET name = COALESCE(:name, name),
                        email = COALESCE(:email, email),
                        phone = COALESCE(:phone, phone),
                        address = COALESCE(CAST(:address AS JSONB), address),
                        demographics = COALESCE(CAST(:demographics AS JSONB), demographics),
                        preferences = COALESCE(CAST(:preferences AS JSONB), preferences),
                        updated_at = NOW()
                    WHERE id = :id
                    RETURNING *
                """),
                {
                    "id": user_id,
                    "name": changes.get("name"),
                    "email": changes.get("email"),
                    "phone": changes.get("phone"),
                    "address": db.dumps(changes.get("address")),
                    "demographics": db.dumps(changes.get("demographics")),
                    "preferences": db.dumps(changes.get("preferences")),
                },
            )
            row = result.fetchone()
            await session.commit()
            return _row_to_user(row) if row else None

    async def mark_accessed(self, user_id):
        async with self.async_session() as session:
            await session.execute(
                text("UPDATE users SET last_accessed_at = NOW() WHERE id = :id"),
                {"id": user_id},
            )
            await session.commit()

    async def add_activity(self, user_id, action, details=None):
        async with self.async_session() as session:
            result = await session.execute(
                text("""
                    INSERT INTO user_activity (user_id, action, details)
                    VALUES (:user_id, :action, CAST(:details AS JSONB))
                    RETURNING *
                """),
                {"user_id": user_id, "action": action, "details": db.dumps(details)},
            )
            row = result.fetchone()
            await session.commit()
            return _row_to_activity(row)

    async def list_activity(self, user_id, *, action=None, limit=None):
        query = "SELECT * FROM user_activity WHERE user_id = :user_id"
        params: dict[str, Any] = {"user_id": user_id}
        if action:
            query += " AND action = :action"
            params["action"] = action
        query += " ORDER BY created_at DESC, id DESC"
        if limit:
            query += " LIMIT :limit"
            params["limit"] = limit
        async with self.async_session() as session:
            result = await session.execute(text(query), params)
            return [_row_to_activity(r) for r in result.fetchall()]

    async def activity_since(self, since):
        async with self.async_session() as session:
            result = await session.execute(
                text("SELECT * FROM user_activity WHERE created_at > :since"),
                {"since": since},
            )
            return [_row_to_activity(r) for r in result.fetchall()]

    async def create_session(self, user_id, device_info, ip_address):
        async with self.async_session() as session:
            result = await session.execute(
                text("""
                    INSERT INTO user_sessions (session_id, user_id, device_info, ip_address)
                    VALUES (:session_id, :user_id, :device_info, :ip_address)
                    RETURNING *
                """),
                {
                    "session_id": new_session_id(user_id),
                    "user_id": user_id,
                    "device_info": device_info,
                    "ip_address": ip_address,
                },
            )
            row = result.fetchone()
            await session.execute(
                text("UPDATE users SET last_login_at = NOW() WHERE id = :id"),
                {"id": user_id},
            )
            await session.commit()
            return _row_to_session(row)

    async def counts(self) -> dict:
        async with self.async_session() as session:
            users = await session.execute(text("SELECT COUNT(*) FROM users"))
            activities = await session.execute(text("SELECT COUNT(*) FROM user_activity"))
            sessions = await session.execute(text("SELECT COUNT(*) FROM user_sessions"))
            return {
                "users": users.scalar_one(),
                "activities": activities.scalar_one(),
                "sessions": sessions.scalar_one(),
            }
