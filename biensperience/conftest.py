# biensperience/conftest.py
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from biensperience.models.notification import DispatchResult


@pytest.fixture(scope="session")
def db_url():
    """
    Database for tests.

    TEST_DATABASE_URL points the suite at a real database; otherwise each
    test gets a fresh in-memory SQLite database.
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite://"


@pytest.fixture(scope="function", autouse=True)
def fresh_db(db_url):
    """Bind a clean schema before each test."""
    from biensperience.core.database import init_engine, reset_database, drop_all_tables

    init_engine(db_url)
    reset_database()
    yield
    drop_all_tables()


class FakeTime:
    """Injectable monotonic clock."""

    def __init__(self):
        self.current = 0.0

    def advance(self, seconds: float):
        self.current += seconds

    def __call__(self):
        return self.current


class FakeMailer:
    """InviteMailer that records calls instead of sending."""

    def __init__(self, fail: bool = False, raises: Optional[Exception] = None):
        self.fail = fail
        self.raises = raises
        self.sent: List[Dict] = []

    def send_invite_email(
        self,
        to_email,
        inviter_name,
        code,
        invitee_name=None,
        custom_message=None,
        bundle_counts=None,
    ):
        if self.raises is not None:
            raise self.raises
        self.sent.append(
            {
                "to_email": to_email,
                "inviter_name": inviter_name,
                "code": code,
                "invitee_name": invitee_name,
                "custom_message": custom_message,
                "bundle_counts": bundle_counts,
            }
        )
        if self.fail:
            return DispatchResult(sent=False, error="provider rejected message")
        return DispatchResult(sent=True, message_id=f"msg-{len(self.sent)}", sent_at=datetime.now(timezone.utc))


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def failing_mailer():
    return FakeMailer(fail=True)


@pytest.fixture
def raising_mailer():
    return FakeMailer(raises=RuntimeError("smtp exploded"))


@pytest.fixture
def make_user():
    from biensperience.features.users.service import create_user
    from biensperience.models.user import CreateUserRequest, UserRole

    def _make(user_id: str, email: Optional[str] = None, name: Optional[str] = None, super_admin: bool = False):
        return create_user(
            CreateUserRequest(
                user_id=user_id,
                email=email or f"{user_id}@example.com",
                name=name or user_id.capitalize(),
                role=UserRole.SUPER_ADMIN if super_admin else UserRole.REGULAR_USER,
            )
        )

    return _make


@pytest.fixture
def make_experience():
    from biensperience.features.permissions.lifecycle import create_experience
    from biensperience.models.entity import CreateExperienceRequest, ExperiencePlanItem

    def _make(creator_id: str, title: str = "Kyoto in Autumn", items: Optional[List[Dict]] = None, destination_id=None):
        if items is None:
            items = [
                {"plan_item_id": "i1", "text": "Book ryokan", "cost": 300.0, "planning_days": 30},
                {"plan_item_id": "i2", "text": "Fushimi Inari at dawn", "url": "https://inari.jp"},
            ]
        return create_experience(
            creator_id,
            CreateExperienceRequest(
                title=title,
                destination_id=destination_id,
                plan_items=[ExperiencePlanItem(**item) for item in items],
            ),
        )

    return _make


@pytest.fixture
def make_destination():
    from biensperience.features.permissions.lifecycle import create_destination
    from biensperience.models.entity import CreateDestinationRequest

    def _make(creator_id: str, name: str = "Kyoto", country: Optional[str] = "Japan"):
        return create_destination(creator_id, CreateDestinationRequest(name=name, country=country))

    return _make
