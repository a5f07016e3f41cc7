"""
biensperience/features/invites/persistence.py

Storage for invite codes and their redemptions.
"""

from typing import Dict, List, Optional
from datetime import datetime, timezone
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from biensperience.core.database import (
    get_db_session,
    as_utc,
    invite_codes,
    invite_redemptions,
)
from biensperience.models.invite import InviteCode


class InvitePersistence:
    """
    Invite code persistence.

    Uniqueness of the code column and of (invite_id, user_id) redemptions
    is enforced by the database.
    """

    @staticmethod
    def row_to_invite(row) -> InviteCode:
        return InviteCode(
            invite_id=row.invite_id,
            code=row.code,
            created_by=row.created_by,
            email=row.email,
            invitee_name=row.invitee_name,
            experiences=list(row.experiences or []),
            destinations=list(row.destinations or []),
            max_uses=row.max_uses,
            uses_count=row.uses_count,
            expires_at=as_utc(row.expires_at),
            active=bool(row.active),
            custom_message=row.custom_message,
            invite_metadata=dict(row.invite_metadata or {}),
            mutual_follow=bool(row.mutual_follow),
            permission_type=row.permission_type,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def insert_invite(values: Dict) -> bool:
        """
        Insert a new invite row.

        Returns:
            True if created, False if the code is already taken
        """
        try:
            with get_db_session() as session:
                session.execute(insert(invite_codes).values(**values))
                session.commit()
                return True
        except IntegrityError:
            return False

    @staticmethod
    def fetch_by_code(session: Session, code: str):
        return session.execute(select(invite_codes).where(invite_codes.c.code == code)).first()

    @staticmethod
    def get_by_code(code: str) -> Optional[InviteCode]:
        with get_db_session() as session:
            row = InvitePersistence.fetch_by_code(session, code)
            return InvitePersistence.row_to_invite(row) if row else None

    @staticmethod
    def get_by_id(invite_id: str) -> Optional[InviteCode]:
        with get_db_session() as session:
            row = session.execute(select(invite_codes).where(invite_codes.c.invite_id == invite_id)).first()
            return InvitePersistence.row_to_invite(row) if row else None

    @staticmethod
    def list_invites(created_by: Optional[str] = None) -> List[InviteCode]:
        """Invites newest first, optionally for one creator."""
        query = select(invite_codes)
        if created_by is not None:
            query = query.where(invite_codes.c.created_by == created_by)
        query = query.order_by(invite_codes.c.created_at.desc(), invite_codes.c.invite_id)
        with get_db_session() as session:
            rows = session.execute(query).fetchall()
            return [InvitePersistence.row_to_invite(row) for row in rows]

    @staticmethod
    def deactivate(invite_id: str) -> Optional[bool]:
        """
        Flip active to False.

        Returns:
            True if this call deactivated it, False if already inactive,
            None if the invite does not exist
        """
        with get_db_session() as session:
            result = session.execute(
                update(invite_codes)
                .where(invite_codes.c.invite_id == invite_id)
                .where(invite_codes.c.active.is_(True))
                .values(active=False, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount > 0:
                return True
            exists = session.execute(
                select(invite_codes.c.invite_id).where(invite_codes.c.invite_id == invite_id)
            ).first()
            return False if exists else None

    @staticmethod
    def merge_metadata(invite_id: str, updates: Dict) -> None:
        with get_db_session() as session:
            row = session.execute(
                select(invite_codes.c.invite_metadata).where(invite_codes.c.invite_id == invite_id)
            ).first()
            if row is None:
                return
            merged = dict(row.invite_metadata or {})
            merged.update(updates)
            session.execute(
                update(invite_codes)
                .where(invite_codes.c.invite_id == invite_id)
                .values(invite_metadata=merged, updated_at=datetime.now(timezone.utc))
            )

    @staticmethod
    def has_redeemed(session: Session, invite_id: str, user_id: str) -> bool:
        row = session.execute(
            select(invite_redemptions.c.id)
            .where(invite_redemptions.c.invite_id == invite_id)
            .where(invite_redemptions.c.user_id == user_id)
        ).first()
        return row is not None

    @staticmethod
    def redeemed_by(invite_id: str) -> List[str]:
        """User ids that redeemed an invite, in redemption order."""
        with get_db_session() as session:
            rows = session.execute(
                select(invite_redemptions.c.user_id)
                .where(invite_redemptions.c.invite_id == invite_id)
                .order_by(invite_redemptions.c.redeemed_at, invite_redemptions.c.id)
            ).fetchall()
            return [row.user_id for row in rows]
