"""Account/profile reader.

The account service owns profiles; we only read a mirror of the fields the
detector and scorer need. Anything the mirror does not know stays ``None`` and
degrades confidence downstream instead of failing.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from db_models import AccountProfile, now_utc
from fraud.events import as_naive_utc
from fraud.types import ProfileSnapshot


class ProfileReader(Protocol):
    def get_profile(self, db: Session, user_id: str) -> Optional[ProfileSnapshot]: ...

    def get_profiles(self, db: Session, user_ids: Iterable[str]) -> dict[str, ProfileSnapshot]: ...


def _snapshot(row: AccountProfile) -> ProfileSnapshot:
    return ProfileSnapshot(
        user_id=row.user_id,
        account_created_at=row.account_created_at,
        post_count=row.post_count,
        comment_count=row.comment_count,
        has_avatar=row.has_avatar,
        has_bio=row.has_bio,
    )


class SqlProfileReader:
    """Reads the ``account_profiles`` mirror table."""

    def get_profile(self, db: Session, user_id: str) -> Optional[ProfileSnapshot]:
        row = db.get(AccountProfile, user_id)
        return _snapshot(row) if row else None

    def get_profiles(self, db: Session, user_ids: Iterable[str]) -> dict[str, ProfileSnapshot]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        out: dict[str, ProfileSnapshot] = {}
        # chunk to keep IN lists bounded
        for i in range(0, len(ids), 500):
            rows = db.query(AccountProfile).filter(AccountProfile.user_id.in_(ids[i:i + 500])).all()
            for r in rows:
                out[r.user_id] = _snapshot(r)
        return out


def upsert_profile(db: Session, snapshot: ProfileSnapshot) -> AccountProfile:
    """Sync hook for the account service. Commits."""
    row = db.get(AccountProfile, snapshot.user_id)
    if not row:
        row = AccountProfile(user_id=snapshot.user_id)
    created = snapshot.account_created_at
    row.account_created_at = as_naive_utc(created) if created is not None else None
    row.post_count = snapshot.post_count
    row.comment_count = snapshot.comment_count
    row.has_avatar = snapshot.has_avatar
    row.has_bio = snapshot.has_bio
    row.synced_at = now_utc()
    db.add(row)
    db.commit()
    return row
