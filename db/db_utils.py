from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from db.models import User, FollowerList, Baseline, FetchProgress, FollowerEvent, NotificationConfig, utcnow
from datetime import datetime, timedelta
from config.settings import FETCH_PROGRESS_MAX_AGE_HOURS
from typing import Dict, Iterator, List, Optional


class UserNotFound(LookupError):
    def __init__(self, user_id: str):
        super().__init__(f'user {user_id} not found')
        self.user_id = user_id

# --- User Operations ---
def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()

def register_user(db: Session, user_id: str, profile: Dict) -> User:
    """
    Creates or refreshes a user after sign-in.
    A profile whose last_login matches the stored one is a replay, and the
    stored record is returned untouched.
    """
    user = get_user(db, user_id)
    last_login = profile.get('last_login')
    if user and last_login is not None and user.last_login == last_login:
        return user
    if not user:
        user = User(id=user_id, ignore_followers=[])
        db.add(user)
    user.handle = profile['handle']
    user.name = profile['name']
    user.location = profile.get('location')
    user.bio = profile.get('bio')
    user.profile_image_url = profile.get('profile_image_url')
    user.last_login = last_login or utcnow()
    user.logins_count = profile.get('logins_count', (user.logins_count or 0) + 1)
    user.idp = profile.get('idp')
    db.commit()
    db.refresh(user)
    return user

def update_user_settings(db: Session, user_id: str, notification: Optional[NotificationConfig] = None,
                         ignore_followers: Optional[List[str]] = None) -> User:
    user = get_user(db, user_id)
    if not user:
        raise UserNotFound(user_id)
    if notification is not None:
        user.notification_config = notification
    if ignore_followers is not None:
        user.ignore_followers = list(ignore_followers)
    user.updated_at = utcnow()
    db.commit()
    db.refresh(user)
    return user

def delete_user(db: Session, user_id: str) -> bool:
    user = get_user(db, user_id)
    if user:
        db.delete(user)
        db.commit()
        return True
    return False

def iter_user_pages(db: Session, page_size: int) -> Iterator[List[User]]:
    # Keyset pagination on the primary key so inserts during a scan do not shift pages
    last_id = None
    while True:
        query = db.query(User).order_by(User.id.asc())
        if last_id is not None:
            query = query.filter(User.id > last_id)
        page = query.limit(page_size).all()
        if not page:
            return
        yield page
        if len(page) < page_size:
            return
        last_id = page[-1].id

# --- Follower List Operations ---
def add_follower_list(db: Session, user_id: str, blob_key: str, digest: str, total_followers: int,
                      created_at: datetime, expires_at: datetime) -> FollowerList:
    follower_list = FollowerList(
        blob_key=blob_key,
        user_id=user_id,
        digest=digest,
        total_followers=total_followers,
        created_at=created_at,
        expires_at=expires_at,
    )
    db.add(follower_list)
    db.commit()
    db.refresh(follower_list)
    return follower_list

def get_follower_list(db: Session, blob_key: str) -> Optional[FollowerList]:
    return db.query(FollowerList).filter(FollowerList.blob_key == blob_key).first()

# --- Baseline Pointer Operations ---
def get_baseline(db: Session, user_id: str) -> Optional[Baseline]:
    return db.query(Baseline).filter(Baseline.user_id == user_id).first()

def advance_baseline(db: Session, user_id: str, expected_key: Optional[str], expected_version: int, new_key: str) -> bool:
    """
    Compare-and-swap on the baseline pointer.
    Succeeds only if the pointer still names expected_key at expected_version
    (expected_key None with version 0 means no pointer exists yet).
    Returns False when another writer got there first.
    """
    if expected_key is None:
        if expected_version != 0:
            return False
        db.add(Baseline(user_id=user_id, blob_key=new_key, version=1))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        return True

    updated = (
        db.query(Baseline)
        .filter(Baseline.user_id == user_id, Baseline.blob_key == expected_key, Baseline.version == expected_version)
        .update({Baseline.blob_key: new_key, Baseline.version: Baseline.version + 1, Baseline.updated_at: utcnow()},
                synchronize_session=False)
    )
    db.commit()
    return updated == 1

# --- Fetch Progress Operations ---
def get_fetch_progress(db: Session, user_id: str) -> Optional[FetchProgress]:
    return db.query(FetchProgress).filter(FetchProgress.user_id == user_id).first()

def save_fetch_progress(db: Session, user_id: str, cursor: Optional[str], partial_key: str, pages_fetched: int,
                        followers_fetched: int, started_at: datetime) -> FetchProgress:
    progress = get_fetch_progress(db, user_id)
    if not progress:
        progress = FetchProgress(user_id=user_id)
        db.add(progress)
    progress.cursor = cursor
    progress.partial_key = partial_key
    progress.pages_fetched = pages_fetched
    progress.followers_fetched = followers_fetched
    progress.started_at = started_at
    progress.updated_at = utcnow()
    db.commit()
    db.refresh(progress)
    return progress

def clear_fetch_progress(db: Session, user_id: str) -> Optional[str]:
    """Drops the progress row and returns its partial blob key, if any."""
    progress = get_fetch_progress(db, user_id)
    if not progress:
        return None
    partial_key = progress.partial_key
    db.delete(progress)
    db.commit()
    return partial_key

# --- Follower Event Operations ---
def add_follower_events(db: Session, events: List[FollowerEvent]) -> int:
    """
    Inserts events in one transaction, skipping ids that already exist.
    Returns the number of new rows.
    """
    if not events:
        return 0
    ids = [e.id for e in events]
    existing = {row[0] for row in db.query(FollowerEvent.id).filter(FollowerEvent.id.in_(ids)).all()}
    inserted = 0
    for event in events:
        if event.id in existing:
            continue
        event.validate()
        db.add(event)
        existing.add(event.id)
        inserted += 1
    db.commit()
    return inserted

def get_latest_follower_events(db: Session, user_id: str, limit: int, now: Optional[datetime] = None) -> List[FollowerEvent]:
    now = now or utcnow()
    return (
        db.query(FollowerEvent)
        .filter(FollowerEvent.user_id == user_id, FollowerEvent.expires_at > now)
        .order_by(FollowerEvent.created_at.desc(), FollowerEvent.id.asc())
        .limit(limit)
        .all()
    )

# --- Retention ---
def prune_expired(db: Session, now: Optional[datetime] = None,
                  progress_max_age: timedelta = timedelta(hours=FETCH_PROGRESS_MAX_AGE_HOURS)) -> Dict[str, object]:
    """
    Deletes expired events, follower list rows and abandoned fetch progress.
    Lists that are still some user's baseline are kept.
    Returns the number of deleted events and progress rows, and the blob keys
    (snapshots and partials) that are now unreferenced.
    """
    now = now or utcnow()
    deleted_events = db.query(FollowerEvent).filter(FollowerEvent.expires_at <= now).delete(synchronize_session=False)

    baseline_keys = {row[0] for row in db.query(Baseline.blob_key).all()}
    expired_lists = db.query(FollowerList).filter(FollowerList.expires_at <= now).all()
    expired_keys = []
    for follower_list in expired_lists:
        if follower_list.blob_key in baseline_keys:
            continue
        expired_keys.append(follower_list.blob_key)
        db.delete(follower_list)

    stale_progress = db.query(FetchProgress).filter(FetchProgress.started_at <= now - progress_max_age).all()
    for progress in stale_progress:
        expired_keys.append(progress.partial_key)
        db.delete(progress)
    db.commit()
    return {'events': deleted_events, 'progress': len(stale_progress), 'blob_keys': expired_keys}
