"""User API routes."""
import logging
import pytz
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.models.user import User
from event_reminders.schemas.user import UserCreate, UserUpdate, UserOut

logger = logging.getLogger(__name__)
router = APIRouter()


def _check_timezone(tz_name: str) -> None:
    if tz_name not in pytz.all_timezones_set:
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {tz_name}")


def _get_user_or_404(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user


def _check_display_name(db: Session, display_name: str, user_id: str = None) -> None:
    existing = db.query(User).filter(User.display_name == display_name).first()
    if existing and existing.user_id != user_id:
        raise HTTPException(status_code=409, detail=f"Display name '{display_name}' is already taken")


@router.post("/", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    """Create a new user with a default timezone."""
    _check_timezone(payload.default_timezone)
    _check_display_name(db, payload.display_name)
    user = User(**payload.model_dump())
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created user %s (%s)", user.user_id, user.display_name)
    return user


@router.get("/", response_model=list[UserOut])
def list_users(db: Session = Depends(get_db)):
    """List all users."""
    return db.query(User).order_by(User.created_at).all()


@router.get("/{user_id}", response_model=UserOut)
def get_user(user_id: str, db: Session = Depends(get_db)):
    return _get_user_or_404(db, user_id)


@router.patch("/{user_id}", response_model=UserOut)
def update_user(user_id: str, payload: UserUpdate, db: Session = Depends(get_db)):
    """Partial update; timezone and display name are re-checked."""
    user = _get_user_or_404(db, user_id)
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("default_timezone"):
        _check_timezone(updates["default_timezone"])
    if updates.get("display_name"):
        _check_display_name(db, updates["display_name"], user_id)
    for field, value in updates.items():
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    logger.info("Updated user %s", user_id)
    return user
