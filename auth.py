import bcrypt
import structlog
from sqlalchemy.orm import Session

from database import Profile
from errors import AuthenticationError, InvalidRequestError

logger = structlog.get_logger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def sign_up(db: Session, username: str, password: str, **details) -> Profile:
    if not username or not password:
        raise InvalidRequestError("Username and password are required")
    if len(password) < 6:
        raise InvalidRequestError("Password must be at least 6 characters")
    if db.query(Profile).filter(Profile.username == username).first():
        raise InvalidRequestError("Username already taken")

    profile = Profile(username=username, password_hash=hash_password(password), **details)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info("profile_created", user_id=profile.id)
    return profile


def sign_in(db: Session, username: str, password: str) -> Profile:
    profile = db.query(Profile).filter(Profile.username == username).first()
    if not profile or not bcrypt.checkpw(password.encode("utf-8"), profile.password_hash.encode("utf-8")):
        logger.info("sign_in_rejected")
        raise AuthenticationError("Invalid username or password")
    return profile


def require_profile(db: Session, user_id) -> Profile:
    """Every user-scoped function starts here: no user id, no request."""
    if not user_id:
        raise AuthenticationError("User ID is required")
    profile = db.get(Profile, str(user_id))
    if profile is None:
        raise AuthenticationError("Unknown user")
    return profile
