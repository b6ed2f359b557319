import logging

import bcrypt
from fastapi import HTTPException, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.status import HTTP_401_UNAUTHORIZED

from .errors import AuthError, StoreError, ValidationError
from .models import AdminUser

logger = logging.getLogger(__name__)

SESSION_KEY = 'admin_user'
USERNAME_MIN, USERNAME_MAX = 2, 20
# bcrypt only looks at the first 72 bytes and newer releases reject longer input
PASSWORD_MAX_BYTES = 72


def hash_password(password: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds)).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def _check_new_password(password):
    if len(password.encode('utf-8')) > PASSWORD_MAX_BYTES:
        raise ValidationError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")


class AdminAccounts:
    """The admin_users table: bootstrap, login and credential changes."""

    def __init__(self, SessionLocal, rounds=10):
        self.SessionLocal = SessionLocal
        self.rounds = rounds

    def _session(self):
        return self.SessionLocal()

    def ensure_bootstrap(self, username, password):
        """Create the first admin account if the table is empty."""
        db = self._session()
        try:
            if db.execute(select(AdminUser.id).limit(1)).first() is not None:
                return False
            _check_new_password(password)
            db.add(AdminUser(username=username, password_hash=hash_password(password, self.rounds)))
            db.commit()
            logger.info("created bootstrap admin user %r", username)
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(str(e)) from e
        finally:
            db.close()

    def authenticate(self, username, password):
        db = self._session()
        try:
            user = db.execute(select(AdminUser).where(AdminUser.username == username)).scalar_one_or_none()
            if user is None or not verify_password(password, user.password_hash):
                raise AuthError("Invalid credentials")
            return {'id': user.id, 'username': user.username}
        finally:
            db.close()

    def _verified_user(self, db, user_id, current_password):
        user = db.get(AdminUser, user_id)
        if user is None or not verify_password(current_password, user.password_hash):
            raise AuthError("Current password is incorrect")
        return user

    def change_username(self, user_id, new_username, current_password):
        new_username = (new_username or '').strip()
        if not (USERNAME_MIN <= len(new_username) <= USERNAME_MAX):
            raise ValidationError(f"Username must be between {USERNAME_MIN} and {USERNAME_MAX} characters")
        if not current_password:
            raise ValidationError("Current password is required")
        db = self._session()
        try:
            user = self._verified_user(db, user_id, current_password)
            if new_username == user.username:
                raise ValidationError("New username must be different from current username")
            taken = db.execute(
                select(AdminUser.id).where(AdminUser.username == new_username, AdminUser.id != user_id)
            ).first()
            if taken is not None:
                raise ValidationError("Username already exists")
            user.username = new_username
            db.commit()
            return {'id': user.id, 'username': user.username}
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(str(e)) from e
        finally:
            db.close()

    def change_password(self, user_id, current_password, new_password):
        if not current_password or not new_password:
            raise ValidationError("Current and new passwords are required")
        if current_password == new_password:
            raise ValidationError("New password must be different from current password")
        _check_new_password(new_password)
        db = self._session()
        try:
            user = self._verified_user(db, user_id, current_password)
            user.password_hash = hash_password(new_password, self.rounds)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(str(e)) from e
        finally:
            db.close()


def require_admin(request: Request):
    """Dependency for admin routes: the logged-in admin from the session cookie."""
    user = request.session.get(SESSION_KEY)
    if not user:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user
