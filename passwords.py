from __future__ import annotations

import hashlib
import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Mapping, Optional

import bcrypt
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from config import get_settings
from errors import NotFoundError, SecurityError, ValidationError
from models import PasswordHistory, User


logger = logging.getLogger(__name__)

SPECIAL_CHARS = "@$!%*?&"
EXTENDED_SPECIAL_RE = re.compile(r'[!@#$%^&*(),.?":{}|<>]')
MAX_SCORE = 9
MIN_VALID_SCORE = 5
BCRYPT_MAX_BYTES = 72
MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(hours=2)

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "123456789", "qwerty", "abc123", "password123",
        "admin", "letmein", "welcome", "monkey", "1234567890", "iloveyou",
        "princess", "rockyou", "1234567", "12345678", "sunshine", "nicole",
        "daniel", "babygirl", "lovely", "jessica", "ashley", "michael",
        "password1", "654321", "master", "jordan", "superman", "harley",
    }
)

STRENGTH_COLORS = {
    "Very Weak": "#ff4444",
    "Weak": "#ff8800",
    "Medium": "#ffaa00",
    "Strong": "#88aa00",
    "Very Strong": "#00aa00",
}


@dataclass
class PasswordStrength:
    score: int
    strength: str
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


def strength_label(score: int) -> str:
    if score >= 8:
        return "Very Strong"
    if score >= 6:
        return "Strong"
    if score >= 4:
        return "Medium"
    if score >= 2:
        return "Weak"
    return "Very Weak"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PasswordService:
    def __init__(self, session: Session, rounds: Optional[int] = None) -> None:
        settings = get_settings()
        self.session = session
        self.rounds = rounds or settings.bcrypt_rounds
        self.history_limit = settings.password_history_limit
        self.reset_ttl = timedelta(minutes=settings.reset_token_ttl_minutes)

    def hash_password(self, password: str) -> str:
        if not password:
            raise ValidationError("Password is required")
        encoded = password.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_BYTES:
            raise ValidationError("Password cannot exceed 72 bytes")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify_password(self, password: str, hashed: Optional[str]) -> bool:
        if not password or not hashed:
            return False
        encoded = password.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_BYTES:
            return False
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))

    def validate_strength(
        self, password: str, user_info: Optional[Mapping[str, Optional[str]]] = None
    ) -> PasswordStrength:
        password = password or ""
        errors: list[str] = []
        suggestions: list[str] = []
        score = 0

        if len(password) >= 8:
            score += 1
        else:
            errors.append("Password must be at least 8 characters long")
        if re.search(r"[a-z]", password):
            score += 1
        else:
            errors.append("Password must contain at least one lowercase letter")
            suggestions.append("Add lowercase letters")
        if re.search(r"[A-Z]", password):
            score += 1
        else:
            errors.append("Password must contain at least one uppercase letter")
            suggestions.append("Add uppercase letters")
        if re.search(r"\d", password):
            score += 1
        else:
            errors.append("Password must contain at least one number")
            suggestions.append("Include numbers")
        if any(ch in SPECIAL_CHARS for ch in password):
            score += 1
        else:
            errors.append(
                "Password must contain at least one special character (@$!%*?&)"
            )
            suggestions.append("Add special characters like @, $, !, %, *, ?, &")

        if password.lower() in COMMON_PASSWORDS:
            errors.append("Password is too common. Please choose a more unique password")
        else:
            score += 1

        personal = self._personal_matches(password, user_info or {})
        if personal:
            errors.append(
                "Password should not contain personal information: "
                + ", ".join(personal)
            )
        else:
            score += 1

        if len(password) >= 12:
            score += 1
        else:
            suggestions.insert(0, "Consider using a longer password (12+ characters)")
        if EXTENDED_SPECIAL_RE.search(password):
            score += 1

        if score >= 7:
            suggestions = []
        elif score < MIN_VALID_SCORE:
            suggestions.append("Consider using a passphrase with multiple words")
            suggestions.append("Avoid common words and personal information")

        return PasswordStrength(
            score=score,
            strength=strength_label(score),
            is_valid=not errors and score >= MIN_VALID_SCORE,
            errors=errors,
            suggestions=suggestions,
        )

    @staticmethod
    def _personal_matches(
        password: str, user_info: Mapping[str, Optional[str]]
    ) -> list[str]:
        lowered = password.lower()
        email = (user_info.get("email") or "").lower()
        candidates = [
            ("first name", user_info.get("first_name")),
            ("last name", user_info.get("last_name")),
            ("email", email),
            ("email username", email.split("@")[0] if email else ""),
        ]
        found = []
        for label, value in candidates:
            value = (value or "").strip().lower()
            if len(value) >= 3 and value in lowered:
                found.append(label)
        return found

    @staticmethod
    def _user_info(user: User) -> dict[str, Optional[str]]:
        return {
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
        }

    def _get_user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == (email or "").strip().lower())
        )

    def _check_new_password(self, user: User, new_password: str) -> None:
        strength = self.validate_strength(new_password, self._user_info(user))
        if not strength.is_valid:
            raise ValidationError("; ".join(strength.errors) or "Password is too weak")
        if self.is_recently_used(user.id, new_password):
            raise ValidationError(
                "Password was used recently. Please choose a different password"
            )

    def _store_password(self, user: User, new_password: str) -> None:
        password_hash = self.hash_password(new_password)
        user.password_hash = password_hash
        user.password_changed_at = datetime.utcnow()
        self.session.add(PasswordHistory(user_id=user.id, password_hash=password_hash))
        self.session.flush()

        keep_ids = self.session.scalars(
            select(PasswordHistory.id)
            .where(PasswordHistory.user_id == user.id)
            .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
            .limit(self.history_limit)
        ).all()
        self.session.execute(
            delete(PasswordHistory).where(
                PasswordHistory.user_id == user.id,
                PasswordHistory.id.not_in(keep_ids),
            )
        )
        self.session.expire(user, ["password_history"])

    def is_recently_used(self, user_id: int, password: str) -> bool:
        user = self._get_user(user_id)
        if self.verify_password(password, user.password_hash):
            return True
        hashes = self.session.scalars(
            select(PasswordHistory.password_hash)
            .where(PasswordHistory.user_id == user_id)
            .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
            .limit(self.history_limit)
        ).all()
        return any(self.verify_password(password, h) for h in hashes)

    def initiate_reset(self, email: str) -> Optional[str]:
        """Returns the plaintext token; only its SHA-256 is persisted."""
        user = self._user_by_email(email)
        if not user:
            logger.info("password_reset_requested: known=False")
            return None
        if not user.is_email_verified:
            raise ValidationError(
                "Please verify your email address before resetting your password"
            )

        token = secrets.token_hex(32)
        user.reset_token_hash = hash_token(token)
        user.reset_token_expires_at = datetime.utcnow() + self.reset_ttl
        self.session.commit()
        logger.info("password_reset_requested: known=True user_id=%s", user.id)
        return token

    def verify_reset_token(self, token: str) -> User:
        if not token or len(token) != 64:
            raise ValidationError("Invalid or expired reset token")
        user = self.session.scalar(
            select(User).where(
                User.reset_token_hash == hash_token(token),
                User.reset_token_expires_at > datetime.utcnow(),
            )
        )
        if not user:
            raise ValidationError("Invalid or expired reset token")
        return user

    def reset_password(self, token: str, new_password: str) -> User:
        user = self.verify_reset_token(token)
        self._check_new_password(user, new_password)
        self._store_password(user, new_password)
        user.reset_token_hash = None
        user.reset_token_expires_at = None
        user.login_attempts = 0
        user.lock_until = None
        self.session.commit()
        logger.info("password_reset_completed: user_id=%s", user.id)
        return user

    def change_password(
        self, user_id: int, current_password: str, new_password: str
    ) -> User:
        user = self._get_user(user_id)
        if not self.verify_password(current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must be different from current password")
        self._check_new_password(user, new_password)
        self._store_password(user, new_password)
        self.session.commit()
        logger.info("password_changed: user_id=%s", user.id)
        return user

    def generate_secure_password(self, length: int = 12) -> str:
        if length < 8:
            raise ValidationError("Password length must be at least 8 characters")
        pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, SPECIAL_CHARS]
        chars = [secrets.choice(pool) for pool in pools]
        alphabet = "".join(pools)
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(pools)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)

    def password_meter(
        self, password: str, user_info: Optional[Mapping[str, Optional[str]]] = None
    ) -> dict[str, object]:
        result = self.validate_strength(password, user_info)
        return {
            "score": result.score,
            "max_score": MAX_SCORE,
            "percentage": round(result.score / MAX_SCORE * 100),
            "strength": result.strength,
            "color": STRENGTH_COLORS[result.strength],
            "is_valid": result.is_valid,
            "suggestions": result.suggestions,
        }

    def cleanup_expired_reset_tokens(self) -> int:
        result = self.session.execute(
            update(User)
            .where(
                User.reset_token_hash.isnot(None),
                User.reset_token_expires_at < datetime.utcnow(),
            )
            .values(reset_token_hash=None, reset_token_expires_at=None)
        )
        self.session.commit()
        cleared = result.rowcount or 0
        if cleared:
            logger.info("reset_tokens_cleaned: count=%s", cleared)
        return cleared

    def authenticate(self, email: str, password: str) -> User:
        user = self._user_by_email(email)
        if not user:
            raise ValidationError("Invalid email or password")
        if user.is_locked:
            raise SecurityError("Account is temporarily locked. Try again later")

        if not self.verify_password(password, user.password_hash):
            if user.lock_until and user.lock_until <= datetime.utcnow():
                user.login_attempts = 1
                user.lock_until = None
            else:
                user.login_attempts += 1
                if user.login_attempts >= MAX_LOGIN_ATTEMPTS:
                    user.lock_until = datetime.utcnow() + LOCK_DURATION
                    logger.warning("account_locked: user_id=%s", user.id)
            self.session.commit()
            raise ValidationError("Invalid email or password")

        user.login_attempts = 0
        user.lock_until = None
        self.session.commit()
        return user
