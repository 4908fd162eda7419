import string
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, SecurityError, ValidationError
from models import PasswordHistory
from passwords import PasswordService, hash_token
from schemas import UserIn
from services import UserService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _create_user(session: Session, passwords: PasswordService, verified: bool = True):
    return UserService(session, passwords=passwords).create(
        UserIn(
            email="Rita.Moss@example.com",
            first_name="Rita",
            last_name="Moss",
            password="Blue$Harbor2024",
            is_email_verified=verified,
        )
    )


def test_hash_and_verify_password() -> None:
    passwords = PasswordService(None, rounds=4)
    hashed = passwords.hash_password("Blue$Harbor2024")

    assert hashed != "Blue$Harbor2024"
    assert passwords.verify_password("Blue$Harbor2024", hashed) is True
    assert passwords.verify_password("blue$harbor2024", hashed) is False
    assert passwords.verify_password("", hashed) is False
    with pytest.raises(ValidationError):
        passwords.hash_password("x" * 73)
    assert passwords.verify_password("x" * 73, hashed) is False


def test_strength_scoring() -> None:
    passwords = PasswordService(None, rounds=4)

    strong = passwords.validate_strength("Tr0ub4dor&Horse")
    assert strong.score == 9
    assert strong.strength == "Very Strong"
    assert strong.is_valid is True
    assert strong.suggestions == []

    common = passwords.validate_strength("password")
    assert common.is_valid is False
    assert common.strength == "Weak"
    assert any("too common" in e for e in common.errors)

    personal = passwords.validate_strength(
        "Moss&Garden2024", {"first_name": "Rita", "last_name": "Moss"}
    )
    assert personal.is_valid is False
    assert personal.errors == [
        "Password should not contain personal information: last name"
    ]


def test_password_meter_reports_percentage_and_color() -> None:
    meter = PasswordService(None, rounds=4).password_meter("Tr0ub4dor&Horse")

    assert meter["percentage"] == 100
    assert meter["color"] == "#00aa00"
    assert meter["max_score"] == 9


def test_user_creation_rejects_weak_and_duplicate() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        _create_user(session, passwords)

        with pytest.raises(ConflictError):
            _create_user(session, passwords)
        with pytest.raises(ValidationError):
            UserService(session, passwords=passwords).create(
                UserIn(email="weak@example.com", password="letmein")
            )


def test_change_password_blocks_recent_reuse() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        user = _create_user(session, passwords)

        with pytest.raises(ValidationError):
            passwords.change_password(user.id, "Wrong$Guess2024", "Green$Valley2025")
        with pytest.raises(ValidationError):
            passwords.change_password(user.id, "Blue$Harbor2024", "Blue$Harbor2024")

        passwords.change_password(user.id, "Blue$Harbor2024", "Green$Valley2025")
        assert passwords.verify_password("Green$Valley2025", user.password_hash)

        with pytest.raises(ValidationError):
            passwords.change_password(user.id, "Green$Valley2025", "Blue$Harbor2024")


def test_password_history_is_trimmed() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        user = _create_user(session, passwords)
        sequence = [
            "Blue$Harbor2024",
            "Green$Valley2025",
            "Amber$Canyon2026",
            "Coral$Meadow2027",
            "Ivory$Summit2028",
            "Olive$Forest2029",
            "Slate$Bridge2030",
        ]
        for current, new in zip(sequence, sequence[1:]):
            passwords.change_password(user.id, current, new)

        count = session.scalar(
            select(func.count(PasswordHistory.id)).where(PasswordHistory.user_id == user.id)
        )
        assert count == passwords.history_limit
        assert passwords.is_recently_used(user.id, "Blue$Harbor2024") is False


def test_reset_flow_stores_only_token_hash() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        user = _create_user(session, passwords)

        assert passwords.initiate_reset("nobody@example.com") is None
        token = passwords.initiate_reset("rita.moss@example.com")

        assert len(token) == 64
        assert user.reset_token_hash == hash_token(token)
        assert passwords.verify_reset_token(token).id == user.id

        passwords.reset_password(token, "Green$Valley2025")
        assert user.reset_token_hash is None
        assert passwords.verify_password("Green$Valley2025", user.password_hash)
        with pytest.raises(ValidationError):
            passwords.reset_password(token, "Amber$Canyon2026")


def test_reset_requires_verified_email() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        _create_user(session, passwords, verified=False)

        with pytest.raises(ValidationError):
            passwords.initiate_reset("rita.moss@example.com")


def test_expired_reset_tokens_are_cleaned_up() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        user = _create_user(session, passwords)
        token = passwords.initiate_reset(user.email)
        user.reset_token_expires_at = datetime.utcnow() - timedelta(minutes=1)
        session.commit()

        with pytest.raises(ValidationError):
            passwords.verify_reset_token(token)
        assert passwords.cleanup_expired_reset_tokens() == 1
        session.refresh(user)
        assert user.reset_token_hash is None


def test_account_locks_after_repeated_failures() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        user = _create_user(session, passwords)

        for _ in range(5):
            with pytest.raises(ValidationError):
                passwords.authenticate(user.email, "Wrong$Guess2024")

        assert user.is_locked is True
        with pytest.raises(SecurityError):
            passwords.authenticate(user.email, "Blue$Harbor2024")


def test_successful_login_resets_attempts() -> None:
    with _session() as session:
        passwords = PasswordService(session, rounds=4)
        user = _create_user(session, passwords)

        with pytest.raises(ValidationError):
            passwords.authenticate(user.email, "Wrong$Guess2024")
        assert passwords.authenticate("RITA.MOSS@example.com", "Blue$Harbor2024").id == user.id
        assert user.login_attempts == 0


def test_generated_password_covers_every_class() -> None:
    generated = PasswordService(None, rounds=4).generate_secure_password(16)

    assert len(generated) == 16
    assert any(c in string.ascii_lowercase for c in generated)
    assert any(c in string.ascii_uppercase for c in generated)
    assert any(c in string.digits for c in generated)
    assert any(c in "@$!%*?&" for c in generated)
    with pytest.raises(ValidationError):
        PasswordService(None, rounds=4).generate_secure_password(6)
