from datetime import timedelta

from clinicrecords.service.credentials import hash_secret
from clinicrecords.storage.models import (
    LOCKOUT_DURATION,
    MAX_FAILED_ATTEMPTS,
    Patient,
    Role,
    Session,
    User,
    utcnow,
)


def _user_with_credentials(key="k3y-value", pin="1234"):
    user = User.new("doc@example.com", "Doc", Role.DOCTOR)
    user.set_key_credential(hash_secret(key))
    user.set_pin_credential(hash_secret(pin))
    return user


def test_validate_credentials_requires_both_factors():
    user = _user_with_credentials()
    assert user.validate_credentials("k3y-value", "1234")
    assert not user.validate_credentials("k3y-value", "0000")
    assert not user.validate_credentials("wrong", "1234")


def test_validate_credentials_false_without_credentials():
    user = User.new("a@example.com", "A", Role.STAFF)
    assert not user.validate_credentials("anything", "0000")


def test_lock_after_exactly_max_failures():
    user = User.new("a@example.com", "A", Role.NURSE)
    for _ in range(MAX_FAILED_ATTEMPTS - 1):
        user.record_failed_attempt()
    assert not user.is_locked()

    before = utcnow()
    user.record_failed_attempt()
    assert user.failed_attempts == MAX_FAILED_ATTEMPTS
    assert user.is_locked()
    expected = before + LOCKOUT_DURATION
    assert abs((user.locked_until - expected).total_seconds()) < 5


def test_lock_expires_after_duration():
    user = User.new("a@example.com", "A", Role.NURSE)
    for _ in range(MAX_FAILED_ATTEMPTS):
        user.record_failed_attempt()
    later = user.locked_until + timedelta(seconds=1)
    assert not user.is_locked(now=later)


def test_record_login_clears_lock_and_counter():
    user = User.new("a@example.com", "A", Role.ADMIN)
    for _ in range(MAX_FAILED_ATTEMPTS):
        user.record_failed_attempt()
    user.record_login()
    assert user.failed_attempts == 0
    assert user.locked_until is None
    assert not user.is_locked()
    assert user.last_login is not None


def test_session_refresh_extends_expiry():
    session = Session.new("user-1", None, None, utcnow() - timedelta(minutes=1))
    assert session.is_expired()
    session.refresh(timedelta(hours=1))
    assert not session.is_expired()


def test_patient_age_and_full_name():
    from datetime import date

    patient = Patient.new("Ada", "Lovelace", date(1990, 6, 15), "female")
    assert patient.age(today=date(2020, 6, 14)) == 29
    assert patient.age(today=date(2020, 6, 15)) == 30
    assert patient.full_name() == "Ada Lovelace"
    patient.middle_name = "King"
    assert patient.full_name() == "Ada King Lovelace"
