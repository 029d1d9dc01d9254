import re

import pytest

from ledgerly.models.activity import ActivityLog
from ledgerly.models.user import User, Wallet
from ledgerly.services import users as users_module
from ledgerly.services.users import (
    UserAllocationError,
    generate_user_id,
    get_or_create_user,
    normalize_user_from,
)


@pytest.mark.parametrize(
    "raw,expected",
    [("ind", "IND"), ("u-s-a", "USA"), ("gb", "GB"), ("", "IND"), (None, "IND"), ("!!", "IND"), ("abcdef", "ABC")],
)
def test_normalize_user_from(raw, expected):
    assert normalize_user_from(raw) == expected


def test_generate_user_id_format():
    for _ in range(20):
        assert re.fullmatch(r"IND\d{6}", generate_user_id("IND"))
    assert re.fullmatch(r"US\d{4}", generate_user_id("US", digits=4))


def test_first_verification_creates_user_and_wallet(db, settings, clock):
    user, created = get_or_create_user(db, settings, "PHONE", "+15551234567", clock=clock)

    assert created
    assert user.user_id.startswith("IND")
    assert user.phone_number == "+15551234567"
    assert user.email is None
    assert user.is_active and user.is_verified
    assert user.role == "user"
    assert user.kyc_status == "NONE"
    wallet = db.query(Wallet).filter(Wallet.user_id == user.user_id).one()
    assert wallet.balance == 0
    assert db.query(ActivityLog).filter(ActivityLog.action == "user_signup").count() == 1


def test_returning_identity_reuses_user(db, settings):
    first, _ = get_or_create_user(db, settings, "EMAIL", "jane@example.com")
    second, created = get_or_create_user(db, settings, "EMAIL", "jane@example.com")

    assert not created
    assert second.id == first.id
    assert db.query(User).count() == 1
    assert db.query(Wallet).count() == 1


def test_user_from_prefix(db, settings):
    user, _ = get_or_create_user(db, settings, "PHONE", "+447700900123", user_from="gb")

    assert user.user_id.startswith("GB")


def test_user_id_collision_is_retried(db, settings, make_user, monkeypatch):
    make_user(user_id="IND000001")
    candidates = iter(["IND000001", "IND000002"])
    monkeypatch.setattr(users_module, "generate_user_id", lambda prefix, digits=6: next(candidates))

    user, created = get_or_create_user(db, settings, "PHONE", "+15550001111")

    assert created
    assert user.user_id == "IND000002"


def test_user_id_allocation_gives_up(db, settings, make_user, monkeypatch):
    make_user(user_id="IND000001")
    monkeypatch.setattr(users_module, "generate_user_id", lambda prefix, digits=6: "IND000001")

    with pytest.raises(UserAllocationError):
        get_or_create_user(db, settings, "PHONE", "+15550002222")
