from datetime import datetime

import pytest

from courier.core.errors import NotFoundError, ValidationError
from courier.models.user import User
from courier.services.user_directory import UserDirectory


def test_exists_and_lookup(db, alice):
    directory = UserDirectory(db)
    assert directory.exists(alice.user_id)
    assert not directory.exists("00000000")
    assert directory.get_by_username("  ALICE ").user_id == alice.user_id
    assert directory.find("alice").user_id == alice.user_id
    assert directory.find(alice.user_id).username == "alice"


def test_profile_never_exposes_credentials(db, alice):
    profile = UserDirectory(db).get_profile(alice.user_id)
    assert profile["user_id"] == alice.user_id
    assert "password_hash" not in profile
    assert "password_salt" not in profile
    with pytest.raises(NotFoundError):
        UserDirectory(db).get_profile("00000000")


def test_set_presence_writes_flag_and_last_seen(db, alice):
    seen = datetime(2026, 1, 2, 3, 4, 5)
    UserDirectory(db).set_presence(alice.user_id, True, seen)

    db.expire_all()
    stored = db.query(User).filter(User.user_id == alice.user_id).one()
    assert stored.is_online is True
    assert stored.last_seen == seen


def test_profile_update_cannot_touch_presence(db, alice):
    with pytest.raises(ValidationError):
        UserDirectory(db).update_profile(alice.user_id, {"is_online": True})

    user = UserDirectory(db).update_profile(alice.user_id, {"is_online": True, "bio": "hi"})
    assert user.bio == "hi"
    assert user.is_online is False
