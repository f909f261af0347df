import pytest

from scripts.bootstrap_admin import bootstrap_admin, validate_password


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Sh0rt!", False),
        ("alllowercaseletters", False),
        ("Lowerandupper12", True),
        ("symbols-and-digits-123", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


def test_creates_then_reports_existing_admin(runtime):
    created = bootstrap_admin("Root@Example.com", "Str0ng-Passphrase")
    assert created["status"] == "created"
    user = runtime.store.get_user(created["user_id"])
    assert user.role == "platform_admin" and user.email_verified
    assert runtime.auth.verify_password(user.id, "Str0ng-Passphrase")

    assert bootstrap_admin("root@example.com", "ignored")["status"] == "already_admin"


def test_promotes_existing_account(runtime, make_user):
    student = make_user("dean@example.com", is_active=False)
    assert bootstrap_admin("dean@example.com", "x", dry_run=True)["status"] == "dry_run"
    assert runtime.store.get_user(student.id).role == "student"

    result = bootstrap_admin("dean@example.com", "x")
    assert result["status"] == "promoted"
    promoted = runtime.store.get_user(student.id)
    assert promoted.role == "platform_admin" and promoted.is_active
