import pytest

from coursegate.service.errors import AuthenticationError, BadRequestError, ForbiddenError
from coursegate.service.guards import (
    AuthContext,
    authenticate_access_token,
    check_org_role,
    check_role,
    extract_bearer,
)
from coursegate.storage.models import MembershipSnapshot, User


def _ctx(role="student", memberships=()):
    return AuthContext(user_id="u-1", email="u@ncu.edu", role=role, memberships=list(memberships))


def _membership(org_id="org-1", role="admin", verified=True):
    return MembershipSnapshot(
        organization_id=org_id, organization_name="NCU", role=role, is_verified=verified
    )


class TestBearerExtraction:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer   tok ", "tok"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer(header) == expected


class TestAuthenticate:
    def test_round_trip_through_codec(self, runtime):
        user = User(id="u-9", email="x@ncu.edu", role="instructor")
        token = runtime.codec.issue_access_token(user, [_membership()])
        ctx = authenticate_access_token(runtime.codec, token)
        assert ctx.user_id == "u-9"
        assert ctx.role == "instructor"
        assert ctx.membership_for("org-1").role == "admin"

    def test_missing_or_invalid_token(self, runtime):
        with pytest.raises(AuthenticationError):
            authenticate_access_token(runtime.codec, None)
        with pytest.raises(AuthenticationError):
            authenticate_access_token(runtime.codec, "not.a.token")

    def test_non_access_token_type_rejected(self, runtime):
        token = runtime.codec.encode(
            {
                "sub": "u-1",
                "iss": runtime.codec.issuer,
                "aud": runtime.codec.audience,
                "exp": 9999999999,
                "token_type": "refresh",
            }
        )
        with pytest.raises(AuthenticationError):
            authenticate_access_token(runtime.codec, token)


class TestRoleChecks:
    def test_check_role(self):
        assert check_role(_ctx("instructor"), "instructor", "platform_admin")
        with pytest.raises(ForbiddenError):
            check_role(_ctx("student"), "platform_admin")
        with pytest.raises(AuthenticationError):
            check_role(None, "student")

    def test_org_admin_passes_for_own_org_only(self):
        ctx = _ctx(memberships=[_membership("org-1")])
        assert check_org_role(ctx, "org-1", "admin") is ctx
        with pytest.raises(ForbiddenError):
            check_org_role(ctx, "org-2", "admin")

    def test_unverified_or_wrong_role_membership_fails(self):
        with pytest.raises(ForbiddenError):
            check_org_role(_ctx(memberships=[_membership(verified=False)]), "org-1", "admin")
        with pytest.raises(ForbiddenError):
            check_org_role(_ctx(memberships=[_membership(role="student")]), "org-1")

    def test_platform_admin_bypasses_org_check(self):
        ctx = _ctx("platform_admin")
        assert check_org_role(ctx, "any-org", "admin") is ctx

    def test_missing_org_id_or_credential(self):
        with pytest.raises(BadRequestError):
            check_org_role(_ctx(memberships=[_membership()]), None, "admin")
        with pytest.raises(AuthenticationError):
            check_org_role(None, "org-1", "admin")
