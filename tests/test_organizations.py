import pytest

from coursegate.service.errors import BadRequestError, ConflictError, NotFoundError


@pytest.fixture
def orgs(runtime):
    return runtime.organizations


class TestProvisioning:
    def test_create_normalizes_domains(self, orgs, store):
        org = orgs.create_organization(
            " South College ", "south-college", ["@SC.edu", "sc.edu", "mail.sc.edu"]
        )
        assert org.name == "South College"
        assert org.email_domains == ["sc.edu", "mail.sc.edu"]
        assert store.find_organization_by_domain("mail.sc.edu").id == org.id
        assert [o.slug for o in orgs.list_organizations()] == ["south-college"]

    @pytest.mark.parametrize(
        "slug,domains",
        [
            ("South College", ["sc.edu"]),
            ("south-college", ["gmail.com"]),
            ("south-college", ["not a domain"]),
        ],
    )
    def test_create_rejects_bad_input(self, orgs, slug, domains):
        with pytest.raises(BadRequestError):
            orgs.create_organization("South College", slug, domains)

    def test_duplicate_slug_conflicts(self, orgs, campus):
        with pytest.raises(ConflictError):
            orgs.create_organization("Another", "north-campus", ["another.edu"])

    def test_update_fields_and_deactivate(self, orgs, store, campus):
        org = orgs.update_organization(
            campus["org"].id, name="NCU", email_domains=["ncu.ac.in"], is_active=False
        )
        assert org.name == "NCU" and org.slug == "north-campus" and not org.is_active
        assert store.find_organization_by_domain("ncu.ac.in") is None

        reactivated = orgs.update_organization(campus["org"].id, is_active=True)
        assert store.find_organization_by_domain("ncu.ac.in").id == reactivated.id

    def test_update_unknown_or_conflicting(self, orgs, campus):
        orgs.create_organization("South College", "south-college", ["sc.edu"])
        with pytest.raises(NotFoundError):
            orgs.update_organization("missing", name="x")
        with pytest.raises(ConflictError):
            orgs.update_organization(campus["org"].id, slug="south-college")


class TestOrganizationAdmins:
    def test_new_admin_account_is_verified_and_can_sign_in(self, orgs, runtime, store, campus):
        result = orgs.add_admin(campus["org"].id, "Dean@NCU.edu", "Dr. Dean", "Faculty-Pass-9")

        assert result.created_user
        user = store.get_user_by_email("dean@ncu.edu")
        assert user.role == "institution_admin" and user.email_verified
        assert runtime.auth.verify_password(user.id, "Faculty-Pass-9")
        membership = store.get_membership(user.id, campus["org"].id)
        assert membership.role == "admin" and membership.is_verified

    def test_existing_student_is_promoted(self, orgs, runtime, store, make_user, campus):
        student = make_user("dean@ncu.edu")
        store.upsert_membership(student.id, campus["org"].id, batch_id=campus["batch"].id)

        result = orgs.add_admin(campus["org"].id, "dean@ncu.edu", "Dean")

        assert not result.created_user and result.user.role == "institution_admin"
        membership = store.get_membership(student.id, campus["org"].id)
        assert membership.role == "admin" and membership.is_verified
        assert membership.batch_id == campus["batch"].id
        # no password given: the old one still works
        assert runtime.auth.verify_password(student.id, "CorrectHorse9!")

    def test_platform_admin_keeps_global_role(self, orgs, store, make_user, campus):
        root = make_user("root@coursegate.dev", role="platform_admin")
        result = orgs.add_admin(campus["org"].id, "root@coursegate.dev", "Root")
        assert result.user.role == "platform_admin"
        assert store.get_membership(root.id, campus["org"].id).role == "admin"

    def test_unknown_organization(self, orgs):
        with pytest.raises(NotFoundError):
            orgs.add_admin("missing", "dean@ncu.edu", "Dean")
