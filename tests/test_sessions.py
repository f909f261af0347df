import threading
from datetime import timedelta

import pytest

from coursegate.service.errors import AccountDeactivatedError, AuthenticationError
from coursegate.service.tokens import hash_rotation_secret
from coursegate.storage.models import utcnow


@pytest.fixture
def sessions(runtime):
    return runtime.sessions


@pytest.fixture
def learner(make_user):
    return make_user("asha@example.com")


def _live_tokens(store, user_id):
    return [t for t in store.list_rotation_tokens(user_id) if not t.revoked]


class TestIssue:
    def test_issue_persists_only_the_hash(self, sessions, store, learner):
        pair = sessions.issue(learner)

        rows = store.list_rotation_tokens(learner.id)
        assert len(rows) == 1
        assert rows[0].token_hash == hash_rotation_secret(pair.refresh_token)
        assert rows[0].token_hash != pair.refresh_token
        assert pair.expires_in == 15 * 60
        assert pair.refresh_expires_in == 7 * 86400
        assert rows[0].expires_at - rows[0].created_at == timedelta(days=7)

    def test_access_token_embeds_current_memberships(self, sessions, store, learner, campus):
        store.upsert_membership(learner.id, campus["org"].id, is_verified=True)
        pair = sessions.issue(learner)
        payload = sessions.codec.decode(pair.access_token)
        assert payload["memberships"][0]["organization_id"] == campus["org"].id
        assert payload["memberships"][0]["is_verified"] is True


class TestRotation:
    def test_rotate_issues_new_pair_and_revokes_old(self, sessions, store, learner):
        first = sessions.issue(learner)
        user, second = sessions.rotate(first.refresh_token)

        assert user.id == learner.id
        assert second.refresh_token != first.refresh_token
        old_row = store.get_rotation_token(hash_rotation_secret(first.refresh_token))
        assert old_row.revoked is True
        assert [t.token_hash for t in _live_tokens(store, learner.id)] == [
            hash_rotation_secret(second.refresh_token)
        ]

    def test_reuse_revokes_every_token_of_the_user(self, sessions, store, learner):
        first = sessions.issue(learner)
        other_device = sessions.issue(learner)
        _, second = sessions.rotate(first.refresh_token)

        with pytest.raises(AuthenticationError):
            sessions.rotate(first.refresh_token)

        assert _live_tokens(store, learner.id) == []
        # the legitimate successor is gone too
        with pytest.raises(AuthenticationError):
            sessions.rotate(second.refresh_token)
        with pytest.raises(AuthenticationError):
            sessions.rotate(other_device.refresh_token)

    def test_unknown_and_missing_secrets_rejected(self, sessions):
        with pytest.raises(AuthenticationError):
            sessions.rotate("never-issued")
        with pytest.raises(AuthenticationError):
            sessions.rotate(None)

    def test_expired_secret_rejected_without_reuse_cascade(self, sessions, store, learner):
        stale = sessions.issue(learner)
        fresh = sessions.issue(learner)
        row = store.get_rotation_token(hash_rotation_secret(stale.refresh_token))
        row.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(AuthenticationError):
            sessions.rotate(stale.refresh_token)

        # the other session survives
        user, _ = sessions.rotate(fresh.refresh_token)
        assert user.id == learner.id

    def test_deactivated_user_gets_distinct_error(self, sessions, store, learner):
        pair = sessions.issue(learner)
        store.update_user(learner.id, is_active=False)

        with pytest.raises(AccountDeactivatedError) as excinfo:
            sessions.rotate(pair.refresh_token)
        assert excinfo.value.error_code == "account_deactivated"
        assert excinfo.value.status_code == 403

    def test_concurrent_rotation_has_exactly_one_winner(self, sessions, store, learner):
        pair = sessions.issue(learner)
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                sessions.rotate(pair.refresh_token)
                result = "ok"
            except AuthenticationError:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("ok") + outcomes.count("rejected") == 8
        # any loser counts as reuse, which revokes the winner's pair as well
        if outcomes.count("rejected"):
            assert _live_tokens(store, learner.id) == []


class TestRevocation:
    def test_logout_revokes_single_token(self, sessions, store, learner):
        first = sessions.issue(learner)
        second = sessions.issue(learner)

        assert sessions.revoke(first.refresh_token) is True
        assert sessions.revoke(first.refresh_token) is False
        assert sessions.revoke(None) is False
        assert len(_live_tokens(store, learner.id)) == 1
        sessions.rotate(second.refresh_token)

    def test_revoke_all(self, sessions, store, learner):
        for _ in range(3):
            sessions.issue(learner)
        assert sessions.revoke_all(learner.id) == 3
        assert _live_tokens(store, learner.id) == []

    def test_prune_removes_only_expired_rows(self, sessions, store, learner):
        keep = sessions.issue(learner)
        drop = sessions.issue(learner)
        row = store.get_rotation_token(hash_rotation_secret(drop.refresh_token))
        row.expires_at = utcnow() - timedelta(days=1)

        assert sessions.prune_expired() == 1
        assert store.get_rotation_token(hash_rotation_secret(drop.refresh_token)) is None
        assert store.get_rotation_token(hash_rotation_secret(keep.refresh_token)) is not None
