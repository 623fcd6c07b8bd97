"""User service tests (resolution, races, deletion, credits)"""
import threading
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from pixelbill.core.config import settings
from pixelbill.core.errors import InsufficientCreditsError, UserNotFoundError
from pixelbill.models import Base
from pixelbill.models.enums import EntitlementTier
from pixelbill.models.subscription import Subscription
from pixelbill.models.user import User
from pixelbill.services.user_service import (
    consume_credits,
    delete_user_by_external_id,
    ensure_user_exists,
    find_user_by_external_id,
)


@pytest.mark.critical
class TestEnsureUserExists:
    """Lookup / relink / create"""

    def test_new_identity_creates_free_user_with_baseline(self, db_session, mock_redis):
        user = ensure_user_exists("u_1", "a@x.com", db_session)

        assert user.id is not None
        assert user.clerk_id == "u_1"
        assert user.email == "a@x.com"
        assert user.tier == EntitlementTier.FREE
        assert user.credits == 5

    def test_existing_identity_is_returned_unchanged(self, db_session, test_user):
        test_user.credits = 42
        db_session.commit()

        user = ensure_user_exists(test_user.clerk_id, "other@x.com", db_session)

        assert user.id == test_user.id
        assert user.credits == 42
        assert user.email == "a@x.com"
        assert db_session.query(User).count() == 1

    def test_known_email_is_rebound_to_new_identity(self, db_session, test_user):
        user = ensure_user_exists("user_rotated", test_user.email, db_session)

        assert user.id == test_user.id
        assert user.clerk_id == "user_rotated"
        assert db_session.query(User).count() == 1

    def test_repeated_calls_are_idempotent(self, db_session):
        first = ensure_user_exists("u_1", "a@x.com", db_session)
        second = ensure_user_exists("u_1", "a@x.com", db_session)

        assert first.id == second.id
        assert db_session.query(User).count() == 1


@pytest.mark.critical
class TestEnsureUserExistsRace:
    """Losing the insert race must recover the winner's row"""

    def test_lost_race_rereads_winner(self, db_session, test_user):
        sleep = Mock()
        # Both lookups miss, as if the winner committed right after them
        with patch("pixelbill.services.user_service.get_user_by_external_id", return_value=None), \
                patch("pixelbill.services.user_service.get_user_by_email", return_value=None):
            user = ensure_user_exists(test_user.clerk_id, test_user.email, db_session, sleep=sleep)

        assert user.id == test_user.id
        assert db_session.query(User).count() == 1
        sleep.assert_called_once_with(settings.USER_RACE_RETRY_DELAY)

    def test_unrecoverable_conflict_propagates(self, db_session, test_user):
        with patch("pixelbill.services.user_service.get_user_by_external_id", return_value=None), \
                patch("pixelbill.services.user_service.get_user_by_email", return_value=None), \
                patch("pixelbill.services.user_service._find_by_external_id_or_email", return_value=None):
            with pytest.raises(IntegrityError):
                ensure_user_exists(test_user.clerk_id, test_user.email, db_session, sleep=Mock())

    def test_concurrent_first_contact_creates_one_user(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        workers = 6
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def resolve():
            session = SessionFactory()
            try:
                barrier.wait()
                results.append(ensure_user_exists("u_race", "race@x.com", session).id)
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=resolve) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        session = SessionFactory()
        try:
            assert errors == []
            assert session.query(User).count() == 1
            assert set(results) == {session.query(User).one().id}
        finally:
            session.close()
            engine.dispose()


class TestFindUserByExternalId:
    def test_found_without_retry(self, db_session, test_user):
        sleep = Mock()
        assert find_user_by_external_id(test_user.clerk_id, db_session, sleep=sleep).id == test_user.id
        sleep.assert_not_called()

    def test_missing_user_returns_none_after_retries(self, db_session):
        sleep = Mock()
        assert find_user_by_external_id("user_missing", db_session, retries=3, sleep=sleep) is None
        assert sleep.call_count == 2


@pytest.mark.high
class TestDeleteUser:
    def test_delete_removes_user_and_subscription(self, db_session, pro_user, mock_redis):
        mock_redis.set(f"dashboard:{pro_user.clerk_id}", "{}")

        assert delete_user_by_external_id(pro_user.clerk_id, db_session) is True

        assert db_session.query(User).count() == 0
        assert db_session.query(Subscription).count() == 0
        assert mock_redis.get(f"dashboard:{pro_user.clerk_id}") is None

    def test_delete_missing_user(self, db_session, mock_redis):
        assert delete_user_by_external_id("user_missing", db_session) is False


@pytest.mark.high
class TestConsumeCredits:
    def test_consume_decrements_balance(self, db_session, test_user, mock_redis):
        remaining = consume_credits(test_user.clerk_id, db_session, amount=2)

        assert remaining == 3
        db_session.refresh(test_user)
        assert test_user.credits == 3

    def test_consume_never_goes_below_zero(self, db_session, test_user, mock_redis):
        with pytest.raises(InsufficientCreditsError):
            consume_credits(test_user.clerk_id, db_session, amount=6)

        db_session.refresh(test_user)
        assert test_user.credits == 5

    def test_consume_exact_balance(self, db_session, test_user, mock_redis):
        assert consume_credits(test_user.clerk_id, db_session, amount=5) == 0
        with pytest.raises(InsufficientCreditsError):
            consume_credits(test_user.clerk_id, db_session)

    def test_consume_unknown_user(self, db_session, mock_redis):
        with pytest.raises(UserNotFoundError):
            consume_credits("user_missing", db_session)

    def test_consume_rejects_non_positive_amount(self, db_session, test_user):
        with pytest.raises(ValueError):
            consume_credits(test_user.clerk_id, db_session, amount=0)
