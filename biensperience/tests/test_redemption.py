"""
biensperience/tests/test_redemption.py
Redemption engine: atomic use counting, idempotence, plan snapshots.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from biensperience.core.database import get_db_session, init_engine, invite_redemptions, plans, reset_database
from biensperience.core.errors import NotFoundError, ValidationError
from biensperience.features.invites import redemption
from biensperience.features.invites.persistence import InvitePersistence
from biensperience.features.invites.service import create_invite, deactivate_invite, get_invite, redeem_code
from biensperience.features.notifications.hooks import PostCommitHooks
from biensperience.features.permissions.entities import ExperienceEntity, PlanEntity
from biensperience.features.permissions.lifecycle import delete_entity, replace_plan_items
from biensperience.features.permissions.service import can, get_role
from biensperience.models.entity import ExperiencePlanItem
from biensperience.models.invite import CreateInviteRequest, InviteErrorCode
from biensperience.models.permission import Action, Role


def _stored_plan(user_id, experience_id):
    with get_db_session() as session:
        return session.execute(
            select(plans).where(plans.c.user_id == user_id).where(plans.c.experience_id == experience_id)
        ).first()


def _plan_count(user_id):
    with get_db_session() as session:
        return len(session.execute(select(plans.c.plan_id).where(plans.c.user_id == user_id)).fetchall())


@pytest.fixture
def people(make_user):
    return {
        "alice": make_user("alice", email="alice@example.com"),
        "bob": make_user("bob", email="bob@example.com"),
        "carol": make_user("carol", email="carol@example.com"),
    }


@pytest.fixture
def bundle(people, make_experience, make_destination):
    exp1 = make_experience("alice", title="Kyoto")
    exp2 = make_experience("alice", title="Osaka", items=[{"plan_item_id": "o1", "text": "Dotonbori"}])
    destination = make_destination("alice")
    return {"experiences": [exp1, exp2], "destination": destination}


def _invite(bundle, **kwargs):
    request = CreateInviteRequest(
        experiences=[e.experience_id for e in bundle["experiences"]],
        destinations=[bundle["destination"].destination_id],
        custom_message="Welcome aboard",
        **kwargs,
    )
    return create_invite("alice", request).invite


class TestSingleUseInvite:
    def test_first_user_wins_second_sees_exhausted(self, bundle):
        invite = _invite(bundle, max_uses=1)

        first = redeem_code(invite.code, "bob")
        assert first.success is True
        assert first.already_redeemed is False
        assert [p.experience_id for p in first.plans_created] == [e.experience_id for e in bundle["experiences"]]
        assert first.destinations == [bundle["destination"].destination_id]
        assert first.custom_message == "Welcome aboard"
        assert first.invite.uses_count == 1

        second = redeem_code(invite.code, "carol")
        assert second.success is False
        assert second.error_code == InviteErrorCode.EXHAUSTED
        assert second.plans_created == []
        assert get_invite(invite.invite_id).uses_count == 1
        assert _plan_count("carol") == 0

    def test_exhaustion_does_not_deactivate(self, bundle):
        invite = _invite(bundle, max_uses=1)
        redeem_code(invite.code, "bob")

        stored = get_invite(invite.invite_id)
        assert stored.active is True
        assert stored.is_exhausted is True


class TestIdempotentRedemption:
    def test_repeat_by_same_user_is_a_no_op(self, bundle):
        invite = _invite(bundle, max_uses=5)
        redeem_code(invite.code, "bob")

        again = redeem_code(invite.code, "bob")
        assert again.success is True
        assert again.already_redeemed is True
        assert again.plans_created == []
        assert again.experiences_skipped == [e.experience_id for e in bundle["experiences"]]
        assert get_invite(invite.invite_id).uses_count == 1
        assert _plan_count("bob") == 2

    def test_repeat_succeeds_even_when_uses_are_spent(self, bundle):
        invite = _invite(bundle, max_uses=1)
        redeem_code(invite.code, "bob")

        again = redeem_code(invite.code, "bob")
        assert again.success is True
        assert again.already_redeemed is True

    def test_repeat_after_deactivation_fails(self, bundle):
        invite = _invite(bundle, max_uses=5)
        redeem_code(invite.code, "bob")
        deactivate_invite(invite.invite_id)

        again = redeem_code(invite.code, "bob")
        assert again.success is False
        assert again.error_code == InviteErrorCode.DEACTIVATED

    def test_concurrent_duplicate_insert_takes_idempotent_path(self, bundle, monkeypatch):
        invite = _invite(bundle, max_uses=5)
        redeem_code(invite.code, "bob")

        # First check misses the row the "other request" already wrote
        real_has_redeemed = InvitePersistence.has_redeemed
        calls = []

        def racing_has_redeemed(session, invite_id, user_id):
            calls.append(user_id)
            if len(calls) == 1:
                return False
            return real_has_redeemed(session, invite_id, user_id)

        monkeypatch.setattr(InvitePersistence, "has_redeemed", staticmethod(racing_has_redeemed))

        result = redeem_code(invite.code, "bob")
        assert result.success is True
        assert result.already_redeemed is True
        assert len(calls) == 2
        assert get_invite(invite.invite_id).uses_count == 1

    def test_existing_plan_from_another_invite_is_skipped(self, bundle):
        first = _invite(bundle, max_uses=5)
        second = _invite(bundle, max_uses=5)
        redeem_code(first.code, "bob")

        result = redeem_code(second.code, "bob")
        assert result.success is True
        assert result.already_redeemed is False
        assert result.plans_created == []
        assert len(result.experiences_skipped) == 2
        assert get_invite(second.invite_id).uses_count == 1


class TestRejections:
    def test_unknown_code(self, people):
        result = redeem_code("AAA-AAA-AAA", "bob")
        assert result.success is False
        assert result.error_code == InviteErrorCode.NOT_FOUND
        assert result.invite is None

    def test_empty_code_raises(self, people):
        with pytest.raises(ValidationError):
            redeem_code(" ", "bob")

    def test_unknown_user_raises(self, bundle):
        invite = _invite(bundle)
        with pytest.raises(NotFoundError):
            redeem_code(invite.code, "ghost")
        assert get_invite(invite.invite_id).uses_count == 0

    def test_expired(self, bundle):
        expires = datetime.now(timezone.utc) + timedelta(days=1)
        invite = _invite(bundle, expires_at=expires)

        result = redeem_code(invite.code, "bob", now=expires + timedelta(minutes=1))
        assert result.error_code == InviteErrorCode.EXPIRED
        assert get_invite(invite.invite_id).uses_count == 0

    def test_email_mismatch_is_a_hard_reject(self, bundle):
        invite = _invite(bundle, email="bob@example.com")

        result = redeem_code(invite.code, "carol", email="carol@example.com")
        assert result.error_code == InviteErrorCode.EMAIL_MISMATCH
        assert get_invite(invite.invite_id).uses_count == 0

        ok = redeem_code(invite.code, "bob", email="BOB@example.com")
        assert ok.success is True

    def test_state_change_after_lookup_is_reported(self, bundle, monkeypatch):
        invite = _invite(bundle, max_uses=5)
        stale = InvitePersistence.get_by_code(invite.code)
        deactivate_invite(invite.invite_id)
        monkeypatch.setattr(InvitePersistence, "get_by_code", staticmethod(lambda code: stale))

        result = redeem_code(invite.code, "bob")
        assert result.success is False
        assert result.error_code == InviteErrorCode.DEACTIVATED
        assert _plan_count("bob") == 0
        assert InvitePersistence.redeemed_by(invite.invite_id) == []


class TestPlanMaterialization:
    def test_plan_snapshot_copies_items(self, bundle):
        invite = _invite(bundle)
        result = redeem_code(invite.code, "bob")

        kyoto = result.plans_created[0]
        assert [item.plan_item_id for item in kyoto.plan] == ["i1", "i2"]
        first = kyoto.plan[0]
        assert first.complete is False
        assert first.cost == 300.0
        assert first.planning_days == 30
        assert first.text == "Book ryokan"

    def test_plan_is_owned_by_redeemer(self, bundle):
        invite = _invite(bundle)
        result = redeem_code(invite.code, "bob")
        plan = PlanEntity(result.plans_created[0].plan_id)

        assert get_role(plan, "bob") == Role.OWNER
        assert can("bob", plan, Action.DELETE) is True
        assert can("carol", plan, Action.VIEW) is False

    def test_later_edits_do_not_reach_existing_plans(self, bundle):
        invite = _invite(bundle, max_uses=2)
        kyoto = bundle["experiences"][0]
        redeem_code(invite.code, "bob")

        replace_plan_items(
            kyoto.experience_id,
            [ExperiencePlanItem(plan_item_id="new", text="Arashiyama")],
            actor="alice",
        )

        stored = _stored_plan("bob", kyoto.experience_id)
        assert [item["plan_item_id"] for item in stored.plan] == ["i1", "i2"]

        carol = redeem_code(invite.code, "carol")
        assert [item.plan_item_id for item in carol.plans_created[0].plan] == ["new"]

    def test_deleted_experience_is_a_failure_not_an_abort(self, bundle):
        invite = _invite(bundle)
        kyoto, osaka = bundle["experiences"]
        delete_entity(ExperienceEntity(kyoto.experience_id), actor="alice")

        result = redeem_code(invite.code, "bob")
        assert result.success is True
        assert [f.experience_id for f in result.failures] == [kyoto.experience_id]
        assert "not found" in result.failures[0].error.lower()
        assert [p.experience_id for p in result.plans_created] == [osaka.experience_id]
        assert result.invite.uses_count == 1

    def test_hook_failures_land_in_metadata(self, bundle):
        invite = _invite(bundle)
        hooks = PostCommitHooks()

        def broken():
            raise RuntimeError("audit sink down")

        hooks.add("broken", broken)
        result = redeem_code(invite.code, "bob", hooks=hooks)

        assert result.success is True
        assert result.metadata["hook_errors"] == [{"hook": "broken", "error": "audit sink down"}]
        assert len(result.plans_created) == 2

    def test_create_plan_returns_none_when_plan_exists(self, bundle):
        kyoto = bundle["experiences"][0]
        now = datetime.now(timezone.utc)

        assert redemption.create_plan_from_experience(kyoto.experience_id, "bob", now) is not None
        assert redemption.create_plan_from_experience(kyoto.experience_id, "bob", now) is None


class TestConcurrentRedemption:
    """Threads on a file-backed database, each with its own connection."""

    RACERS = 6

    @pytest.fixture
    def file_db(self, tmp_path):
        init_engine(f"sqlite:///{tmp_path / 'race.db'}")
        reset_database()

    def test_max_uses_holds_under_contention(self, file_db, make_user, make_experience, make_destination):
        make_user("alice", email="alice@example.com")
        racers = [f"racer{i}" for i in range(self.RACERS)]
        for user_id in racers:
            make_user(user_id, email=f"{user_id}@example.com")
        experience = make_experience("alice")
        request = CreateInviteRequest(experiences=[experience.experience_id], max_uses=3)
        invite = create_invite("alice", request).invite

        barrier = threading.Barrier(self.RACERS)
        results = {}
        errors = []

        def redeem(user_id):
            try:
                barrier.wait(timeout=10)
                results[user_id] = redeem_code(invite.code, user_id)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=redeem, args=(user_id,)) for user_id in racers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        winners = [user_id for user_id, result in results.items() if result.success]
        losers = [result for result in results.values() if not result.success]
        assert len(winners) == 3
        assert [result.error_code for result in losers] == [InviteErrorCode.EXHAUSTED] * 3
        assert get_invite(invite.invite_id).uses_count == 3
        for user_id in winners:
            assert _plan_count(user_id) == 1
        with get_db_session() as session:
            redeemed = session.execute(select(invite_redemptions.c.user_id)).scalars().all()
        assert sorted(redeemed) == sorted(winners)
