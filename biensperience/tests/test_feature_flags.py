"""
biensperience/tests/test_feature_flags.py
Feature flag context evaluation, grant storage and the AI status cache.
"""

from datetime import datetime, timedelta, timezone

import pytest

from biensperience.core.config import Settings
from biensperience.core.errors import AuthorizationDeniedError, NotFoundError, ValidationError
from biensperience.features.flags import service as flags
from biensperience.features.flags.cache import AIStatusCache
from biensperience.features.users.service import get_user
from biensperience.models.flags import FeatureFlagContext, FlagOptions


@pytest.fixture
def creator(make_user):
    make_user("creator")
    flags.add_feature_flag("creator", "ai_features", config={"model": "small"}, granted_by="root")
    return get_user("creator")


@pytest.fixture
def viewer(make_user):
    return make_user("viewer")


@pytest.fixture
def admin(make_user):
    return make_user("root", super_admin=True)


class TestNormalizeContext:
    @pytest.mark.parametrize("raw", ["entity_creator", "creator", " Owner ", "CREATOR"])
    def test_creator_aliases(self, raw):
        assert flags.normalize_context(raw) == FeatureFlagContext.ENTITY_CREATOR

    @pytest.mark.parametrize("raw", ["logged_in_user", "user", "Actor", " viewer"])
    def test_actor_aliases(self, raw):
        assert flags.normalize_context(raw) == FeatureFlagContext.LOGGED_IN_USER

    @pytest.mark.parametrize("raw", [None, "", "everyone", 42])
    def test_unknown_falls_back_to_creator(self, raw):
        assert flags.normalize_context(raw) == FeatureFlagContext.ENTITY_CREATOR


class TestHasFeatureFlag:
    def test_granted(self, creator):
        assert flags.has_feature_flag(creator, "AI_FEATURES") is True
        assert flags.has_feature_flag(creator, "beta_ui") is False

    def test_no_user(self):
        assert flags.has_feature_flag(None, "ai_features") is False

    def test_expired_grant(self, make_user):
        make_user("temp")
        expires = datetime.now(timezone.utc) + timedelta(days=1)
        flags.add_feature_flag("temp", "beta_ui", expires_at=expires)
        user = get_user("temp")

        assert flags.has_feature_flag(user, "beta_ui") is True
        later = expires + timedelta(seconds=1)
        assert flags.has_feature_flag(user, "beta_ui", now=later) is False
        assert flags.has_feature_flag(user, "beta_ui", now=later, check_expiry=False) is True

    def test_disabled_grant(self, creator):
        assert flags.disable_feature_flag("creator", "ai_features") is True
        assert flags.has_feature_flag(get_user("creator"), "ai_features") is False

    def test_super_admin(self, admin):
        assert flags.has_feature_flag(admin, "curator") is True
        assert flags.has_feature_flag(admin, "curator", allow_super_admin=False) is False


class TestEvaluateFlag:
    def test_creator_context_uses_creator_grants(self, creator, viewer):
        decision = flags.evaluate_flag(viewer, creator, "ai_features", "entity_creator")
        assert decision.allowed is True
        assert decision.context == FeatureFlagContext.ENTITY_CREATOR
        assert decision.reason == "granted"

    def test_logged_in_context_uses_actor_grants(self, creator, viewer):
        decision = flags.evaluate_flag(viewer, creator, "ai_features", "logged_in_user")
        assert decision.allowed is False
        assert decision.reason == "not_granted"

        decision = flags.evaluate_flag(creator, None, "ai_features", "user")
        assert decision.allowed is True

    def test_missing_creator_fails_closed(self, creator):
        decision = flags.evaluate_flag(creator, None, "ai_features", "entity_creator")
        assert decision.allowed is False
        assert decision.reason == "no_entity_creator"

    def test_missing_actor_fails_closed(self, creator):
        decision = flags.evaluate_flag(None, creator, "ai_features", FeatureFlagContext.LOGGED_IN_USER)
        assert decision.allowed is False
        assert decision.reason == "no_acting_user"

    def test_super_admin_actor_bypasses_any_context(self, admin, viewer):
        for context in FeatureFlagContext:
            decision = flags.evaluate_flag(admin, viewer, "ai_features", context)
            assert decision.allowed is True
            assert decision.super_admin_bypass is True
            assert decision.reason == "super_admin_bypass"

        decision = flags.evaluate_flag(admin, None, "ai_features", "entity_creator")
        assert decision.allowed is True

    def test_super_admin_creator_does_not_grant_viewer(self, admin, viewer):
        decision = flags.evaluate_flag(viewer, admin, "ai_features", "entity_creator")
        assert decision.allowed is False
        assert decision.super_admin_bypass is False

    def test_bypass_can_be_disabled(self, admin):
        decision = flags.evaluate_flag(admin, None, "ai_features", "user", FlagOptions(allow_super_admin=False))
        assert decision.allowed is False

    def test_require_flag_raises(self, creator, viewer):
        assert flags.require_flag(viewer, creator, "ai_features").allowed is True

        with pytest.raises(AuthorizationDeniedError) as exc_info:
            flags.require_flag(viewer, None, "ai_features")
        assert exc_info.value.code == "feature_flag_required"
        assert "AI-powered" in exc_info.value.message


class TestRegistryAndGlobals:
    def test_registry(self):
        assert set(flags.get_all_flags()) == {
            "ai_features",
            "beta_ui",
            "advanced_analytics",
            "real_time_collaboration",
            "document_ai_parsing",
            "bulk_export",
            "curator",
            "stream_chat",
        }
        assert flags.get_flag_metadata("curator").tier == "curator"
        assert flags.get_flag_metadata("nope") is None

    def test_global_flags_from_settings(self):
        cfg = Settings(FEATURE_MAINTENANCE_MODE=True, FEATURE_PUBLIC_API=False)
        assert flags.has_global_flag("maintenance_mode", cfg) is True
        assert flags.has_global_flag("PUBLIC_API", cfg) is False
        assert flags.has_global_flag("UNKNOWN", cfg) is False
        assert flags.get_global_flags(cfg)["NEW_USER_REGISTRATION"] is True

    def test_denial_payload(self):
        payload = flags.flag_denial_payload("bulk_export")
        assert payload["code"] == "FEATURE_FLAG_REQUIRED"
        assert payload["flag"] == "bulk_export"
        assert payload["tier"] == "premium"

        unknown = flags.flag_denial_payload("mystery", message="nope")
        assert unknown["message"] == "nope"


class TestGrantStorage:
    def test_regrant_replaces_and_reenables(self, creator):
        flags.disable_feature_flag("creator", "ai_features")
        flags.add_feature_flag("creator", "ai_features", config={"model": "large"})

        user = get_user("creator")
        assert len(user.feature_flags) == 1
        assert flags.has_feature_flag(user, "ai_features") is True
        assert flags.get_feature_flag_config(user, "ai_features") == {"model": "large"}

    def test_list_excludes_expired_unless_asked(self, creator):
        flags.add_feature_flag("creator", "beta_ui", expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        user = get_user("creator")

        assert [g.flag for g in flags.get_user_feature_flags(user)] == ["ai_features"]
        assert len(flags.get_user_feature_flags(user, include_expired=True)) == 2

    def test_remove(self, creator):
        assert flags.remove_feature_flag("creator", "ai_features") is True
        assert flags.remove_feature_flag("creator", "ai_features") is False
        assert flags.get_feature_flag_config(get_user("creator"), "ai_features") is None

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            flags.add_feature_flag("ghost", "ai_features")

    def test_blank_key(self, creator):
        with pytest.raises(ValidationError):
            flags.add_feature_flag("creator", "  ")


class TestAIStatusCache:
    def test_ttl_expiry(self, fake_time):
        cache = AIStatusCache(ttl_seconds=300, time_fn=fake_time)
        cache.set("u1", True)

        fake_time.advance(299)
        assert cache.get("u1") is True
        fake_time.advance(1)
        assert cache.get("u1") is None
        assert len(cache) == 0

    def test_get_or_compute_memoizes(self, fake_time):
        cache = AIStatusCache(ttl_seconds=60, time_fn=fake_time)
        calls = []

        def compute():
            calls.append(1)
            return True

        assert cache.get_or_compute("u1", compute) is True
        assert cache.get_or_compute("u1", compute) is True
        assert len(calls) == 1

        fake_time.advance(61)
        cache.get_or_compute("u1", compute)
        assert len(calls) == 2

    def test_invalidate_and_clear(self):
        cache = AIStatusCache()
        cache.set("u1", True)
        cache.set("u2", False)
        cache.invalidate("u1")
        assert cache.get("u1") is None
        assert cache.get("u2") is False
        cache.clear()
        assert len(cache) == 0

    def test_ai_available_uses_cache(self, creator, viewer, fake_time):
        cache = AIStatusCache(time_fn=fake_time)

        assert flags.ai_available(creator, cache) is True
        assert flags.ai_available(viewer, cache) is False
        assert flags.ai_available(None, cache) is False

        flags.add_feature_flag("viewer", "ai_features")
        assert flags.ai_available(get_user("viewer"), cache) is False
        cache.invalidate("viewer")
        assert flags.ai_available(get_user("viewer"), cache) is True
