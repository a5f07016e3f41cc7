"""
biensperience/tests/test_entity_lifecycle.py
Entity creation writes an owner entry; deletion removes every entry.
"""

import pytest
from sqlalchemy import select

from biensperience.core.database import entity_permissions, get_db_session
from biensperience.core.errors import AuthorizationDeniedError, ConflictError, NotFoundError, ValidationError
from biensperience.features.permissions.entities import DestinationEntity, ExperienceEntity, PhotoEntity
from biensperience.features.permissions.lifecycle import (
    create_photo,
    delete_entity,
    get_destination,
    get_experience,
    replace_plan_items,
)
from biensperience.features.permissions.service import add_permission, get_role
from biensperience.features.users.service import get_user, get_user_by_email, require_user
from biensperience.models.entity import CreatePhotoRequest, ExperiencePlanItem
from biensperience.models.permission import Role


def _entry_count(kind, entity_id):
    with get_db_session() as session:
        return len(
            session.execute(
                select(entity_permissions.c.id)
                .where(entity_permissions.c.entity_kind == kind)
                .where(entity_permissions.c.entity_id == entity_id)
            ).fetchall()
        )


class TestUsers:
    def test_email_is_normalized(self, make_user):
        make_user("dana", email="  Dana@Example.COM ")
        assert get_user("dana").email == "dana@example.com"
        assert get_user_by_email("DANA@example.com").user_id == "dana"

    def test_duplicate_email_conflicts(self, make_user):
        make_user("dana", email="dana@example.com")
        with pytest.raises(ConflictError):
            make_user("dana2", email="dana@example.com")

    def test_super_admin_role(self, make_user):
        admin = make_user("root", super_admin=True)
        assert admin.super_admin is True
        assert get_user("root").is_super_admin is True

    def test_display_name_falls_back_to_email(self, make_user):
        make_user("erin", email="erin.w@example.com", name=" ")
        assert get_user("erin").display_name == "erin.w"

    def test_require_user(self):
        assert get_user(None) is None
        with pytest.raises(NotFoundError):
            require_user("ghost")


class TestCreation:
    def test_experience_round_trips_items_in_order(self, make_user, make_experience):
        make_user("alice")
        created = make_experience("alice")

        loaded = get_experience(created.experience_id)
        assert [item.plan_item_id for item in loaded.plan_items] == ["i1", "i2"]
        assert loaded.plan_items[1].url == "https://inari.jp"
        assert get_role(ExperienceEntity(created.experience_id), "alice") == Role.OWNER

    def test_duplicate_plan_item_ids_rejected(self, make_user, make_experience):
        make_user("alice")
        with pytest.raises(ValidationError) as exc_info:
            make_experience("alice", items=[{"plan_item_id": "x"}, {"plan_item_id": "x"}])
        assert exc_info.value.field == "plan_items"

    def test_unknown_destination_rejected(self, make_user, make_experience):
        make_user("alice")
        with pytest.raises(ValidationError):
            make_experience("alice", destination_id="nowhere")

    def test_unknown_creator_writes_nothing(self, make_destination):
        with pytest.raises(NotFoundError):
            make_destination("ghost")

    def test_destination_and_photo_get_owner_entries(self, make_user, make_destination):
        make_user("alice")
        destination = make_destination("alice")
        photo = create_photo("alice", CreatePhotoRequest(url="https://img.example/a.jpg", caption="Gion"))

        assert get_destination(destination.destination_id).country == "Japan"
        assert _entry_count("destination", destination.destination_id) == 1
        assert get_role(PhotoEntity(photo.photo_id), "alice") == Role.OWNER


class TestReplacePlanItems:
    def test_replaces_items(self, make_user, make_experience):
        make_user("alice")
        experience = make_experience("alice")

        updated = replace_plan_items(
            experience.experience_id,
            [ExperiencePlanItem(plan_item_id="n1", text="Nishiki market")],
        )
        assert [item.plan_item_id for item in updated.plan_items] == ["n1"]

    def test_requires_edit_permission(self, make_user, make_experience):
        make_user("alice")
        make_user("mallory")
        experience = make_experience("alice")

        with pytest.raises(AuthorizationDeniedError):
            replace_plan_items(experience.experience_id, [], actor="mallory")

    def test_missing_experience(self):
        with pytest.raises(NotFoundError):
            replace_plan_items("nope", [])


class TestDeletion:
    def test_delete_removes_all_entries(self, make_user, make_experience):
        make_user("alice")
        make_user("bob")
        experience = make_experience("alice")
        entity = ExperienceEntity(experience.experience_id)
        add_permission(entity, "user", "bob", "collaborator")
        assert _entry_count("experience", experience.experience_id) == 2

        assert delete_entity(entity, actor="alice") is True
        assert get_experience(experience.experience_id) is None
        assert _entry_count("experience", experience.experience_id) == 0

    def test_collaborator_cannot_delete(self, make_user, make_destination):
        make_user("alice")
        make_user("bob")
        destination = make_destination("alice")
        entity = DestinationEntity(destination.destination_id)
        add_permission(entity, "user", "bob", "collaborator")

        with pytest.raises(AuthorizationDeniedError):
            delete_entity(entity, actor="bob")
        assert get_destination(destination.destination_id) is not None

    def test_super_admin_can_delete(self, make_user, make_destination):
        make_user("alice")
        make_user("root", super_admin=True)
        destination = make_destination("alice")

        delete_entity(DestinationEntity(destination.destination_id), actor="root")
        assert get_destination(destination.destination_id) is None

    def test_delete_missing(self):
        with pytest.raises(NotFoundError):
            delete_entity(PhotoEntity("nope"))

    def test_delete_missing_with_actor_is_not_found(self, make_user):
        make_user("alice")
        with pytest.raises(NotFoundError):
            delete_entity(PhotoEntity("nope"), actor="alice")
        with pytest.raises(NotFoundError):
            replace_plan_items("nope", [], actor="alice")

    def test_delete_removes_inheritance_entries(self, make_user, make_experience, make_destination):
        make_user("alice")
        experience = make_experience("alice")
        destination = make_destination("alice")
        add_permission(ExperienceEntity(experience.experience_id), "destination", destination.destination_id, "collaborator")
        assert _entry_count("experience", experience.experience_id) == 2

        delete_entity(DestinationEntity(destination.destination_id), actor="alice")
        assert _entry_count("experience", experience.experience_id) == 1
