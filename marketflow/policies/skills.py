"""Skill authorization predicates."""

from marketflow.types import Skill, User


def can_view_skill(actor: User, skill: Skill) -> bool:
    return skill.is_active or actor.id == skill.owner_id or actor.is_admin


def can_update_skill(actor: User, skill: Skill) -> bool:
    return actor.id == skill.owner_id


def can_delete_skill(actor: User, skill: Skill) -> bool:
    return actor.id == skill.owner_id or actor.is_admin


def can_contact_skill_provider(actor: User, skill: Skill) -> bool:
    return (
        actor.id != skill.owner_id
        and skill.is_available
        and skill.is_active
        and actor.is_verified_active
    )
