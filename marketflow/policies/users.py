"""User account authorization predicates."""

from marketflow.types import User


def can_view_user(actor: User, user: User) -> bool:
    return actor.id == user.id or actor.is_admin


def can_update_user(actor: User, user: User) -> bool:
    return actor.id == user.id


def can_block_user(actor: User, target: User) -> bool:
    """Users cannot block themselves or an admin."""
    return actor.id != target.id and not target.is_admin
