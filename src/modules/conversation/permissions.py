"""Default participant permissions by conversation purpose."""

from __future__ import annotations

from src.models.enums import ConversationPurpose
from src.modules.conversation.constants import (
    ALL_PERMISSIONS,
    OPEN_MEMBERSHIP_PURPOSES,
    PERMISSION_ADD_MEMBERS,
    PERMISSION_SEND_FILES,
    PERMISSION_SEND_MESSAGES,
)


def get_default_permissions(purpose: ConversationPurpose | str, is_admin: bool) -> dict[str, bool]:
    """Permission map a new participant receives.

    Admins (the creator) get every permission. Other members may send
    messages and files; in general and support conversations they may also
    add members.
    """
    if is_admin:
        return {key: True for key in ALL_PERMISSIONS}

    permissions = {key: False for key in ALL_PERMISSIONS}
    permissions[PERMISSION_SEND_MESSAGES] = True
    permissions[PERMISSION_SEND_FILES] = True
    if ConversationPurpose(purpose) in OPEN_MEMBERSHIP_PURPOSES:
        permissions[PERMISSION_ADD_MEMBERS] = True
    return permissions


def has_permission(permissions: dict | None, key: str) -> bool:
    return bool((permissions or {}).get(key, False))
