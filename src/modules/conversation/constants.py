"""Conversation defaults, permission keys and system-message templates."""

from __future__ import annotations

from src.models.enums import ConversationPurpose

# Participant permission keys
PERMISSION_SEND_MESSAGES = "can_send_messages"
PERMISSION_SEND_FILES = "can_send_files"
PERMISSION_ADD_MEMBERS = "can_add_members"
PERMISSION_REMOVE_MEMBERS = "can_remove_members"
PERMISSION_EDIT_CONVERSATION = "can_edit_conversation"

ALL_PERMISSIONS: tuple[str, ...] = (
    PERMISSION_SEND_MESSAGES,
    PERMISSION_SEND_FILES,
    PERMISSION_ADD_MEMBERS,
    PERMISSION_REMOVE_MEMBERS,
    PERMISSION_EDIT_CONVERSATION,
)

# Purposes whose ordinary members may invite others
OPEN_MEMBERSHIP_PURPOSES: frozenset[ConversationPurpose] = frozenset(
    {ConversationPurpose.GENERAL, ConversationPurpose.SUPPORT}
)

# System event tags stored in Message.metadata_extra["system_event"]
SYSTEM_EVENT_CONVERSATION_CREATED = "conversation_created"
SYSTEM_EVENT_PARTICIPANTS_ADDED = "participants_added"
SYSTEM_EVENT_PARTICIPANT_LEFT = "participant_left"
SYSTEM_EVENT_PARTICIPANT_REMOVED = "participant_removed"

DEFAULT_GROUP_NAME = "Group Chat"

# Roles with a monitoring (non-participant) view of conversations
MONITOR_ROLES: frozenset[str] = frozenset({"manager", "super_admin"})

# Message types that need the file permission
FILE_MESSAGE_TYPES: frozenset[str] = frozenset({"image", "video", "file"})
