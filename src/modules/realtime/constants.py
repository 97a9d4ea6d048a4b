"""Realtime wire contract — event names, room naming, limits."""

from __future__ import annotations

import uuid

# Roles allowed to monitor conversations and broadcast announcements
ADMIN_ROLES: frozenset[str] = frozenset({"manager", "super_admin"})

# Room naming
CONVERSATION_ROOM_PREFIX = "conversation:"
USER_ROOM_PREFIX = "user:"
MONITOR_ROOM_PREFIX = "monitor:"

# Inbound (client -> server) events
EVENT_SEND_MESSAGE = "send_message"
EVENT_EDIT_MESSAGE = "edit_message"
EVENT_DELETE_MESSAGE = "delete_message"
EVENT_MARK_MESSAGE_READ = "mark_message_read"
EVENT_JOIN_CONVERSATION = "join_conversation"
EVENT_LEAVE_CONVERSATION = "leave_conversation"
EVENT_CREATE_CONVERSATION = "create_conversation"
EVENT_TYPING_START = "typing_start"
EVENT_TYPING_STOP = "typing_stop"
EVENT_UPDATE_PRESENCE = "update_presence"
EVENT_GET_ONLINE_USERS = "get_online_users"
EVENT_FILE_UPLOAD_START = "file_upload_start"
EVENT_FILE_UPLOAD_PROGRESS = "file_upload_progress"
EVENT_FILE_UPLOAD_COMPLETE = "file_upload_complete"
EVENT_MARK_NOTIFICATION_READ = "mark_notification_read"
EVENT_GET_UNREAD_COUNT = "get_unread_count"
EVENT_MONITOR_CONVERSATION = "monitor_conversation"
EVENT_BROADCAST_ANNOUNCEMENT = "broadcast_announcement"
EVENT_START_VOICE_CALL = "start_voice_call"
EVENT_START_VIDEO_CALL = "start_video_call"
EVENT_SCREEN_SHARE_START = "screen_share_start"

# Outbound (server -> client) broadcasts
EVENT_CONNECTION_ESTABLISHED = "connection_established"
EVENT_CONVERSATION_CREATED = "conversation_created"
EVENT_CONVERSATION_UPDATED = "conversation_updated"
EVENT_CONVERSATION_ARCHIVED = "conversation_archived"
EVENT_PARTICIPANTS_ADDED = "participants_added"
EVENT_PARTICIPANT_REMOVED = "participant_removed"
EVENT_CONVERSATION_READ = "conversation_read"
EVENT_USER_TYPING_START = "user_typing_start"
EVENT_USER_TYPING_STOP = "user_typing_stop"
EVENT_USER_STATUS_CHANGED = "user_status_changed"
EVENT_USER_PRESENCE_CHANGED = "user_presence_changed"
EVENT_USER_JOINED_CONVERSATION = "user_joined_conversation"
EVENT_USER_LEFT_CONVERSATION = "user_left_conversation"
EVENT_NOTIFICATION_RECEIVED = "notification_received"
EVENT_MESSAGE_RECEIVED = "message_received"
EVENT_MESSAGE_UPDATED = "message_updated"
EVENT_MESSAGE_REMOVED = "message_removed"
EVENT_MESSAGE_DELIVERED = "message_delivered"
EVENT_MESSAGE_READ = "message_read"
EVENT_FILE_UPLOAD_STARTED = "file_upload_started"
EVENT_FILE_UPLOAD_PROGRESS_UPDATE = "file_upload_progress_update"
EVENT_FILE_UPLOAD_COMPLETED = "file_upload_completed"
EVENT_INCOMING_CALL = "incoming_call"
EVENT_SCREEN_SHARE_STARTED = "screen_share_started"
EVENT_SYSTEM_ANNOUNCEMENT = "system_announcement"
EVENT_FORCE_DISCONNECT = "force_disconnect"
EVENT_ERROR = "error"

# Acknowledgements sent back to the originating connection only
ACK_MESSAGE_SENT = "message_sent"
ACK_MESSAGE_EDITED = "message_edited"
ACK_MESSAGE_DELETED = "message_deleted"
ACK_MESSAGE_READ = "message_read_confirmed"
ACK_CONVERSATION_JOINED = "conversation_joined"
ACK_CONVERSATION_LEFT = "conversation_left"
ACK_CONVERSATION_CREATED = "conversation_created"
ACK_PRESENCE_UPDATED = "presence_updated"
ACK_ONLINE_USERS = "online_users_list"
ACK_FILE_UPLOAD_INITIATED = "file_upload_initiated"
ACK_FILE_UPLOAD_SUCCESS = "file_upload_success"
ACK_NOTIFICATION_READ = "notification_read_confirmed"
ACK_UNREAD_COUNT = "unread_count_update"
ACK_MONITORING_STARTED = "monitoring_started"
ACK_MONITORING_STOPPED = "monitoring_stopped"
ACK_ANNOUNCEMENT_SENT = "announcement_sent"
ACK_CALL_INITIATED = "call_initiated"
ACK_SCREEN_SHARE_INITIATED = "screen_share_initiated"

# WebSocket close codes
CLOSE_POLICY_VIOLATION = 1008
CLOSE_GOING_AWAY = 1001


def conversation_room(conversation_id: uuid.UUID | str) -> str:
    return f"{CONVERSATION_ROOM_PREFIX}{conversation_id}"


def user_room(user_id: uuid.UUID | str) -> str:
    return f"{USER_ROOM_PREFIX}{user_id}"


def monitor_room(conversation_id: uuid.UUID | str) -> str:
    return f"{MONITOR_ROOM_PREFIX}{conversation_id}"
