"""Per-chat configuration: administrator, target playlist and downvote threshold."""

from __future__ import annotations

import logging
from typing import Any

from config.settings import DEFAULT_DOWNVOTE_THRESHOLD
from db.kv_store import KeyValueStore
from engine.concurrency import run_with_retry
from engine.errors import ChatNotConfigured, InvalidConfiguration
from engine.models import ChatSettings

CHATS_TABLE = "group_chats"
_CHAT_PARTITION = "GROUPCHAT"

_UNSET: Any = object()


def validate_threshold(value: Any) -> int:
    """Return ``value`` as a positive int or raise ``InvalidConfiguration``."""
    if isinstance(value, str) and value.strip().isdigit():
        threshold = int(value.strip())
    elif isinstance(value, int) and not isinstance(value, bool):
        threshold = value
    else:
        raise InvalidConfiguration("downvote_threshold must be a positive integer")
    if threshold <= 0:
        raise InvalidConfiguration("downvote_threshold must be a positive integer")
    return threshold


class ChatSettingsStore:
    def __init__(self, store: KeyValueStore, *, default_threshold: int = DEFAULT_DOWNVOTE_THRESHOLD) -> None:
        self.store = store
        self.default_threshold = validate_threshold(default_threshold)

    def get(self, chat_id: str) -> ChatSettings | None:
        entity = self.store.get(CHATS_TABLE, _CHAT_PARTITION, str(chat_id))
        if entity is None:
            return None
        return ChatSettings.from_entity(entity)

    def require(self, chat_id: str) -> ChatSettings:
        settings = self.get(chat_id)
        if settings is None:
            raise ChatNotConfigured(str(chat_id))
        return settings

    def threshold_for(self, chat_id: str) -> int:
        settings = self.get(chat_id)
        if settings is None:
            return self.default_threshold
        return settings.downvote_threshold

    def configure(
        self,
        chat_id: str,
        *,
        administrator_id: Any = _UNSET,
        playlist_id: Any = _UNSET,
        playlist_name: Any = _UNSET,
        downvote_threshold: Any = _UNSET,
    ) -> ChatSettings:
        """Create or update a chat's settings; invalid values are rejected before any write."""
        chat_id = str(chat_id or "").strip()
        if not chat_id:
            raise InvalidConfiguration("chat_id is required")
        threshold = None if downvote_threshold is _UNSET else validate_threshold(downvote_threshold)

        def attempt() -> ChatSettings:
            current = self.get(chat_id)
            if current is None:
                if administrator_id is _UNSET or not str(administrator_id or "").strip():
                    raise InvalidConfiguration("administrator_id is required for a new chat")
                settings = ChatSettings(
                    chat_id=chat_id,
                    administrator_id=str(administrator_id),
                    downvote_threshold=self.default_threshold,
                )
            else:
                settings = current
            if administrator_id is not _UNSET and str(administrator_id or "").strip():
                settings.administrator_id = str(administrator_id)
            if playlist_id is not _UNSET:
                settings.playlist_id = (str(playlist_id).strip() or None) if playlist_id else None
            if playlist_name is not _UNSET:
                settings.playlist_name = playlist_name or None
            if threshold is not None:
                settings.downvote_threshold = threshold

            table = self.store.table(CHATS_TABLE)
            if current is None:
                entity = table.put(_CHAT_PARTITION, chat_id, settings.to_payload(), if_absent=True)
            else:
                entity = table.put(_CHAT_PARTITION, chat_id, settings.to_payload(), if_version=current.version)
            settings.version = entity.version
            return settings

        settings = run_with_retry(attempt, label=f"configure chat {chat_id}")
        logging.info(
            "Chat %s configured: playlist=%s threshold=%s administrator=%s",
            chat_id,
            settings.playlist_id,
            settings.downvote_threshold,
            settings.administrator_id,
        )
        return settings
