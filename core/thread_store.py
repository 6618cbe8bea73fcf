"""Conversation/message persistence and the materialized-path thread tree."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from base_classes import NotFoundError, StorageError, UserInputError
from utils.storage_utils import SQLiteProvider, TableSchema

ROLES = ('user', 'assistant', 'system')
SEARCH_LIMIT = 50
PATH_SEPARATOR = '.'


def _now() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def child_thread_path(parent_id: int, parent_path: Optional[str]) -> str:
    """Thread path for a new child of ``parent_id``."""
    if parent_path:
        return f"{parent_path}{PATH_SEPARATOR}{parent_id}"
    return str(parent_id)


@dataclass
class Conversation:
    id: int
    title: str
    created_at: str
    updated_at: str
    parent_id: Optional[int] = None
    thread_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    message_count: int = 0
    last_message_at: Optional[str] = None

    @property
    def path_ids(self) -> List[int]:
        if not self.thread_path:
            return []
        return [int(p) for p in self.thread_path.split(PATH_SEPARATOR)]

    @property
    def subtree_path(self) -> str:
        """This conversation's own path-plus-id; the prefix shared by its descendants."""
        return child_thread_path(self.id, self.thread_path)

    @property
    def depth(self) -> int:
        return len(self.path_ids)


@dataclass
class Message:
    id: int
    conversation_id: int
    role: str
    content: str
    created_at: str
    model: Optional[str] = None
    token_count: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


CONVERSATIONS_SCHEMA = TableSchema(
    name="conversations",
    columns=[
        {"name": "id", "type": "INTEGER PRIMARY KEY AUTOINCREMENT"},
        {"name": "title", "type": "TEXT NOT NULL"},
        {"name": "created_at", "type": "TEXT NOT NULL"},
        {"name": "updated_at", "type": "TEXT NOT NULL"},
        {"name": "parent_id", "type": "INTEGER"},
        {"name": "thread_path", "type": "TEXT"},
        {"name": "metadata", "type": "TEXT"},
    ],
    indexes=["thread_path", "parent_id"],
    constraints=["FOREIGN KEY(parent_id) REFERENCES conversations(id)"],
)

MESSAGES_SCHEMA = TableSchema(
    name="messages",
    columns=[
        {"name": "id", "type": "INTEGER PRIMARY KEY AUTOINCREMENT"},
        {"name": "conversation_id", "type": "INTEGER NOT NULL"},
        {"name": "role", "type": "TEXT NOT NULL"},
        {"name": "content", "type": "TEXT NOT NULL"},
        {"name": "created_at", "type": "TEXT NOT NULL"},
        {"name": "token_count", "type": "INTEGER"},
        {"name": "model", "type": "TEXT"},
        {"name": "metadata", "type": "TEXT"},
    ],
    indexes=["conversation_id"],
    constraints=["FOREIGN KEY(conversation_id) REFERENCES conversations(id)"],
)

_CONVERSATION_COLUMNS = """
    c.id, c.title, c.created_at, c.updated_at, c.parent_id, c.thread_path, c.metadata,
    COUNT(DISTINCT m.id) AS message_count,
    MAX(m.created_at) AS last_message_at
"""


class ThreadStore:
    """
    Data access for conversations and messages.

    Pure storage: knows nothing about the UI or the model. Every operation
    that takes a conversation id raises NotFoundError when it does not exist.
    """

    def __init__(self, provider: SQLiteProvider, logger: Optional[Any] = None) -> None:
        self.provider = provider
        self.logger = logger
        self.provider.init_tables([CONVERSATIONS_SCHEMA, MESSAGES_SCHEMA])

    @classmethod
    def open(cls, db_path: str, logger: Optional[Any] = None, enable_wal: bool = False) -> 'ThreadStore':
        return cls(SQLiteProvider(db_path, logger=logger, enable_wal=enable_wal), logger=logger)

    def close(self) -> None:
        # Connections are per-call; nothing is held open between operations
        if self.logger:
            self.logger.storage_event('closed', {'db_path': self.provider.db_path})

    # --- conversations ----------------------------------------------------
    def create_conversation(
            self,
            title: Optional[str] = None,
            parent_id: Optional[int] = None,
            metadata: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        thread_path = None
        if parent_id is not None:
            parent = self.get_conversation(parent_id)
            thread_path = child_thread_path(parent.id, parent.thread_path)

        now = _now()
        if not title:
            title = f"Conversation {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        conversation_id = self.provider.execute_insert(
            """INSERT INTO conversations (title, created_at, updated_at, parent_id, thread_path, metadata)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (title, now, now, parent_id, thread_path, json.dumps(metadata or {})),
        )
        if self.logger:
            self.logger.storage_event('conversation_created', {
                'conversation_id': conversation_id,
                'parent_id': parent_id,
                'thread_path': thread_path,
            })
        return Conversation(
            id=conversation_id,
            title=title,
            created_at=now,
            updated_at=now,
            parent_id=parent_id,
            thread_path=thread_path,
            metadata=dict(metadata or {}),
        )

    def get_conversation(self, conversation_id: int) -> Conversation:
        rows = self.provider.execute(
            f"""SELECT {_CONVERSATION_COLUMNS}
                FROM conversations c
                LEFT JOIN messages m ON c.id = m.conversation_id
                WHERE c.id = ?
                GROUP BY c.id""",
            (conversation_id,),
        )
        if not rows:
            raise NotFoundError(f"Conversation {conversation_id} does not exist")
        return self._conversation_from_row(rows[0])

    def recent_conversations(self, limit: int = 50) -> List[Conversation]:
        """Top-level conversations, most recently updated first."""
        rows = self.provider.execute(
            f"""SELECT {_CONVERSATION_COLUMNS}
                FROM conversations c
                LEFT JOIN messages m ON c.id = m.conversation_id
                WHERE c.parent_id IS NULL
                GROUP BY c.id
                ORDER BY c.updated_at DESC, c.id DESC
                LIMIT ?""",
            (limit,),
        )
        return [self._conversation_from_row(row) for row in rows]

    def get_thread(self, conversation_id: int) -> List[Conversation]:
        """The conversation and every descendant, ordered by creation time."""
        conversation = self.get_conversation(conversation_id)
        prefix = conversation.subtree_path
        rows = self.provider.execute(
            f"""SELECT {_CONVERSATION_COLUMNS}
                FROM conversations c
                LEFT JOIN messages m ON c.id = m.conversation_id
                WHERE c.id = ?
                   OR c.thread_path = ?
                   OR substr(c.thread_path, 1, ?) = ?
                GROUP BY c.id
                ORDER BY c.created_at ASC, c.id ASC""",
            (conversation.id, prefix, len(prefix) + 1, prefix + PATH_SEPARATOR),
        )
        return [self._conversation_from_row(row) for row in rows]

    def children(self, conversation_id: int) -> List[Conversation]:
        self.get_conversation(conversation_id)
        rows = self.provider.execute(
            f"""SELECT {_CONVERSATION_COLUMNS}
                FROM conversations c
                LEFT JOIN messages m ON c.id = m.conversation_id
                WHERE c.parent_id = ?
                GROUP BY c.id
                ORDER BY c.created_at ASC, c.id ASC""",
            (conversation_id,),
        )
        return [self._conversation_from_row(row) for row in rows]

    def search(self, query: str) -> List[Conversation]:
        """Substring match on titles and message content, most recently updated first."""
        if not query or not query.strip():
            raise UserInputError("Search query required")
        pattern = f"%{self._escape_like(query)}%"
        rows = self.provider.execute(
            f"""SELECT {_CONVERSATION_COLUMNS}
                FROM conversations c
                LEFT JOIN messages m ON c.id = m.conversation_id
                WHERE c.title LIKE ? ESCAPE '\\'
                   OR c.id IN (
                       SELECT DISTINCT conversation_id
                       FROM messages
                       WHERE content LIKE ? ESCAPE '\\'
                   )
                GROUP BY c.id
                ORDER BY c.updated_at DESC, c.id DESC
                LIMIT ?""",
            (pattern, pattern, SEARCH_LIMIT),
        )
        return [self._conversation_from_row(row) for row in rows]

    def delete_conversation(self, conversation_id: int) -> None:
        """
        Delete a childless conversation and its messages.

        Conversations that still have children are refused: deleting them would
        leave the children's thread paths pointing at a missing ancestor.
        """
        self.get_conversation(conversation_id)
        child_count = self.provider.execute(
            "SELECT COUNT(*) FROM conversations WHERE parent_id = ?",
            (conversation_id,),
        )[0][0]
        if child_count:
            raise UserInputError(
                f"Thread {conversation_id} has {child_count} branch(es); delete those first"
            )
        with self.provider.transaction() as cursor:
            cursor.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cursor.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        if self.logger:
            self.logger.storage_event('conversation_deleted', {'conversation_id': conversation_id})

    # --- messages -----------------------------------------------------------
    def append_message(
            self,
            conversation_id: int,
            role: str,
            content: str,
            model: Optional[str] = None,
            token_count: Optional[int] = None,
            metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        if role not in ROLES:
            raise UserInputError(f"Invalid role '{role}'")
        self.get_conversation(conversation_id)
        now = _now()
        with self.provider.transaction() as cursor:
            cursor.execute(
                """INSERT INTO messages (conversation_id, role, content, created_at, token_count, model, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conversation_id, role, content, now, token_count, model, json.dumps(metadata or {})),
            )
            message_id = cursor.lastrowid
            cursor.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
        if self.logger:
            self.logger.storage_event('message_saved', {
                'message_id': message_id,
                'conversation_id': conversation_id,
                'role': role,
            })
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=now,
            model=model,
            token_count=token_count,
            metadata=dict(metadata or {}),
        )

    def get_history(self, conversation_id: int) -> List[Message]:
        self.get_conversation(conversation_id)
        rows = self.provider.execute(
            """SELECT id, conversation_id, role, content, created_at, model, token_count, metadata
               FROM messages
               WHERE conversation_id = ?
               ORDER BY created_at ASC, id ASC""",
            (conversation_id,),
        )
        return [
            Message(
                id=row['id'],
                conversation_id=row['conversation_id'],
                role=row['role'],
                content=row['content'],
                created_at=row['created_at'],
                model=row['model'],
                token_count=row['token_count'],
                metadata=self._load_metadata(row['metadata']),
            )
            for row in rows
        ]

    def export_conversation(self, conversation_id: int, path: str) -> str:
        """Write the conversation as a Markdown transcript and return the path."""
        conversation = self.get_conversation(conversation_id)
        history = self.get_history(conversation_id)
        lines = [f"# {conversation.title}", ""]
        for message in history:
            header = f"## {message.role}"
            if message.model:
                header += f" ({message.model})"
            lines.extend([header, "", message.content, ""])
        path = os.path.expanduser(path)
        try:
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                f.write("\n".join(lines))
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e
        if self.logger:
            self.logger.storage_event('conversation_exported', {'conversation_id': conversation_id, 'path': path})
        return path

    # --- helpers --------------------------------------------------------------
    @staticmethod
    def _escape_like(text: str) -> str:
        return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')

    @staticmethod
    def _load_metadata(raw: Optional[str]) -> Dict[str, Any]:
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _conversation_from_row(self, row) -> Conversation:
        return Conversation(
            id=row['id'],
            title=row['title'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            parent_id=row['parent_id'],
            thread_path=row['thread_path'],
            metadata=self._load_metadata(row['metadata']),
            message_count=row['message_count'] or 0,
            last_message_at=row['last_message_at'],
        )
