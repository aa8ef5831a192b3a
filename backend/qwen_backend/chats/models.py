from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Iterable, Literal, Sequence
from uuid import uuid4

__all__ = [
    "DEFAULT_TITLE",
    "UNTITLED_TITLE",
    "ChatSession",
    "FileMessage",
    "FileReference",
    "Message",
    "SystemMessage",
    "TextMessage",
    "fold_attached_files",
    "format_file_context",
    "generate_title",
    "new_id",
]

Role = Literal["user", "assistant", "system"]

DEFAULT_TITLE = "New Chat"
UNTITLED_TITLE = "Untitled Chat"
TITLE_MAX_LENGTH = 50
ELLIPSIS = "..."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


def generate_title(first_message: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """Derive a session title from the first user message."""
    cleaned = re.sub(r"\r?\n", " ", (first_message or "").strip())
    if not cleaned:
        return DEFAULT_TITLE
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - len(ELLIPSIS)].rstrip() + ELLIPSIS


@dataclass(frozen=True, slots=True)
class FileReference:
    id: str
    name: str
    mime_type: str
    size: int
    url: str | None = None
    storage_path: str | None = None

    def describe(self) -> str:
        size_mb = self.size / 1024 / 1024
        return f"[File: {self.name} - {self.mime_type} - {size_mb:.2f}MB]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.mime_type,
            "size": self.size,
            "url": self.url,
            "storagePath": self.storage_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileReference":
        size = data.get("size")
        return cls(
            id=str(data.get("id") or new_id("file")),
            name=str(data.get("name") or "Unnamed file"),
            mime_type=str(data.get("type") or data.get("mimeType") or "application/octet-stream"),
            size=size if isinstance(size, int) and size >= 0 else 0,
            url=data.get("url"),
            storage_path=data.get("storagePath"),
        )


def format_file_context(files: Iterable[FileReference], content: str) -> str:
    """Prefix message content with one descriptor line per file."""
    lines = [ref.describe() for ref in files]
    if not lines:
        return content
    header = "\n".join(lines)
    return f"{header}\n\n{content}" if content else header


def fold_attached_files(history: Sequence[dict[str, str]], files: Iterable[FileReference]) -> list[dict[str, str]]:
    """Copy `history`, describing `files` at the top of the last user message."""
    folded = [dict(item) for item in history]
    refs = list(files)
    if not refs:
        return folded
    for item in reversed(folded):
        if item.get("role") == "user":
            item["content"] = format_file_context(refs, item.get("content", ""))
            break
    return folded


@dataclass(slots=True)
class Message:
    """Base of the message union; ``kind`` tags the concrete variant."""

    kind: ClassVar[str] = "text"

    id: str
    role: Role
    content: str = ""
    timestamp: datetime = field(default_factory=_now)
    is_loading: bool = False

    def append_delta(self, delta: str) -> None:
        if not self.is_loading:
            raise ValueError(f"Message {self.id} is not streaming")
        self.content += delta

    def finish(self) -> None:
        if not self.is_loading:
            raise ValueError(f"Message {self.id} is already finished")
        self.is_loading = False

    def wire_content(self) -> str:
        return self.content

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.wire_content()}

    def copy(self) -> "Message":
        return replace(self)


@dataclass(slots=True)
class TextMessage(Message):
    kind: ClassVar[str] = "text"


@dataclass(slots=True)
class FileMessage(Message):
    kind: ClassVar[str] = "file"

    files: tuple[FileReference, ...] = ()

    def wire_content(self) -> str:
        return format_file_context(self.files, self.content)


@dataclass(slots=True)
class SystemMessage(Message):
    """Local notice shown in the conversation; never sent to the model."""

    kind: ClassVar[str] = "system"

    role: Role = "system"


MESSAGE_TYPES: dict[str, type[Message]] = {
    TextMessage.kind: TextMessage,
    FileMessage.kind: FileMessage,
    SystemMessage.kind: SystemMessage,
}


@dataclass(slots=True)
class ChatSession:
    id: str
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    attached_files: dict[str, FileReference] = field(default_factory=dict)
    owner_id: str | None = None
    provisional: bool = False

    def touch(self) -> None:
        self.updated_at = _now()

    def loading_message(self) -> Message | None:
        return next((message for message in self.messages if message.is_loading), None)

    def find_message(self, message_id: str) -> Message | None:
        return next((message for message in self.messages if message.id == message_id), None)

    def append(self, message: Message) -> None:
        if message.is_loading and self.loading_message() is not None:
            raise ValueError(f"Session {self.id} already has a message in progress")
        self.messages.append(message)
        self.touch()

    def remove_message(self, message_id: str) -> bool:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                del self.messages[index]
                self.touch()
                return True
        return False

    def attach_file(self, ref: FileReference) -> None:
        self.attached_files[ref.id] = ref
        self.touch()

    def detach_file(self, file_id: str) -> bool:
        if self.attached_files.pop(file_id, None) is None:
            return False
        self.touch()
        return True

    def history(self) -> list[dict[str, str]]:
        """Role/content pairs for the completion request, without placeholders or notices."""
        return [
            message.to_wire()
            for message in self.messages
            if not message.is_loading and message.kind != SystemMessage.kind
        ]

    def copy(self) -> "ChatSession":
        return replace(
            self,
            messages=[message.copy() for message in self.messages],
            attached_files=dict(self.attached_files),
        )


def sort_sessions(sessions: Sequence[ChatSession]) -> list[ChatSession]:
    return sorted(sessions, key=lambda session: session.updated_at, reverse=True)
