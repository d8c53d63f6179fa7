from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]
ROLES = ("user", "assistant")


class Operation(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RESTORE = "restore"


# ---------------------------------------------------------------------------
# Inbound wire messages
# ---------------------------------------------------------------------------
class GenerationOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())

    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", ge=1)
    model: Optional[str] = None


class ClientMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    command: str = Field(min_length=1)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    message: str = ""
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    file_path: Optional[str] = Field(default=None, alias="filePath")


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------
@dataclass
class Turn:
    role: str
    content: str


@dataclass
class Conversation:
    conversation_id: str
    history: List[Turn] = field(default_factory=list)
    continuation_token: Optional[Any] = None


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------
@dataclass
class GenerationRequest:
    conversation_id: str
    prompt: str
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None
    continuation_token: Optional[Any] = None


@dataclass
class GenerationResult:
    text: str
    model: str
    continuation_token: Optional[Any] = None
    timing: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Chunk:
    text: str


@dataclass(frozen=True)
class Done:
    final_text: str
    model: str
    continuation_token: Optional[Any] = None
    timing: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Failure:
    error: str
    status_code: Optional[int] = None


StreamEvent = Union[Chunk, Done, Failure]


# ---------------------------------------------------------------------------
# File commands
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CodeCommand:
    operation: Operation
    file_path: str
    content: str = ""
    section: Optional[str] = None


@dataclass
class PatchResult:
    file_path: str
    operation: Operation
    success: bool
    section: Optional[str] = None
    error: Optional[str] = None
    backup_path: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "filePath": self.file_path,
            "operation": self.operation.value,
            "success": self.success,
        }
        if self.section:
            payload["section"] = self.section
        if self.error:
            payload["error"] = self.error
        if self.backup_path:
            payload["backupPath"] = self.backup_path
        return payload


@dataclass(frozen=True)
class BackupRecord:
    created_at: str
    backup_path: str
