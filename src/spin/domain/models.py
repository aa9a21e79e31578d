from __future__ import annotations

from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


# Mapping of relative file path -> file content for one project snapshot.
FileState = Dict[str, str]

ChangeStatus = Literal["new", "updated", "deleted"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class FileChange(_CamelModel):
    path: str
    status: ChangeStatus
    previous_content: Optional[str] = Field(default=None, alias="previousContent")


class UploadedFile(_CamelModel):
    id: Union[int, str]
    name: str
    type: str = ""
    size: int = 0
    content: str = ""
    last_modified: Optional[int] = Field(default=None, alias="lastModified")

    @property
    def is_data_url(self) -> bool:
        return self.content.startswith("data:")


class ConversationTurn(_CamelModel):
    prompt: str
    timestamp: str
    file_changes: List[FileChange] = Field(default_factory=list, alias="fileChanges")
    full_state: FileState = Field(default_factory=dict, alias="fullState")


class Conversation(_CamelModel):
    id: str
    user_id: str = Field(alias="userId")
    initial_prompt: str = Field(alias="initialPrompt")
    uploaded_files: List[UploadedFile] = Field(default_factory=list, alias="uploadedFiles")
    conversation_turns: List[ConversationTurn] = Field(default_factory=list, alias="conversationTurns")
    current_files: FileState = Field(default_factory=dict, alias="currentFiles")
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")


class GenerateRequest(_CamelModel):
    prompt: Optional[str] = None
    existing_files: Optional[FileState] = Field(default=None, alias="existingFiles")
    uploaded_files: Optional[List[UploadedFile]] = Field(default=None, alias="uploadedFiles")
    streaming: bool = False
    user_id: str = Field(default="anonymous", alias="userId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    is_iterative_update: bool = Field(default=False, alias="isIterativeUpdate")


class GenerateResponse(_CamelModel):
    files: FileState
    full_files: FileState = Field(alias="fullFiles")
    changed_files: List[FileChange] = Field(alias="changedFiles")
    conversation_id: str = Field(alias="conversationId")
    user_id: str = Field(alias="userId")
    is_iterative_update: bool = Field(alias="isIterativeUpdate")


