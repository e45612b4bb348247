"""Pydantic models for file transfer."""

import time
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class TransferStatus(str, Enum):
    """Externally visible status of a transfer task."""
    PENDING = "pending"
    AWAITING_ACCEPTANCE = "awaiting_acceptance"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    TransferStatus.COMPLETED,
    TransferStatus.REJECTED,
    TransferStatus.FAILED,
    TransferStatus.CANCELLED,
)


class TransferDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class FileEntry(BaseModel):
    """One file or directory of a transfer.

    ``path`` is the sender-local absolute source path and never goes on
    the wire. For directories ``size`` is meaningless and no data follows.
    """
    name: str
    size: int = Field(default=0, ge=0)
    is_directory: bool = False
    path: str | None = None
    relative_path: str | None = None

    def to_manifest(self) -> "ManifestEntry":
        return ManifestEntry(
            name=self.name,
            size=0 if self.is_directory else self.size,
            is_directory=self.is_directory,
            relative_path=self.relative_path,
        )


class TransferTask(BaseModel):
    """Full state of a single transfer, exposed to the UI."""
    transfer_id: str
    peer_device_id: str
    peer_device_name: str
    peer_address: str = ""
    files: list[FileEntry]
    total_size: int = 0
    transferred_bytes: int = 0
    status: TransferStatus = TransferStatus.PENDING
    direction: TransferDirection
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    start_time: float = Field(default_factory=time.time)
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def total_size_of(files) -> int:
    """Sum of declared sizes over non-directory entries."""
    return sum(f.size for f in files if not f.is_directory)


# --- Wire protocol records (newline-terminated JSON, camelCase keys) ---

class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8") + b"\n"


class ManifestEntry(WireModel):
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    is_directory: bool = False
    relative_path: str | None = None


class TransferRequestMessage(WireModel):
    kind: Literal["transfer_request"] = "transfer_request"
    total_size: int = Field(ge=0)
    files: list[ManifestEntry]
    transfer_id: str | None = None
    device_id: str | None = None
    device_name: str | None = None

    @model_validator(mode="after")
    def _check_total(self) -> "TransferRequestMessage":
        declared = total_size_of(self.files)
        if declared != self.total_size:
            raise ValueError(
                f"totalSize {self.total_size} does not match sum of file sizes {declared}"
            )
        return self


class TransferResponseMessage(WireModel):
    kind: Literal["transfer_response"] = "transfer_response"
    accepted: bool
    reason: str | None = None


class TransferCompleteMessage(WireModel):
    kind: Literal["transfer_complete"] = "transfer_complete"


class TransferErrorMessage(WireModel):
    kind: Literal["transfer_error"] = "transfer_error"
    reason: str = ""
