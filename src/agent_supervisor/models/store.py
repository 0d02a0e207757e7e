"""Disk store index and listing models."""

from pydantic import BaseModel, Field


class StoreIndex(BaseModel):
    """Content of a disk store's ``index.json``."""

    current: str | None = Field(default=None, description="Most recently written key")
    ids: dict[str, str] = Field(default_factory=dict, description="Key to file name within the store")


class StoreEntry(BaseModel):
    """One record of a disk store as seen by ``list``."""

    key: str
    locked: bool = Field(default=False)
    pid: int | None = Field(default=None, description="Pid recorded in the record's lock file")
    mtime: float = Field(..., description="Modification time of the record, seconds since the epoch")
