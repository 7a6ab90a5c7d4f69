# In src/s3_archiver/schemas.py

from enum import Enum
from typing import Any, Callable, Literal, NamedTuple, TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- Static Type Hinting (for mypy and IDEs) ---


class UploadedObject(TypedDict):
    """What the upload sink reports once S3 has committed the object."""

    bucket: str
    key: str


class ListingPage(NamedTuple):
    """One page of a ListObjectsV2 response, reduced to what enumeration needs."""

    keys: list[str]
    next_token: str | None
    is_truncated: bool


class PipelineState(str, Enum):
    INIT = "INIT"
    ENUMERATING = "ENUMERATING"
    STREAMING = "STREAMING"
    FINALIZING = "FINALIZING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ArchiveFormat(str, Enum):
    ZIP = "zip"
    TAR = "tar"

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]

    @classmethod
    def parse(cls, value: Any) -> "ArchiveFormat":
        """Case-insensitive lookup; anything unrecognized falls back to ZIP."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.ZIP


_CONTENT_TYPES = {
    ArchiveFormat.ZIP: "application/zip",
    ArchiveFormat.TAR: "application/x-tar",
}


# --- Runtime Validation (using Pydantic) ---


class ArchiverOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Maps a full object key to the entry name used inside the archive.
    name_transform: Callable[[str], str] | None = None


class ArchiveRequest(BaseModel):
    """
    A validated, immutable description of one archive operation.
    """

    model_config = ConfigDict(frozen=True)

    source_bucket: str = Field(..., min_length=1)
    source_prefix: str = ""
    source_files: list[str] = Field(default_factory=list)
    output_filename: str = "archive"
    output_format: ArchiveFormat = ArchiveFormat.ZIP
    upload_options: dict[str, Any] = Field(default_factory=dict)
    archiver_options: ArchiverOptions = Field(default_factory=ArchiverOptions)

    @field_validator("source_prefix", mode="before")
    @classmethod
    def default_empty_prefix(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("source_files", mode="before")
    @classmethod
    def default_empty_files(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("upload_options", mode="before")
    @classmethod
    def default_empty_options(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("archiver_options", mode="before")
    @classmethod
    def default_archiver_options(cls, value: Any) -> Any:
        return ArchiverOptions() if value is None else value

    @field_validator("output_format", mode="before")
    @classmethod
    def fall_back_to_zip(cls, value: Any) -> ArchiveFormat:
        return ArchiveFormat.parse(value)

    @property
    def output_key(self) -> str:
        return f"{self.source_prefix}{self.output_filename}.{self.output_format.value}"


class ArchiveResult(BaseModel):
    """Terminal artifact of a successful run."""

    model_config = ConfigDict(frozen=True)

    bucket: str
    key: str
    byte_size: int = Field(..., ge=0)
    entry_count: int = Field(0, ge=0)


class ArchiveEvent(BaseModel):
    """
    Pydantic model for the Lambda invocation payload.

    Naming policies cannot travel as JSON, so the event selects one of the
    built-in policies by name.
    """

    source_bucket: str = Field(..., min_length=1)
    source_prefix: str = ""
    source_files: list[str] = Field(default_factory=list)
    output_filename: str = Field("archive", min_length=1)
    output_format: str = "zip"
    upload_options: dict[str, Any] = Field(default_factory=dict)
    entry_naming: Literal["basename", "relative", "full"] = "basename"
