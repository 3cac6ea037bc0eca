"""Types for the File resource kind."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from resources.base import ManagedResource, ResourceSpec, ResourceStatus

KIND = "File"


class FileParameters(BaseModel):
    """The configurable fields of a File."""

    model_config = ConfigDict(frozen=True)

    file: str

    @field_validator("file")
    @classmethod
    def validate_file(cls, v: str) -> str:
        if not v:
            raise ValueError("file cannot be empty")
        if "\x00" in v or "\n" in v:
            raise ValueError("file cannot contain NUL or newline characters")
        return v


class FileObservation(BaseModel):
    """The observable fields of a File."""

    status: str = ""


class FileSpec(ResourceSpec):
    """The desired state of a File."""

    for_provider: FileParameters = Field(..., alias="forProvider")


class FileStatus(ResourceStatus):
    """The observed state of a File."""

    at_provider: FileObservation = Field(
        default_factory=FileObservation, alias="atProvider"
    )


class File(ManagedResource):
    """A file on a remote host."""

    kind: Literal["File"] = KIND
    spec: FileSpec
    status: FileStatus = Field(default_factory=FileStatus)
