"""
Pydantic schemas for requests, results and progress events.
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class FileSpec(BaseModel):
    """A generated file to write into a sandbox."""
    path: str = Field(..., description="File path relative to the sandbox root")
    content: str = Field(..., description="Full file content")


class ApplyRequest(BaseModel):
    """Body of an apply call."""
    files: List[FileSpec] = Field(default_factory=list, description="Files to write")
    packages: List[str] = Field(default_factory=list, description="Extra packages to install")
    auto_fix: bool = Field(True, description="Run the classify-and-repair loop on build failure")


class ErrorRecord(BaseModel):
    """A build or runtime error handed to the classifier."""
    message: str = Field(..., description="Free-text error message")
    kind: Optional[str] = Field(None, description="Explicit error kind, trusted when recognized")
    file: Optional[str] = Field(None, description="Originating file")
    import_path: Optional[str] = Field(None, description="Unresolved import specifier")
    from_file: Optional[str] = Field(None, description="File containing the unresolved import")


class BuildFailure(BaseModel):
    """Structured, non-throwing build failure returned by apply."""
    kind: Literal["BUILD_ERROR"] = "BUILD_ERROR"
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False

    def to_error_record(self) -> ErrorRecord:
        """Combine captured output into an error record for classification."""
        text = "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)
        return ErrorRecord(message=text or f"{self.command} failed")


class InstallReport(BaseModel):
    """Per-package outcome of a best-effort install."""
    installed: List[str] = Field(default_factory=list)
    already_present: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict, description="Package name to failure reason")

    @property
    def success(self) -> bool:
        return not self.failed


class FixDirective(BaseModel):
    """One whole-file write proposed by the generative repairer."""
    action: Literal["create", "modify"]
    file: str
    content: str


class FixResponse(BaseModel):
    """Envelope of the generative repairer's JSON answer."""
    fixes: List[FixDirective] = Field(default_factory=list)
    explanation: Optional[str] = None


class AutoFixReport(BaseModel):
    """What the auto-fix loop did for one failure."""
    kind: str
    phase: Literal["FIXED", "FIX_FAILED"]
    action: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    message: str = ""
    escalated: bool = False
    retried_build: bool = False
    original_error: str = ""
    secondary_error: Optional[str] = None


class ApplyResult(BaseModel):
    """Outcome of applying a batch of files."""
    success: bool
    sandbox_id: str
    applied_files: List[str] = Field(default_factory=list)
    packages: InstallReport = Field(default_factory=InstallReport)
    build_error: Optional[BuildFailure] = None
    auto_fix: Optional[AutoFixReport] = None
    message: str = ""


EventType = Literal[
    "status",
    "file_applied",
    "package_installed",
    "package_error",
    "warning",
    "error",
    "complete",
]

TERMINAL_EVENTS = ("complete", "error")


class ProgressEvent(BaseModel):
    """A typed event on an apply progress stream."""
    type: EventType
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


class ExportResult(BaseModel):
    """A downloadable archive of a sandbox tree."""
    filename: str
    content: str = Field(..., description="Base64 encoded zip bytes")
    size: int
