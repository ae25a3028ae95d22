from datetime import datetime, timezone
from pydantic import BaseModel, Field, model_validator
from typing import List, Literal, Optional


ReferenceLocation = Literal["block", "section", "document"]
CaptionPosition = Literal["above", "below"]


class ConversionOptions(BaseModel):
    """Conversion toggles and enums; every value the converter sees comes from this closed set.
    Why available: Shared by /upload (form fields) and /convert (query string) and persisted on the job record."""

    toc: bool = False
    toc_depth: Optional[int] = Field(None, ge=1, le=6, description="Only used when toc is enabled")
    number_sections: bool = False
    embed_resources: bool = Field(False, description="Always paired with --standalone")
    no_yaml: bool = Field(False, description="Disable YAML metadata block parsing (markdown sources only)")
    reference_location: Optional[ReferenceLocation] = None
    figure_caption_position: Optional[CaptionPosition] = None
    table_caption_position: Optional[CaptionPosition] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(BaseModel):
    """Persisted record of one conversion job. Why available: Written when the upload is staged, updated once when the converter exits, polled by clients."""

    id: str
    original_name: str = Field(..., description="Sanitized client filename; display only")
    input_name: str = Field(..., description="Staged input file name inside the upload dir")
    dest_format: str
    source_format: Optional[str] = None
    template_path: Optional[str] = None
    options: ConversionOptions = Field(default_factory=ConversionOptions)
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    success: Optional[bool] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    result: Optional[str] = Field(None, description="Output file name once conversion succeeded")
    scrapbox: bool = False

    @model_validator(mode="after")
    def success_excludes_error(self):
        """Exactly one of: pending (no error), succeeded (no error), failed (non-empty error)."""
        if self.success is False:
            if not self.error:
                raise ValueError("a failed job must carry an error")
        elif self.error is not None:
            raise ValueError("only a failed job can carry an error")
        return self

    @property
    def finished(self) -> bool:
        return self.success is not None or self.scrapbox

    def public(self) -> dict:
        """Status as returned to polling clients (no host paths)."""
        data = self.model_dump(mode="json", exclude={"template_path"})
        data["has_template"] = self.template_path is not None
        return data


class UploadResponse(BaseModel):
    success: bool = True
    name: str = Field(..., description="Job id; poll GET /status?job=<name>")


class StatusResponse(BaseModel):
    success: bool = True
    status: dict


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    pandoc: str


class FormatItem(BaseModel):
    value: str
    label: str
    ext: Optional[str] = None
    mime: Optional[str] = None
    supports_template: bool = False


class FormatsResponse(BaseModel):
    source_formats: List[FormatItem]
    dest_formats: List[FormatItem]


class LimitsResponse(BaseModel):
    """Response for GET /limits. Why available: Lets the UI display limits before uploading."""

    max_file_size: int = Field(..., description="Max bytes per uploaded file")
    max_total_file_size: int = Field(..., description="Max bytes for file + template")
    conversion_timeout_seconds: float
    rate_limit_requests: int = Field(..., description="Rate limit requests per window")
    rate_limit_window_seconds: int = Field(..., description="Rate limit window in seconds")
