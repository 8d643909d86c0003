from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# --- Requests ---


class CrawlStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    main_url: str = Field(alias="mainUrl")


# --- Responses ---


class CrawlStartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    website_id: str | None = Field(default=None, alias="websiteId")
    main_url: str = Field(default="", alias="mainUrl")
    message: str = ""

    @field_validator("website_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        # The backend sends numeric ids.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ReportSummary(BaseModel):
    """Headline numbers of a finished report, tolerant of missing fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    website_url: str | None = Field(default=None, alias="websiteUrl")
    total_analyzed_urls: int | None = Field(default=None, alias="totalAnalyzedUrls")
    average_score: float | None = Field(default=None, alias="averageScore")
    overall_level: str | None = Field(default=None, alias="overallLevel")
    severity_level: str | None = Field(default=None, alias="severityLevel")
    recommendations: list[Any] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: dict[str, Any]) -> ReportSummary:
        return cls.model_validate(report)
