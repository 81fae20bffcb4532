# models.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class IdentityProfile(BaseModel):
    referer: str = Field(..., description="Referer header sent upstream")
    origin: str = Field(..., description="Origin header sent upstream")
    user_agent: str = Field(..., description="User-Agent header sent upstream")

    class Config:
        frozen = True

    def headers(self) -> Dict[str, str]:
        return {
            "Referer": self.referer,
            "Origin": self.origin,
            "User-Agent": self.user_agent,
        }


class SourceResult(BaseModel):
    server: str = Field(..., description="Source server name (hd-1, hd-2, hd-3)")
    sources: Optional[List[Dict[str, Any]]] = Field(default=None, description="Playable sources ({url, type, ...})")
    used_referer: Optional[str] = Field(default=None, alias="usedReferer", description="Referer that the upstream accepted")
    iframe: Optional[str] = Field(default=None, description="Embeddable player URL")
    error: Optional[str] = Field(default=None, description="no_sources or fetch_failed when the server failed")
    server_url: Optional[str] = Field(default=None, alias="serverUrl", description="Upstream URL queried for this server")

    class Config:
        populate_by_name = True
        extra = "allow"

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class NormalizedListing(BaseModel):
    results: List[Dict[str, Any]] = Field(default_factory=list, description="Items of the current page")
    current_page: int = Field(1, ge=1, alias="currentPage", description="Current page number")
    total_pages: int = Field(1, ge=1, alias="totalPages", description="Total number of pages, never below currentPage")
    has_next_page: bool = Field(False, alias="hasNextPage", description="Whether upstream reports a next page")
    has_previous_page: bool = Field(False, alias="hasPreviousPage", description="Whether upstream reports a previous page")

    class Config:
        populate_by_name = True

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ErrorResponse(BaseModel):
    success: bool = Field(False, description="Always false for errors")
    error: str = Field(..., description="Error message")
    details: Optional[str] = Field(None, description="Additional error details")

    class Config:
        from_attributes = True
