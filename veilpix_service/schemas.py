from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ImagePayload(BaseModel):
    data: str
    mimeType: str


class GenerationResponse(BaseModel):
    success: bool = True
    image: ImagePayload
    processingTime: int
    creditsRemaining: int | None = None
    creditsUsed: int = 0
    usage: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: str | None = None


class AnonymousUsageResponse(BaseModel):
    totalUsage: int
    remainingFreeUsage: int
    isAuthenticated: bool = False


class UsageStatsResponse(BaseModel):
    totalUsage: int
    remainingFreeUsage: int | None = None
    isAuthenticated: bool = True
    period: str


class CreditsResponse(BaseModel):
    creditsRemaining: int
    totalCreditsPurchased: int
    lastCreditPurchaseAt: float | None = None


class ValidateSessionRequest(BaseModel):
    sessionId: str | None = Field(default=None, max_length=200)


class SessionUsage(BaseModel):
    current: int
    limit: int
    remaining: int


class ValidateSessionResponse(BaseModel):
    sessionId: str
    isValid: bool
    usage: SessionUsage
    lastActivity: float | None = None
    ipAddress: str | None = None


class CleanupSessionsResponse(BaseModel):
    success: bool = True
    deletedCount: int
    cutoffDate: str
    message: str


class GrantCreditsRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=200)
    credits: int = Field(gt=0, le=100_000)
    email: str | None = Field(default=None, max_length=320)


class GrantCreditsResponse(BaseModel):
    success: bool = True
    userId: str
    creditsAdded: int
    creditsRemaining: int


class SweepResponse(BaseModel):
    success: bool = True
    dryRun: bool = False
    deletedCount: int
    keys: list[str]
