"""Pydantic request/response models for the CA API."""

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    error: str


class IndexResponse(BaseModel):
    version: str


class HostResponse(BaseModel):
    publickey: str
    providers: list[str] = []


class CertificateRequest(BaseModel):
    pubkey: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)


class CertificateResponse(BaseModel):
    certificate: str


class HealthResponse(BaseModel):
    status: str
    service: str = "oinit-ca"
    host_groups: int = 0
