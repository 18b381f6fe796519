"""
School Schemas

Request/response models for the platform and tenant-context endpoints.

Tenant-facing responses never carry the namespace identifier. Operator
responses (provisioning, reconcile, consistency) do, since operators need
it to diagnose a namespace.
"""
from pydantic import BaseModel, EmailStr, Field
from typing import Dict, List, Optional
from datetime import datetime
from schoolspace.models.school import SchoolStatus


class SchoolCreate(BaseModel):
    """Schema for onboarding a school."""
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    admin_email: Optional[EmailStr] = None


class SchoolStatusUpdate(BaseModel):
    status: SchoolStatus


class SchoolResponse(BaseModel):
    """School as seen by a platform operator."""
    id: int
    code: str
    name: str
    status: SchoolStatus
    admin_email: Optional[str]
    provisioned_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class SchoolListResponse(BaseModel):
    schools: List[SchoolResponse]
    total: int


class ProvisionResponse(BaseModel):
    success: bool
    namespace: Optional[str]
    tables_created: int
    error: Optional[str] = None


class DriftIssueResponse(BaseModel):
    table: str
    column: Optional[str]
    message: str


class ReconcileResponse(BaseModel):
    namespace: str
    tables_added: int
    columns_added: int
    backfilled: int
    clean: bool
    errors: List[DriftIssueResponse] = []


class MissingNamespace(BaseModel):
    school_id: int
    namespace: str


class ConsistencyResponse(BaseModel):
    consistent: bool
    missing_namespaces: List[MissingNamespace]
    unregistered_namespaces: List[str]


class TenantContextResponse(BaseModel):
    """The caller's school. No namespace identifier, by construction."""
    school_id: int
    code: Optional[str]
    name: str
    settings: Dict[str, Optional[str]] = {}
