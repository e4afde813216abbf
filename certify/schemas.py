from datetime import datetime, timezone
from typing import List, Literal, Optional
from pydantic import BaseModel, field_validator

CertificateStatusValue = Literal["pending", "processing", "completed", "error"]


class GroupCreate(BaseModel):
    name: str
    description: Optional[str] = None


class GroupUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class DatasetCreate(BaseModel):
    owner_group_id: int
    name: str
    raw: str


class LegacyDatasetImport(BaseModel):
    owner_group_id: int
    name: str
    rows_text: str
    columns_text: str


class DatasetUpdate(BaseModel):
    name: Optional[str] = None
    raw: Optional[str] = None


class TemplateCreate(BaseModel):
    owner_group_id: int
    name: str
    document: str


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    document: Optional[str] = None


class TemplateDraftRequest(BaseModel):
    description: str
    fields: List[str] = []


class RunCreate(BaseModel):
    dataset_id: int
    template_id: int
    name_column: str
    email_column: str
    name: str
    owner_group_id: Optional[int] = None


class RunUpdate(BaseModel):
    name: str


class CertificateUpdate(BaseModel):
    status: Optional[CertificateStatusValue] = None
    rendered_document_ref: Optional[str] = None
    verification_url: Optional[str] = None
    verified_at: Optional[datetime] = None
    email_recipient: Optional[str] = None

    @field_validator("status")
    @classmethod
    def status_not_null(cls, value):
        if value is None:
            raise ValueError("status cannot be null")
        return value

    @field_validator("verified_at")
    @classmethod
    def naive_utc(cls, value):
        # Stored columns hold naive UTC timestamps
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class CampaignCreate(BaseModel):
    run_id: int
    name: str
    subject: str
    body: str
    html_body: Optional[str] = None


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    html_body: Optional[str] = None


class CertificateCreate(BaseModel):
    dataset_id: int
    template_id: int
    row_index: int
    name_column: str
    email_column: str
    run_id: Optional[int] = None
