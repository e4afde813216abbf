"""
Database Models for Certify Batch

SQLAlchemy models for groups, datasets, templates, runs, certificates,
email campaigns and per-recipient email logs.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, TIMESTAMP,
    ForeignKey, Index
)
from sqlalchemy.orm import declarative_base

from ..dataset_processor import decode_dataset
from ..substitution import detect_fields

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in TIMESTAMP columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime):
    return value.isoformat() if value else None


class RunStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class CertificateStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class CampaignStatus:
    DRAFT = "draft"
    SENDING = "sending"
    COMPLETED = "completed"
    ERROR = "error"


class EmailLogStatus:
    SENT = "sent"
    FAILED = "failed"


class Group(Base):
    """
    Owning cohort for datasets, templates, runs and campaigns
    """
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class Dataset(Base):
    """
    Uploaded roster

    rows_data/columns_data hold either the canonical JSON encoding or the
    legacy delimited-text encoding until the dataset is migrated.
    """
    __tablename__ = "datasets"

    id = Column(Integer, primary_key=True)
    owner_group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    rows_data = Column(Text, nullable=False)
    columns_data = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False, index=True)
    processed_at = Column(TIMESTAMP)

    def table(self):
        return decode_dataset(self.rows_data, self.columns_data)

    def to_dict(self, include_rows: bool = True) -> dict:
        table = self.table()
        data = {
            "id": self.id,
            "owner_group_id": self.owner_group_id,
            "name": self.name,
            "columns": table.columns,
            "row_count": table.row_count,
            "created_at": isoformat(self.created_at),
            "processed_at": isoformat(self.processed_at),
        }
        if include_rows:
            data["rows"] = table.rows
        return data


class Template(Base):
    """
    HTML document with {{field}} placeholders
    """
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True)
    owner_group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    document = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False, index=True)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def detected_fields(self) -> list:
        return detect_fields(self.document)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_group_id": self.owner_group_id,
            "name": self.name,
            "document": self.document,
            "detected_fields": self.detected_fields,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class Run(Base):
    """
    One batch execution of a template against every row of a dataset
    """
    __tablename__ = "runs"

    id = Column(Integer, primary_key=True)
    owner_group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    dataset_id = Column(Integer, ForeignKey("datasets.id"), nullable=False)
    name_column = Column(String(255), nullable=False)
    email_column = Column(String(255), nullable=False)

    # Status tracking
    status = Column(String(20), default=RunStatus.PENDING, nullable=False, index=True)
    total_rows = Column(Integer, nullable=False)
    certificates_generated = Column(Integer, default=0, nullable=False)

    # Timing
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False, index=True)
    started_at = Column(TIMESTAMP)
    completed_at = Column(TIMESTAMP)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_group_id": self.owner_group_id,
            "name": self.name,
            "template_id": self.template_id,
            "dataset_id": self.dataset_id,
            "name_column": self.name_column,
            "email_column": self.email_column,
            "status": self.status,
            "total_rows": self.total_rows,
            "certificates_generated": self.certificates_generated,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }


class Certificate(Base):
    """
    Rendered result for one dataset row
    """
    __tablename__ = "certificates"

    id = Column(String(36), primary_key=True)
    run_id = Column(Integer, ForeignKey("runs.id"), index=True)
    owner_group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    dataset_id = Column(Integer, ForeignKey("datasets.id"), nullable=False)

    # Source row
    row_index = Column(Integer, nullable=False)
    row_data = Column(Text, nullable=False)
    subject_name = Column(String(255))

    # Rendered output
    rendered_html = Column(Text)
    rendered_document_ref = Column(Text)

    status = Column(String(20), default=CertificateStatus.PENDING, index=True)
    verification_url = Column(Text)
    verified_at = Column(TIMESTAMP)

    # Delivery
    email_sent = Column(Boolean, default=False, nullable=False)
    email_recipient = Column(String(320))

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_certificate_run_status", "run_id", "status"),
    )

    @property
    def row(self) -> dict:
        try:
            data = json.loads(self.row_data or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "owner_group_id": self.owner_group_id,
            "template_id": self.template_id,
            "dataset_id": self.dataset_id,
            "row_index": self.row_index,
            "row_data": self.row,
            "subject_name": self.subject_name,
            "rendered_html": self.rendered_html,
            "rendered_document_ref": self.rendered_document_ref,
            "status": self.status,
            "verification_url": self.verification_url,
            "verified_at": isoformat(self.verified_at),
            "email_sent": bool(self.email_sent),
            "email_recipient": self.email_recipient,
            "created_at": isoformat(self.created_at),
        }


class EmailCampaign(Base):
    """
    Batch email dispatch over the certificates of one completed run
    """
    __tablename__ = "email_campaigns"

    id = Column(Integer, primary_key=True)
    owner_group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    run_id = Column(Integer, ForeignKey("runs.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    html_body = Column(Text)

    status = Column(String(20), default=CampaignStatus.DRAFT, nullable=False, index=True)
    total_emails = Column(Integer, nullable=False)
    emails_sent = Column(Integer, default=0, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False, index=True)
    started_at = Column(TIMESTAMP)
    completed_at = Column(TIMESTAMP)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_group_id": self.owner_group_id,
            "run_id": self.run_id,
            "name": self.name,
            "subject": self.subject,
            "body": self.body,
            "html_body": self.html_body,
            "status": self.status,
            "total_emails": self.total_emails,
            "emails_sent": self.emails_sent,
            "created_at": isoformat(self.created_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }


class EmailLog(Base):
    """
    Outcome of one attempted delivery
    """
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("email_campaigns.id"), nullable=False, index=True)
    certificate_id = Column(String(36), ForeignKey("certificates.id"), nullable=False, index=True)
    recipient = Column(String(320), nullable=False)
    subject = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    transport_message_id = Column(String(255))
    error = Column(Text)
    sent_at = Column(TIMESTAMP, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "certificate_id": self.certificate_id,
            "recipient": self.recipient,
            "subject": self.subject,
            "status": self.status,
            "transport_message_id": self.transport_message_id,
            "error": self.error,
            "sent_at": isoformat(self.sent_at),
        }
