"""
Database Services for Certify Batch

Business logic layer for database operations. Each call runs in its own
transactional session scope; validation errors are raised before any write.
"""

from typing import Optional, List, Dict, Any
from sqlalchemy import desc, or_
import json
import logging
import uuid

from .models import (
    Group, Dataset, Template, Run, Certificate, EmailCampaign, EmailLog,
    RunStatus, CertificateStatus, CampaignStatus, utcnow
)
from .connection import get_database_manager
from ..config import get_settings
from ..dataset_processor import (
    ParsedTable, ingest, encode_table, decode_canonical, decode_legacy,
    validate_dataset_size, require_columns
)
from ..errors import NotFoundError, InvalidStateError, AlreadySentError, MalformedInputError

logger = logging.getLogger(__name__)


def _get_or_raise(session, model, entity_id, entity: str):
    instance = session.get(model, entity_id)
    if instance is None:
        raise NotFoundError(entity, entity_id)
    return instance


class GroupService:
    """Service for managing owner groups"""

    @staticmethod
    def create_group(name: str, description: Optional[str] = None) -> Group:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            group = Group(name=name, description=description)
            session.add(group)
            session.flush()
            return group

    @staticmethod
    def get_group(group_id: int) -> Group:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return _get_or_raise(session, Group, group_id, "Group")

    @staticmethod
    def list_groups() -> List[Group]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return session.query(Group).order_by(Group.created_at, Group.id).all()

    @staticmethod
    def update_group(group_id: int, name: Optional[str] = None, description: Optional[str] = None) -> Group:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            group = _get_or_raise(session, Group, group_id, "Group")
            if name is not None:
                group.name = name
            if description is not None:
                group.description = description
            session.flush()
            return group

    @staticmethod
    def delete_group(group_id: int) -> int:
        """Delete an empty group"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            group = _get_or_raise(session, Group, group_id, "Group")
            for model in (Dataset, Template, Run):
                if session.query(model).filter_by(owner_group_id=group_id).count():
                    raise InvalidStateError(f"Group {group_id} still owns {model.__tablename__}")
            session.delete(group)
            return group_id


class DatasetService:
    """Service for managing uploaded rosters"""

    @staticmethod
    def create_dataset(owner_group_id: int, name: str, raw: str) -> Dataset:
        """Parse raw delimited text once and store it in canonical form"""
        table = ingest(raw)
        validate_dataset_size(table, get_settings().max_dataset_rows)
        rows_data, columns_data = encode_table(table)

        db_manager = get_database_manager()
        with db_manager.session_scope() as session:
            _get_or_raise(session, Group, owner_group_id, "Group")
            dataset = Dataset(
                owner_group_id=owner_group_id,
                name=name,
                rows_data=rows_data,
                columns_data=columns_data,
            )
            session.add(dataset)
            session.flush()
            logger.info(f"Created dataset {dataset.id} with {table.row_count} rows")
            return dataset

    @staticmethod
    def import_legacy_dataset(owner_group_id: int, name: str, rows_text: str, columns_text: str) -> Dataset:
        """Store a dataset in the legacy delimited-text encoding, unparsed"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            _get_or_raise(session, Group, owner_group_id, "Group")
            dataset = Dataset(
                owner_group_id=owner_group_id,
                name=name,
                rows_data=rows_text,
                columns_data=columns_text,
            )
            session.add(dataset)
            session.flush()
            return dataset

    @staticmethod
    def get_dataset(dataset_id: int) -> Dataset:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return _get_or_raise(session, Dataset, dataset_id, "Dataset")

    @staticmethod
    def get_table(dataset_id: int) -> ParsedTable:
        return DatasetService.get_dataset(dataset_id).table()

    @staticmethod
    def list_datasets(owner_group_id: int) -> List[Dataset]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return session.query(Dataset)\
                         .filter_by(owner_group_id=owner_group_id)\
                         .order_by(Dataset.created_at, Dataset.id)\
                         .all()

    @staticmethod
    def update_dataset(dataset_id: int, name: Optional[str] = None, raw: Optional[str] = None) -> Dataset:
        encoded = None
        if raw is not None:
            table = ingest(raw)
            validate_dataset_size(table, get_settings().max_dataset_rows)
            encoded = encode_table(table)

        db_manager = get_database_manager()
        with db_manager.session_scope() as session:
            dataset = _get_or_raise(session, Dataset, dataset_id, "Dataset")
            if name is not None:
                dataset.name = name
            if encoded is not None:
                dataset.rows_data, dataset.columns_data = encoded
            session.flush()
            return dataset

    @staticmethod
    def delete_dataset(dataset_id: int) -> int:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            dataset = _get_or_raise(session, Dataset, dataset_id, "Dataset")
            if session.query(Run).filter_by(dataset_id=dataset_id).count() or \
                    session.query(Certificate).filter_by(dataset_id=dataset_id).count():
                raise InvalidStateError(f"Dataset {dataset_id} is referenced by runs or certificates")
            session.delete(dataset)
            return dataset_id

    @staticmethod
    def migrate_legacy(dataset_id: int) -> Dict[str, Any]:
        """
        Rewrite a legacy-encoded dataset in canonical form

        Idempotent: a dataset already in canonical form is left untouched and
        its current counts are returned. The rewrite of both columns happens
        in a single transaction.

        Returns:
            Dictionary with rows_converted, columns_converted and migrated flag
        """
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            dataset = _get_or_raise(session, Dataset, dataset_id, "Dataset")

            table = decode_canonical(dataset.rows_data, dataset.columns_data)
            if table is not None:
                logger.info(f"Dataset {dataset_id} already in canonical form")
                return {
                    "rows_converted": table.row_count,
                    "columns_converted": len(table.columns),
                    "migrated": False,
                }

            table = decode_legacy(dataset.rows_data, dataset.columns_data)
            if not table.columns:
                raise MalformedInputError(f"Dataset {dataset_id} has no columns to migrate")

            dataset.rows_data, dataset.columns_data = encode_table(table)
            dataset.processed_at = utcnow()
            logger.info(
                f"Migrated dataset {dataset_id}: {table.row_count} rows, {len(table.columns)} columns"
            )
            return {
                "rows_converted": table.row_count,
                "columns_converted": len(table.columns),
                "migrated": True,
            }


class TemplateService:
    """Service for managing HTML templates"""

    @staticmethod
    def create_template(owner_group_id: int, name: str, document: str) -> Template:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            _get_or_raise(session, Group, owner_group_id, "Group")
            template = Template(owner_group_id=owner_group_id, name=name, document=document)
            session.add(template)
            session.flush()
            return template

    @staticmethod
    def get_template(template_id: int) -> Template:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return _get_or_raise(session, Template, template_id, "Template")

    @staticmethod
    def list_templates(owner_group_id: int) -> List[Template]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return session.query(Template)\
                         .filter_by(owner_group_id=owner_group_id)\
                         .order_by(Template.created_at, Template.id)\
                         .all()

    @staticmethod
    def update_template(template_id: int, name: Optional[str] = None, document: Optional[str] = None) -> Template:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            template = _get_or_raise(session, Template, template_id, "Template")
            if name is not None:
                template.name = name
            if document is not None:
                template.document = document
            template.updated_at = utcnow()
            session.flush()
            return template

    @staticmethod
    def delete_template(template_id: int) -> int:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            template = _get_or_raise(session, Template, template_id, "Template")
            if session.query(Run).filter_by(template_id=template_id).count() or \
                    session.query(Certificate).filter_by(template_id=template_id).count():
                raise InvalidStateError(f"Template {template_id} is referenced by runs or certificates")
            session.delete(template)
            return template_id


class RunService:
    """Service for managing certificate generation runs"""

    @staticmethod
    def create_run(
        dataset_id: int,
        template_id: int,
        name_column: str,
        email_column: str,
        name: str,
        owner_group_id: Optional[int] = None
    ) -> Run:
        """
        Create a pending run after validating its dataset, template and columns

        total_rows is a snapshot of the dataset row count at creation time.
        """
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            dataset = _get_or_raise(session, Dataset, dataset_id, "Dataset")
            _get_or_raise(session, Template, template_id, "Template")

            table = dataset.table()
            require_columns(table, name_column, email_column)

            run = Run(
                owner_group_id=owner_group_id if owner_group_id is not None else dataset.owner_group_id,
                name=name,
                template_id=template_id,
                dataset_id=dataset_id,
                name_column=name_column,
                email_column=email_column,
                status=RunStatus.PENDING,
                total_rows=table.row_count,
                certificates_generated=0,
            )
            session.add(run)
            session.flush()
            logger.info(f"Created run {run.id} over {table.row_count} rows")
            return run

    @staticmethod
    def get_run(run_id: int) -> Run:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return _get_or_raise(session, Run, run_id, "Run")

    @staticmethod
    def list_runs(owner_group_id: int, status: Optional[str] = None) -> List[Run]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            query = session.query(Run).filter_by(owner_group_id=owner_group_id)
            if status:
                query = query.filter_by(status=status)
            return query.order_by(Run.created_at, Run.id).all()

    @staticmethod
    def rename_run(run_id: int, name: str) -> Run:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            run = _get_or_raise(session, Run, run_id, "Run")
            run.name = name
            session.flush()
            return run

    @staticmethod
    def claim_for_processing(run_id: int) -> Run:
        """
        Atomically move a run from pending to processing

        The status guard is part of the UPDATE statement, so two concurrent
        callers cannot both claim the same run.

        Raises:
            NotFoundError: If the run does not exist
            InvalidStateError: If the run is not pending
        """
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            claimed = session.query(Run)\
                             .filter(Run.id == run_id, Run.status == RunStatus.PENDING)\
                             .update(
                                 {Run.status: RunStatus.PROCESSING, Run.started_at: utcnow()},
                                 synchronize_session=False
                             )
            run = _get_or_raise(session, Run, run_id, "Run")
            if not claimed:
                raise InvalidStateError(f"Run {run_id} cannot be executed from status '{run.status}'")
            session.refresh(run)
            return run

    @staticmethod
    def finish_run(run_id: int, status: str, certificates_generated: int) -> Run:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            run = _get_or_raise(session, Run, run_id, "Run")
            run.status = status
            run.certificates_generated = certificates_generated
            run.completed_at = utcnow()
            session.flush()
            return run

    @staticmethod
    def mark_run_error(run_id: int, certificates_generated: Optional[int] = None) -> bool:
        """Best-effort transition to error; failures are logged, not raised"""
        db_manager = get_database_manager()

        values = {Run.status: RunStatus.ERROR, Run.completed_at: utcnow()}
        if certificates_generated is not None:
            values[Run.certificates_generated] = certificates_generated
        try:
            with db_manager.session_scope() as session:
                updated = session.query(Run).filter_by(id=run_id)\
                                 .update(values, synchronize_session=False)
                return bool(updated)
        except Exception as e:
            logger.error(f"Failed to mark run {run_id} as error: {e}")
            return False

    @staticmethod
    def delete_run(run_id: int) -> Dict[str, Any]:
        """
        Delete a run and everything that depends on it

        Deletion order: email logs, campaigns, certificates, run. All steps
        share one transaction.
        """
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            _get_or_raise(session, Run, run_id, "Run")

            campaign_ids = [row.id for row in session.query(EmailCampaign.id).filter_by(run_id=run_id)]
            certificate_ids = [row.id for row in session.query(Certificate.id).filter_by(run_id=run_id)]

            log_filters = []
            if campaign_ids:
                log_filters.append(EmailLog.campaign_id.in_(campaign_ids))
            if certificate_ids:
                log_filters.append(EmailLog.certificate_id.in_(certificate_ids))
            deleted_logs = 0
            if log_filters:
                deleted_logs = session.query(EmailLog).filter(or_(*log_filters))\
                                      .delete(synchronize_session=False)

            session.query(EmailCampaign).filter_by(run_id=run_id).delete(synchronize_session=False)
            session.query(Certificate).filter_by(run_id=run_id).delete(synchronize_session=False)
            session.query(Run).filter_by(id=run_id).delete(synchronize_session=False)

            logger.info(
                f"Deleted run {run_id}: {deleted_logs} logs, {len(campaign_ids)} campaigns, "
                f"{len(certificate_ids)} certificates"
            )
            return {
                "deleted_id": run_id,
                "deleted_certificates": len(certificate_ids),
                "deleted_campaigns": len(campaign_ids),
            }

    @staticmethod
    def get_run_progress(run_id: int) -> Dict[str, Any]:
        """Get current progress counts for a run (for progress polling and SSE)"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            run = _get_or_raise(session, Run, run_id, "Run")
            generated = session.query(Certificate)\
                               .filter_by(run_id=run_id, status=CertificateStatus.COMPLETED)\
                               .count()
            total = run.total_rows or 0

            return {
                "run_id": run_id,
                "status": run.status,
                "total_rows": total,
                "certificates_generated": generated,
                "percentage": round((generated / total) * 100, 1) if total > 0 else 0,
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "completed_at": run.completed_at.isoformat() if run.completed_at else None,
            }


class CertificateService:
    """Service for managing generated certificates"""

    @staticmethod
    def create_certificate(
        owner_group_id: int,
        template_id: int,
        dataset_id: int,
        row_index: int,
        row: Dict[str, str],
        run_id: Optional[int] = None,
        subject_name: Optional[str] = None,
        rendered_html: Optional[str] = None,
        status: str = CertificateStatus.PENDING,
        verification_url: Optional[str] = None,
        email_recipient: Optional[str] = None
    ) -> Certificate:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            certificate = Certificate(
                id=str(uuid.uuid4()),
                run_id=run_id,
                owner_group_id=owner_group_id,
                template_id=template_id,
                dataset_id=dataset_id,
                row_index=row_index,
                row_data=json.dumps(row, ensure_ascii=False),
                subject_name=subject_name,
                rendered_html=rendered_html,
                status=status,
                verification_url=verification_url,
                email_sent=False,
                email_recipient=email_recipient,
            )
            session.add(certificate)
            session.flush()
            return certificate

    @staticmethod
    def get_certificate(certificate_id: str) -> Certificate:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return _get_or_raise(session, Certificate, certificate_id, "Certificate")

    @staticmethod
    def list_certificates(
        owner_group_id: Optional[int] = None,
        run_id: Optional[int] = None,
        status: Optional[str] = None
    ) -> List[Certificate]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            query = session.query(Certificate)
            if owner_group_id is not None:
                query = query.filter_by(owner_group_id=owner_group_id)
            if run_id is not None:
                query = query.filter_by(run_id=run_id)
            if status is not None:
                query = query.filter_by(status=status)
            return query.order_by(Certificate.row_index, Certificate.created_at).all()

    @staticmethod
    def count_for_run(run_id: int, status: Optional[str] = None) -> int:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            query = session.query(Certificate).filter_by(run_id=run_id)
            if status is not None:
                query = query.filter_by(status=status)
            return query.count()

    @staticmethod
    def update_certificate(certificate_id: str, **changes) -> Certificate:
        """
        Update mutable certificate fields

        Accepted keys: status, rendered_html, rendered_document_ref,
        verification_url, verified_at, email_sent, email_recipient
        """
        allowed = {
            "status", "rendered_html", "rendered_document_ref", "verification_url",
            "verified_at", "email_sent", "email_recipient"
        }
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update certificate fields: {', '.join(sorted(unknown))}")

        db_manager = get_database_manager()
        with db_manager.session_scope() as session:
            certificate = _get_or_raise(session, Certificate, certificate_id, "Certificate")
            for key, value in changes.items():
                setattr(certificate, key, value)
            session.flush()
            return certificate

    @staticmethod
    def mark_email_sent(certificate_id: str) -> None:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            session.query(Certificate).filter_by(id=certificate_id)\
                   .update({Certificate.email_sent: True}, synchronize_session=False)

    @staticmethod
    def delete_certificate(certificate_id: str) -> str:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            _get_or_raise(session, Certificate, certificate_id, "Certificate")
            session.query(EmailLog).filter_by(certificate_id=certificate_id).delete(synchronize_session=False)
            session.query(Certificate).filter_by(id=certificate_id).delete(synchronize_session=False)
            return certificate_id


class CampaignService:
    """Service for managing email campaigns"""

    @staticmethod
    def create_campaign(
        run_id: int,
        name: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None
    ) -> EmailCampaign:
        """
        Create a draft campaign for a completed run

        total_emails is a snapshot of the run's completed certificates.
        """
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            run = _get_or_raise(session, Run, run_id, "Run")
            if run.status != RunStatus.COMPLETED:
                raise InvalidStateError(f"Run {run_id} must be completed to create a campaign (status '{run.status}')")

            completed = session.query(Certificate)\
                               .filter_by(run_id=run_id, status=CertificateStatus.COMPLETED)\
                               .count()
            if completed == 0:
                raise InvalidStateError(f"Run {run_id} has no completed certificates")

            campaign = EmailCampaign(
                owner_group_id=run.owner_group_id,
                run_id=run_id,
                name=name,
                subject=subject,
                body=body,
                html_body=html_body,
                status=CampaignStatus.DRAFT,
                total_emails=completed,
                emails_sent=0,
            )
            session.add(campaign)
            session.flush()
            logger.info(f"Created campaign {campaign.id} for run {run_id} with {completed} emails")
            return campaign

    @staticmethod
    def get_campaign(campaign_id: int) -> EmailCampaign:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return _get_or_raise(session, EmailCampaign, campaign_id, "Campaign")

    @staticmethod
    def list_campaigns(owner_group_id: Optional[int] = None, run_id: Optional[int] = None) -> List[EmailCampaign]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            query = session.query(EmailCampaign)
            if owner_group_id is not None:
                query = query.filter_by(owner_group_id=owner_group_id)
            if run_id is not None:
                query = query.filter_by(run_id=run_id)
            return query.order_by(desc(EmailCampaign.created_at), desc(EmailCampaign.id)).all()

    @staticmethod
    def update_campaign(campaign_id: int, **changes) -> EmailCampaign:
        """Edit name, subject, body or html_body of a draft campaign"""
        allowed = {"name", "subject", "body", "html_body"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update campaign fields: {', '.join(sorted(unknown))}")

        db_manager = get_database_manager()
        with db_manager.session_scope() as session:
            campaign = _get_or_raise(session, EmailCampaign, campaign_id, "Campaign")
            if campaign.status != CampaignStatus.DRAFT:
                raise InvalidStateError(f"Campaign {campaign_id} can only be edited as a draft")
            for key, value in changes.items():
                setattr(campaign, key, value)
            session.flush()
            return campaign

    @staticmethod
    def claim_for_sending(campaign_id: int) -> EmailCampaign:
        """
        Atomically move a campaign to sending

        Raises:
            NotFoundError: If the campaign does not exist
            AlreadySentError: If the campaign is completed
            InvalidStateError: If the campaign is already sending
        """
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            claimed = session.query(EmailCampaign)\
                             .filter(
                                 EmailCampaign.id == campaign_id,
                                 EmailCampaign.status.in_([CampaignStatus.DRAFT, CampaignStatus.ERROR])
                             )\
                             .update(
                                 {EmailCampaign.status: CampaignStatus.SENDING, EmailCampaign.started_at: utcnow()},
                                 synchronize_session=False
                             )
            campaign = _get_or_raise(session, EmailCampaign, campaign_id, "Campaign")
            if not claimed:
                if campaign.status == CampaignStatus.COMPLETED:
                    raise AlreadySentError(f"Campaign {campaign_id} has already been sent")
                raise InvalidStateError(f"Campaign {campaign_id} is already sending")
            session.refresh(campaign)
            return campaign

    @staticmethod
    def finish_campaign(campaign_id: int, status: str, emails_sent: int) -> EmailCampaign:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            campaign = _get_or_raise(session, EmailCampaign, campaign_id, "Campaign")
            campaign.status = status
            campaign.emails_sent = emails_sent
            campaign.completed_at = utcnow()
            session.flush()
            return campaign

    @staticmethod
    def mark_campaign_error(campaign_id: int, emails_sent: Optional[int] = None) -> bool:
        """Best-effort transition to error; failures are logged, not raised"""
        db_manager = get_database_manager()

        values = {EmailCampaign.status: CampaignStatus.ERROR, EmailCampaign.completed_at: utcnow()}
        if emails_sent is not None:
            values[EmailCampaign.emails_sent] = emails_sent
        try:
            with db_manager.session_scope() as session:
                updated = session.query(EmailCampaign).filter_by(id=campaign_id)\
                                 .update(values, synchronize_session=False)
                return bool(updated)
        except Exception as e:
            logger.error(f"Failed to mark campaign {campaign_id} as error: {e}")
            return False

    @staticmethod
    def delete_campaign(campaign_id: int) -> int:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            campaign = _get_or_raise(session, EmailCampaign, campaign_id, "Campaign")
            if campaign.status == CampaignStatus.SENDING:
                raise InvalidStateError(f"Campaign {campaign_id} is sending and cannot be deleted")
            session.query(EmailLog).filter_by(campaign_id=campaign_id).delete(synchronize_session=False)
            session.query(EmailCampaign).filter_by(id=campaign_id).delete(synchronize_session=False)
            return campaign_id


class EmailLogService:
    """Service for per-recipient delivery outcomes"""

    @staticmethod
    def log_delivery(
        campaign_id: int,
        certificate_id: str,
        recipient: str,
        subject: str,
        status: str,
        transport_message_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> EmailLog:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            log = EmailLog(
                campaign_id=campaign_id,
                certificate_id=certificate_id,
                recipient=recipient,
                subject=subject,
                status=status,
                transport_message_id=transport_message_id,
                error=error,
            )
            session.add(log)
            session.flush()
            return log

    @staticmethod
    def list_logs(campaign_id: int) -> List[EmailLog]:
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            return session.query(EmailLog)\
                         .filter_by(campaign_id=campaign_id)\
                         .order_by(EmailLog.sent_at, EmailLog.id)\
                         .all()
