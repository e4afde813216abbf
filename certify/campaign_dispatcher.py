"""
Campaign Dispatch Module

Sends one personalized email per completed certificate of a run.

Each message is rendered from two field sources, applied lowest to highest
precedence: fixed campaign fields (certificate id, name, recipient,
certificate link) and then the certificate's dataset row. A dataset column
named like a fixed field therefore wins.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import get_settings
from .database.models import CampaignStatus, CertificateStatus, EmailLogStatus
from .database.services import CampaignService, CertificateService, DatasetService, EmailLogService, RunService
from .dataset_processor import ParsedTable
from .mail_transport import MailTransport, OutboundMessage, get_mail_transport
from .substitution import NAME_ALIASES, merge_fields, render

logger = logging.getLogger(__name__)


@dataclass
class RecipientOutcome:
    certificate_id: str
    recipient: Optional[str]
    status: str
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchSummary:
    campaign_id: int
    status: str
    total_emails: int
    outcomes: List[RecipientOutcome] = field(default_factory=list)
    processing_time: float = 0.0

    @property
    def emails_sent(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == EmailLogStatus.SENT)

    @property
    def skipped_no_recipient(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.recipient is None)

    @property
    def emails_failed(self) -> int:
        return sum(
            1 for outcome in self.outcomes
            if outcome.status == EmailLogStatus.FAILED and outcome.recipient is not None
        )

    @property
    def failures(self) -> int:
        return self.emails_failed + self.skipped_no_recipient

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "status": self.status,
            "total_emails": self.total_emails,
            "emails_sent": self.emails_sent,
            "emails_failed": self.emails_failed,
            "skipped_no_recipient": self.skipped_no_recipient,
            "processing_time_seconds": round(self.processing_time, 2),
        }


def certificate_link(certificate_id: str) -> str:
    return f"{get_settings().certificate_base_url}/{certificate_id}"


def fixed_fields(certificate) -> List[Tuple[str, str]]:
    """Campaign-level fields available to every message"""
    name = certificate.subject_name or certificate.row.get("nome") or certificate.row.get("name") or ""
    link = certificate_link(certificate.id)
    fields = [("certificate_id", certificate.id)]
    fields.extend((alias, name) for alias in NAME_ALIASES)
    fields.extend([
        ("email", certificate.email_recipient or ""),
        ("link_certificado", link),
        ("certificate_link", link),
    ])
    return fields


def message_fields(certificate, table: Optional[ParsedTable]) -> Dict[str, str]:
    """Fixed fields layered under the dataset row, so its columns take precedence"""
    row = {}
    if table is not None and 0 <= certificate.row_index < table.row_count:
        row = table.rows[certificate.row_index]
    return merge_fields(fixed_fields(certificate), row)


def build_message(campaign, certificate, table: Optional[ParsedTable], sender: str) -> OutboundMessage:
    """Render subject, body and html body independently for one certificate"""
    fields = message_fields(certificate, table)
    subject = render(campaign.subject, fields)
    text = render(campaign.body, fields)
    html = render(campaign.html_body, fields) if campaign.html_body else text.replace("\n", "<br>")
    return OutboundMessage(sender=sender, to=certificate.email_recipient, subject=subject, html=html, text=text)


def _load_table(dataset_id: int) -> Optional[ParsedTable]:
    try:
        return DatasetService.get_table(dataset_id)
    except Exception as e:
        logger.warning(f"Dataset {dataset_id} unavailable, sending with fixed fields only: {e}")
        return None


def _log_outcome(campaign, certificate, subject: str, status: str, **details) -> None:
    try:
        EmailLogService.log_delivery(
            campaign_id=campaign.id,
            certificate_id=certificate.id,
            recipient=certificate.email_recipient,
            subject=subject,
            status=status,
            **details,
        )
    except Exception as e:
        logger.error(f"Campaign {campaign.id}: could not log delivery to {certificate.email_recipient}: {e}")


def _deliver(campaign, certificate, table: Optional[ParsedTable], transport: MailTransport, sender: str) -> RecipientOutcome:
    subject = campaign.subject
    try:
        message = build_message(campaign, certificate, table, sender)
        subject = message.subject
        message_id = transport.send(message)
    except Exception as e:
        logger.error(f"Campaign {campaign.id}: delivery to {certificate.email_recipient} failed: {e}")
        _log_outcome(campaign, certificate, subject, EmailLogStatus.FAILED, error=str(e))
        return RecipientOutcome(
            certificate_id=certificate.id,
            recipient=certificate.email_recipient,
            status=EmailLogStatus.FAILED,
            error=str(e),
        )

    CertificateService.mark_email_sent(certificate.id)
    _log_outcome(campaign, certificate, subject, EmailLogStatus.SENT, transport_message_id=message_id)
    return RecipientOutcome(
        certificate_id=certificate.id,
        recipient=certificate.email_recipient,
        status=EmailLogStatus.SENT,
        message_id=message_id,
    )


def send_campaign(campaign_id: int, transport: Optional[MailTransport] = None) -> DispatchSummary:
    """
    Send a draft (or previously failed) campaign

    Args:
        campaign_id: Campaign to send
        transport: Mail transport; defaults to the one selected by MAIL_TRANSPORT

    Returns:
        DispatchSummary with per-recipient outcomes and the terminal status

    Raises:
        NotFoundError: If the campaign does not exist
        AlreadySentError: If the campaign is completed
        InvalidStateError: If the campaign is already sending
    """
    transport = transport or get_mail_transport()
    campaign = CampaignService.claim_for_sending(campaign_id)
    logger.info(f"Sending campaign {campaign_id} for run {campaign.run_id}")
    start_time = time.time()

    summary = DispatchSummary(
        campaign_id=campaign_id,
        status=CampaignStatus.SENDING,
        total_emails=campaign.total_emails,
    )

    try:
        sender = get_settings().mail_from
        run = RunService.get_run(campaign.run_id)
        table = _load_table(run.dataset_id)
        certificates = CertificateService.list_certificates(
            run_id=campaign.run_id, status=CertificateStatus.COMPLETED
        )

        for certificate in certificates:
            if not certificate.email_recipient:
                logger.warning(f"Certificate {certificate.id} has no recipient")
                summary.outcomes.append(RecipientOutcome(
                    certificate_id=certificate.id, recipient=None, status=EmailLogStatus.FAILED,
                    error="missing recipient",
                ))
                continue
            summary.outcomes.append(_deliver(campaign, certificate, table, transport, sender))

        summary.status = CampaignStatus.COMPLETED if summary.failures == 0 else CampaignStatus.ERROR
        CampaignService.finish_campaign(campaign_id, summary.status, summary.emails_sent)

    except Exception as e:
        logger.error(f"Campaign {campaign_id} aborted: {e}")
        CampaignService.mark_campaign_error(campaign_id, emails_sent=summary.emails_sent)
        raise

    summary.processing_time = time.time() - start_time
    logger.info(
        f"Campaign {campaign_id} finished with status {summary.status}: "
        f"{summary.emails_sent} sent, {summary.emails_failed} failed, "
        f"{summary.skipped_no_recipient} without recipient"
    )
    return summary


def preview_messages(campaign_id: int, limit: int = 3) -> List[Dict[str, str]]:
    """Render the first messages of a campaign without sending them"""
    campaign = CampaignService.get_campaign(campaign_id)
    run = RunService.get_run(campaign.run_id)
    table = _load_table(run.dataset_id)
    certificates = CertificateService.list_certificates(
        run_id=campaign.run_id, status=CertificateStatus.COMPLETED
    )

    previews = []
    for certificate in certificates:
        if not certificate.email_recipient:
            continue
        message = build_message(campaign, certificate, table, get_settings().mail_from)
        previews.append({
            "certificate_id": certificate.id,
            "to": message.to,
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        })
        if len(previews) >= limit:
            break
    return previews
