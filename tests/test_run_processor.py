import pytest

from certify import run_processor
from certify.campaign_dispatcher import send_campaign
from certify.database.models import RunStatus, CertificateStatus
from certify.database.services import (
    RunService, CertificateService, CampaignService, DatasetService, EmailLogService, TemplateService
)
from certify.errors import ColumnNotFoundError, InvalidStateError, NotFoundError, MalformedInputError
from certify.run_processor import execute_run, issue_certificate, SkipReason

ROSTER = "nome,email\nAna,ana@x.com\n,b@x.com"


def test_execute_skips_rows_without_name(make_run):
    run = make_run(ROSTER, "Ola {{nome}}")

    summary = execute_run(run.id)

    assert summary.status == RunStatus.COMPLETED
    assert summary.certificates_generated == 1
    assert summary.rows_skipped == 1
    assert summary.rows_failed == 0
    assert [outcome.skip_reason for outcome in summary.outcomes] == [None, SkipReason.MISSING_NAME]

    certificates = CertificateService.list_certificates(run_id=run.id)
    assert len(certificates) == 1
    certificate = certificates[0]
    assert certificate.row_index == 0
    assert certificate.rendered_html == "Ola Ana"
    assert certificate.status == CertificateStatus.COMPLETED
    assert certificate.subject_name == "Ana"
    assert certificate.email_recipient == "ana@x.com"
    assert certificate.verification_url == "https://verify.test/v/1"
    assert certificate.row == {"nome": "Ana", "email": "ana@x.com"}

    stored = RunService.get_run(run.id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.certificates_generated == 1
    assert stored.started_at is not None
    assert stored.completed_at is not None


def test_row_index_follows_original_position(make_run):
    run = make_run("nome,email\n,a@x.com\nBeto,beto@x.com\nCaio,", "{{nome}}")

    summary = execute_run(run.id)

    assert summary.certificates_generated == 1
    assert [outcome.skip_reason for outcome in summary.outcomes] == [
        SkipReason.MISSING_NAME, None, SkipReason.MISSING_EMAIL
    ]
    certificate = CertificateService.list_certificates(run_id=run.id)[0]
    assert certificate.row_index == 1
    assert certificate.verification_url.endswith("/2")


def test_name_column_is_published_under_aliases(make_run):
    run = make_run(
        "aluno,contato,curso\nAna Silva,ana@x.com,Python",
        "{{name}} | {{nome}} | {{aluno}} | {{curso}} | {{data}}",
        name_column="aluno",
        email_column="contato",
    )

    execute_run(run.id)

    certificate = CertificateService.list_certificates(run_id=run.id)[0]
    assert certificate.rendered_html == "Ana Silva | Ana Silva | Ana Silva | Python | {{data}}"


def test_run_with_no_valid_rows_ends_in_error(make_run):
    run = make_run("nome,email\n,a@x.com\nBeto,", "{{nome}}")

    summary = execute_run(run.id)

    assert summary.status == RunStatus.ERROR
    assert summary.certificates_generated == 0
    stored = RunService.get_run(run.id)
    assert stored.status == RunStatus.ERROR
    assert stored.certificates_generated == 0
    assert stored.completed_at is not None
    assert CertificateService.list_certificates(run_id=run.id) == []


def test_execute_twice_is_rejected(make_run):
    run = make_run(ROSTER, "{{nome}}")
    execute_run(run.id)

    with pytest.raises(InvalidStateError):
        execute_run(run.id)
    assert CertificateService.count_for_run(run.id) == 1


def test_errored_run_cannot_be_retried(make_run):
    run = make_run("nome,email\n,a@x.com", "{{nome}}")
    execute_run(run.id)

    with pytest.raises(InvalidStateError):
        execute_run(run.id)


def test_processing_run_cannot_be_claimed_again(make_run):
    run = make_run(ROSTER, "{{nome}}")
    RunService.claim_for_processing(run.id)

    with pytest.raises(InvalidStateError):
        execute_run(run.id)
    assert RunService.get_run(run.id).status == RunStatus.PROCESSING


def test_execute_unknown_run():
    with pytest.raises(NotFoundError):
        execute_run(4242)


def test_render_failure_skips_row_without_aborting(make_run, monkeypatch):
    run = make_run("nome,email\nAna,ana@x.com\nBeto,beto@x.com", "{{nome}}")
    real_render = run_processor.render

    def flaky_render(template, fields):
        if fields.get("nome") == "Beto":
            raise ValueError("bad row")
        return real_render(template, fields)

    monkeypatch.setattr(run_processor, "render", flaky_render)

    summary = execute_run(run.id)

    assert summary.status == RunStatus.COMPLETED
    assert summary.certificates_generated == 1
    assert summary.rows_failed == 1
    assert summary.outcomes[1].skip_reason == SkipReason.RENDER_FAILED
    assert summary.outcomes[1].error == "bad row"


def test_unexpected_failure_forces_error_and_reraises(make_run, monkeypatch):
    run = make_run(ROSTER, "{{nome}}")

    def vanished(template_id):
        raise NotFoundError("Template", template_id)

    monkeypatch.setattr(TemplateService, "get_template", vanished)

    with pytest.raises(NotFoundError):
        execute_run(run.id)

    stored = RunService.get_run(run.id)
    assert stored.status == RunStatus.ERROR
    assert stored.completed_at is not None


def test_failure_partway_keeps_generated_count(make_run, monkeypatch):
    run = make_run("nome,email\nAna,ana@x.com\nBeto,beto@x.com\nCaio,caio@x.com", "{{nome}}")
    real_create = CertificateService.create_certificate
    calls = []

    def create_until_third(**kwargs):
        calls.append(kwargs["row_index"])
        if len(calls) == 3:
            raise RuntimeError("store unavailable")
        return real_create(**kwargs)

    monkeypatch.setattr(CertificateService, "create_certificate", create_until_third)

    with pytest.raises(RuntimeError):
        execute_run(run.id)

    stored = RunService.get_run(run.id)
    assert stored.status == RunStatus.ERROR
    assert stored.completed_at is not None
    assert stored.certificates_generated == 2
    assert CertificateService.count_for_run(run.id) == 2


def test_certificates_never_exceed_snapshot(make_run):
    run = make_run("nome,email\nAna,ana@x.com", "{{nome}}")
    DatasetService.update_dataset(run.dataset_id, raw="nome,email\nAna,ana@x.com\nBeto,beto@x.com")

    summary = execute_run(run.id)

    assert run.total_rows == 1
    assert summary.certificates_generated == 1
    assert CertificateService.count_for_run(run.id) == 1


def test_create_run_validates_columns_before_writing(make_dataset, make_template, group):
    dataset = make_dataset(ROSTER)
    template = make_template("{{nome}}")

    with pytest.raises(ColumnNotFoundError) as exc_info:
        RunService.create_run(dataset.id, template.id, "nome", "e-mail", "Run")
    assert exc_info.value.column == "e-mail"

    with pytest.raises(NotFoundError):
        RunService.create_run(dataset.id, 999, "nome", "email", "Run")
    with pytest.raises(NotFoundError):
        RunService.create_run(999, template.id, "nome", "email", "Run")

    assert RunService.list_runs(group.id) == []


def test_create_run_snapshots_row_count(make_run, group):
    run = make_run(ROSTER, "{{nome}}")
    assert run.status == RunStatus.PENDING
    assert run.total_rows == 2
    assert run.certificates_generated == 0
    assert run.owner_group_id == group.id
    assert [r.id for r in RunService.list_runs(group.id, status=RunStatus.PENDING)] == [run.id]


def test_run_progress(make_run):
    run = make_run(ROSTER, "{{nome}}")
    assert RunService.get_run_progress(run.id)["percentage"] == 0

    execute_run(run.id)

    progress = RunService.get_run_progress(run.id)
    assert progress["status"] == RunStatus.COMPLETED
    assert progress["certificates_generated"] == 1
    assert progress["total_rows"] == 2
    assert progress["percentage"] == 50.0


def test_rename_run(make_run):
    run = make_run(ROSTER, "{{nome}}")
    assert RunService.rename_run(run.id, "Final").name == "Final"


def test_delete_run_cascades(make_run, fake_transport):
    run = make_run("nome,email\nAna,ana@x.com\nBeto,beto@x.com", "{{nome}}")
    execute_run(run.id)
    campaign = CampaignService.create_campaign(run.id, "Envio", "Oi {{nome}}", "Seu certificado")
    send_campaign(campaign.id, fake_transport)
    assert len(EmailLogService.list_logs(campaign.id)) == 2

    result = RunService.delete_run(run.id)

    assert result == {"deleted_id": run.id, "deleted_certificates": 2, "deleted_campaigns": 1}
    assert CertificateService.list_certificates(run_id=run.id) == []
    assert EmailLogService.list_logs(campaign.id) == []
    with pytest.raises(NotFoundError):
        CampaignService.get_campaign(campaign.id)
    with pytest.raises(NotFoundError):
        RunService.get_run(run.id)


def test_delete_unknown_run():
    with pytest.raises(NotFoundError):
        RunService.delete_run(777)


def test_issue_single_certificate(make_dataset, make_template):
    dataset = make_dataset("nome,email,curso\nAna,ana@x.com,Python\n,b@x.com,SQL")
    template = make_template("{{nome}} - {{curso}}")

    certificate = issue_certificate(dataset.id, template.id, 0, "nome", "email")
    assert certificate.run_id is None
    assert certificate.rendered_html == "Ana - Python"
    assert certificate.verification_url == "https://verify.test/v/1"

    with pytest.raises(MalformedInputError):
        issue_certificate(dataset.id, template.id, 1, "nome", "email")
    with pytest.raises(MalformedInputError):
        issue_certificate(dataset.id, template.id, 5, "nome", "email")
    with pytest.raises(ColumnNotFoundError):
        issue_certificate(dataset.id, template.id, 0, "aluno", "email")


def test_delete_certificate(make_run):
    run = make_run(ROSTER, "{{nome}}")
    execute_run(run.id)
    certificate = CertificateService.list_certificates(run_id=run.id)[0]

    assert CertificateService.delete_certificate(certificate.id) == certificate.id
    with pytest.raises(NotFoundError):
        CertificateService.get_certificate(certificate.id)
