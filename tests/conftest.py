import pytest

from certify.config import reset_settings
from certify.database.connection import close_database, init_database
from certify.database.services import GroupService, DatasetService, TemplateService, RunService
from certify.errors import TransportError


class FakeTransport:
    """Records outbound messages; raises TransportError for listed recipients"""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def send(self, message):
        if message.to in self.fail_for:
            raise TransportError(f"mailbox unavailable: {message.to}")
        self.sent.append(message)
        return f"fake-{len(self.sent)}"


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'certify.db'}")
    monkeypatch.setenv("VERIFICATION_BASE_URL", "https://verify.test/v")
    monkeypatch.setenv("CERTIFICATE_BASE_URL", "https://certs.test/c")
    monkeypatch.setenv("MAIL_TRANSPORT", "log")
    monkeypatch.setenv("MAIL_FROM", "Certify Tests <tests@certify.test>")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    close_database()
    reset_settings()

    success, message = init_database()
    assert success, message
    yield
    close_database()
    reset_settings()


@pytest.fixture
def group():
    return GroupService.create_group("Turma 2024", "Evening cohort")


@pytest.fixture
def make_dataset(group):
    def _make(raw, name="roster.csv"):
        return DatasetService.create_dataset(group.id, name, raw)
    return _make


@pytest.fixture
def make_template(group):
    def _make(document, name="Certificate"):
        return TemplateService.create_template(group.id, name, document)
    return _make


@pytest.fixture
def make_run(make_dataset, make_template):
    def _make(raw, document, name_column="nome", email_column="email", name="Run"):
        dataset = make_dataset(raw)
        template = make_template(document)
        return RunService.create_run(dataset.id, template.id, name_column, email_column, name)
    return _make


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def make_transport():
    return FakeTransport
