import json

import pytest

from certify.database.services import DatasetService, RunService, TemplateService
from certify.dataset_processor import (
    ParsedTable, ingest, decode_dataset, decode_canonical, parse_legacy_columns,
    parse_legacy_rows, encode_table, get_dataset_info, validate_dataset_size, require_columns
)
from certify.errors import MalformedInputError, ColumnNotFoundError, InvalidStateError, NotFoundError


def test_ingest_header_and_rows():
    table = ingest("nome,email\nAna,ana@x.com\nBeto,beto@x.com\n")
    assert table.columns == ["nome", "email"]
    assert table.rows == [
        {"nome": "Ana", "email": "ana@x.com"},
        {"nome": "Beto", "email": "beto@x.com"},
    ]


def test_ingest_strips_quotes_and_whitespace():
    table = ingest('"nome" , "curso"\n  "Ana" ,  "Python"  ')
    assert table.columns == ["nome", "curso"]
    assert table.rows == [{"nome": "Ana", "curso": "Python"}]


def test_ingest_drops_blank_lines_and_pads_short_rows():
    table = ingest("nome,email,curso\n\nAna,ana@x.com\n   \nBeto,b@x.com,SQL,extra\n")
    assert table.row_count == 2
    assert table.rows[0] == {"nome": "Ana", "email": "ana@x.com", "curso": ""}
    assert table.rows[1] == {"nome": "Beto", "email": "b@x.com", "curso": "SQL"}


def test_ingest_keeps_rows_with_empty_cells():
    table = ingest("nome,email\n,b@x.com")
    assert table.rows == [{"nome": "", "email": "b@x.com"}]


def test_quoted_comma_shifts_cells():
    table = ingest('nome,curso\n"Silva, Ana",Python')
    assert table.rows == [{"nome": "Silva", "curso": "Ana"}]


def test_ingest_header_only():
    table = ingest("nome,email")
    assert table.columns == ["nome", "email"]
    assert table.row_count == 0


@pytest.mark.parametrize("raw", ["", "   \n  \n", '""', ",,"])
def test_ingest_without_columns_is_malformed(raw):
    with pytest.raises(MalformedInputError):
        ingest(raw)


def test_decode_canonical_requires_json_arrays():
    assert decode_canonical("Ana,X", "nome,curso") is None
    assert decode_canonical('{"a": 1}', '["a"]') is None

    table = decode_canonical('[{"nome": "Ana", "curso": "X"}, ["Beto", "Y"]]', '["nome", "curso"]')
    assert table.rows == [{"nome": "Ana", "curso": "X"}, {"nome": "Beto", "curso": "Y"}]


def test_parse_legacy_columns_accepts_json_or_comma_text():
    assert parse_legacy_columns('["nome", "curso"]') == ["nome", "curso"]
    assert parse_legacy_columns("nome, curso") == ["nome", "curso"]
    assert parse_legacy_columns("  ") == []


def test_legacy_header_line_is_skipped_when_it_contains_first_column():
    columns = ["nome", "curso"]
    assert len(parse_legacy_rows("nome,curso\nAna,X\nBeto,Y", columns)) == 2
    assert len(parse_legacy_rows("Ana,X\nBeto,Y", columns)) == 2


def test_decode_dataset_reads_both_encodings_the_same_way():
    legacy = decode_dataset("nome,curso\nAna,X\n\nBeto,Y", "nome,curso")
    rows_data, columns_data = encode_table(legacy)
    canonical = decode_dataset(rows_data, columns_data)
    assert canonical.columns == legacy.columns
    assert canonical.rows == legacy.rows


def test_encode_table_writes_json_arrays_in_column_order():
    rows_data, columns_data = encode_table(ParsedTable(["b", "a"], [{"a": "1", "b": "2"}]))
    assert json.loads(columns_data) == ["b", "a"]
    assert list(json.loads(rows_data)[0].keys()) == ["b", "a"]


def test_get_dataset_info_counts_empty_cells():
    table = ingest("nome,email\nAna,ana@x.com\n,b@x.com\nCaio,")
    info = get_dataset_info(table, preview_rows=2)
    assert info["total_rows"] == 3
    assert info["total_columns"] == 2
    assert info["empty_cells"] == {"nome": 1, "email": 1}
    assert info["complete_rows"] == 1
    assert info["preview"] == [
        {"nome": "Ana", "email": "ana@x.com"},
        {"nome": "", "email": "b@x.com"},
    ]


def test_validate_dataset_size():
    table = ingest("nome\nA\nB\nC")
    validate_dataset_size(table, 3)
    with pytest.raises(MalformedInputError):
        validate_dataset_size(table, 2)


def test_require_columns_names_the_missing_column():
    table = ingest("nome,email\nAna,a@x.com")
    require_columns(table, "nome", "email")
    with pytest.raises(ColumnNotFoundError) as exc_info:
        require_columns(table, "nome", "e-mail")
    assert exc_info.value.column == "e-mail"
    assert exc_info.value.available == ["nome", "email"]


# Store-level behaviour

def test_create_dataset_stores_canonical_encoding(group):
    dataset = DatasetService.create_dataset(group.id, "roster.csv", "nome,email\nAna,ana@x.com")
    assert json.loads(dataset.columns_data) == ["nome", "email"]
    assert json.loads(dataset.rows_data) == [{"nome": "Ana", "email": "ana@x.com"}]
    assert dataset.to_dict()["row_count"] == 1


def test_create_dataset_rejects_oversized_roster(group, monkeypatch):
    from certify.config import reset_settings

    monkeypatch.setenv("MAX_DATASET_ROWS", "1")
    reset_settings()
    with pytest.raises(MalformedInputError):
        DatasetService.create_dataset(group.id, "big.csv", "nome\nA\nB")
    assert DatasetService.list_datasets(group.id) == []


def test_create_dataset_for_unknown_group():
    with pytest.raises(NotFoundError):
        DatasetService.create_dataset(999, "roster.csv", "nome\nAna")


def test_migrate_legacy_dataset(group):
    dataset = DatasetService.import_legacy_dataset(group.id, "Turma", "nome,curso\nAna,X\nBeto,Y", "nome,curso")

    result = DatasetService.migrate_legacy(dataset.id)
    assert result == {"rows_converted": 2, "columns_converted": 2, "migrated": True}

    migrated = DatasetService.get_dataset(dataset.id)
    assert migrated.processed_at is not None
    assert json.loads(migrated.columns_data) == ["nome", "curso"]
    assert migrated.table().rows == [{"nome": "Ana", "curso": "X"}, {"nome": "Beto", "curso": "Y"}]


def test_migrate_legacy_is_idempotent(group):
    dataset = DatasetService.import_legacy_dataset(group.id, "Turma", "nome,curso\nAna,X\nBeto,Y", "nome,curso")
    first = DatasetService.migrate_legacy(dataset.id)
    after_first = DatasetService.get_dataset(dataset.id)

    second = DatasetService.migrate_legacy(dataset.id)
    after_second = DatasetService.get_dataset(dataset.id)

    assert (second["rows_converted"], second["columns_converted"]) == (first["rows_converted"], first["columns_converted"])
    assert second["migrated"] is False
    assert after_second.rows_data == after_first.rows_data
    assert after_second.columns_data == after_first.columns_data
    assert after_second.processed_at == after_first.processed_at


def test_migrate_legacy_json_columns_without_header_line(group):
    dataset = DatasetService.import_legacy_dataset(group.id, "Turma", "Ana,X\n\nBeto,Y\n", '["nome","curso"]')
    result = DatasetService.migrate_legacy(dataset.id)
    assert result["rows_converted"] == 2
    assert result["columns_converted"] == 2


def test_migrate_legacy_without_columns_leaves_dataset_untouched(group):
    dataset = DatasetService.import_legacy_dataset(group.id, "Broken", "Ana,X", "")
    with pytest.raises(MalformedInputError):
        DatasetService.migrate_legacy(dataset.id)

    unchanged = DatasetService.get_dataset(dataset.id)
    assert unchanged.rows_data == "Ana,X"
    assert unchanged.columns_data == ""
    assert unchanged.processed_at is None


def test_migrate_unknown_dataset():
    with pytest.raises(NotFoundError):
        DatasetService.migrate_legacy(12345)


def test_run_can_read_legacy_dataset_before_migration(group):
    dataset = DatasetService.import_legacy_dataset(
        group.id, "Turma", "nome,email\nAna,ana@x.com", "nome,email"
    )
    template = TemplateService.create_template(group.id, "T", "Ola {{nome}}")
    run = RunService.create_run(dataset.id, template.id, "nome", "email", "Legacy run")
    assert run.total_rows == 1


def test_update_dataset_reingests_raw_text(group):
    dataset = DatasetService.create_dataset(group.id, "roster.csv", "nome\nAna")
    updated = DatasetService.update_dataset(dataset.id, name="renamed.csv", raw="nome,curso\nAna,X\nBeto,Y")
    assert updated.name == "renamed.csv"
    assert updated.table().columns == ["nome", "curso"]
    assert updated.table().row_count == 2


def test_delete_dataset_referenced_by_run(group):
    dataset = DatasetService.create_dataset(group.id, "roster.csv", "nome,email\nAna,a@x.com")
    template = TemplateService.create_template(group.id, "T", "{{nome}}")
    RunService.create_run(dataset.id, template.id, "nome", "email", "Run")

    with pytest.raises(InvalidStateError):
        DatasetService.delete_dataset(dataset.id)

    other = DatasetService.create_dataset(group.id, "other.csv", "nome\nBeto")
    assert DatasetService.delete_dataset(other.id) == other.id
    with pytest.raises(NotFoundError):
        DatasetService.get_dataset(other.id)
