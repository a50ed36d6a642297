from feedaudit.mapping import (
    MISSING_ID_PLACEHOLDER,
    build_records,
    normalize_column_mapping,
    project_record,
    resolve_product_id,
)
from feedaudit.parser import ParsedRow


def test_normalize_column_mapping_resolves_labels_and_drops_empty_targets():
    mapping = normalize_column_mapping(
        {"Ref": "Identifiant", "Name": "title", "Cost": "Prix", "Notes": "", "Extra": "my_field"}
    )

    assert mapping == {"Ref": "id", "Name": "title", "Cost": "price", "Extra": "my_field"}


def test_project_record_renames_columns_and_fills_missing_values():
    record = project_record({"Ref": "A1", "Name": None}, {"Ref": "id", "Name": "title", "Cost": "price"})

    assert record == {"id": "A1", "title": "", "price": ""}


def test_resolve_product_id_uses_a_line_numbered_placeholder():
    assert resolve_product_id({"id": " SKU-1 "}, 2) == "SKU-1"
    assert resolve_product_id({"id": "  "}, 5) == f"{MISSING_ID_PLACEHOLDER}#5"
    assert resolve_product_id({}, 7) == "NO_ID_MAPPED#7"


def test_build_records_keeps_unmapped_columns_out_of_the_record():
    rows = [
        ParsedRow(line_number=2, values={"Ref": "A1", "Name": "Lamp", "Internal": "x"}),
        ParsedRow(line_number=3, values={"Ref": "", "Name": "Chair", "Internal": "y"}),
    ]

    records = build_records(rows, {"Ref": "id", "Name": "Titre"})

    assert [record.product_id for record in records] == ["A1", "NO_ID_MAPPED#3"]
    assert records[0].values == {"id": "A1", "title": "Lamp"}
    assert records[1].line_number == 3
