from pathlib import Path

from cert_registry.field_map import (
    _load_yaml_overrides,
    canonical_header,
    canonicalize_row,
    certificate_type_of,
    first_present,
    staff_name_of,
)


def test_template_headers_map_to_canonical_keys() -> None:
    assert canonical_header("Name") == "name"
    assert canonical_header("Position Title") == "position_title"
    assert canonical_header("Type") == "certificate_type"
    assert canonical_header("Booking Date") == "issue_date"
    assert canonical_header("Expiry Date") == "expiry_date"
    assert canonical_header("Company") == "email"
    assert canonical_header("Shoe Size") is None


def test_header_matching_ignores_case_spacing_and_notes() -> None:
    assert canonical_header("  booking   date (DD/MM/YYYY) ") == "issue_date"
    assert canonical_header("ＮＡＭＥ") == "name"
    assert canonical_header("position_title") == "position_title"


def test_yaml_overrides_extend_the_map() -> None:
    # docs/field_map.yaml ships with the project
    assert canonical_header("Course") == "certificate_type"
    assert canonical_header("Renewal Date") == "expiry_date"


def test_load_yaml_overrides_reads_lists_only(tmp_path: Path) -> None:
    cfg = tmp_path / "field_map.yaml"
    cfg.write_text("name:\n  - Worker\nbroken: just-a-string\n", encoding="utf-8")
    assert _load_yaml_overrides(cfg) == {"name": ["Worker"]}
    assert _load_yaml_overrides(tmp_path / "missing.yaml") == {}


def test_canonicalize_row_first_non_blank_wins() -> None:
    row = {
        "Employee": "",
        "Name": "Ann Lee",
        "Type": "First Aid",
        "Certificate Type": "Ignored",
        "Notes": "dropped",
    }
    assert canonicalize_row(row) == {"name": "Ann Lee", "certificate_type": "First Aid"}


def test_alias_lists_are_consulted_in_order() -> None:
    record = {"certType": "Old", "certificate_type_name": "New", "staffMember": "Ann"}
    assert certificate_type_of(record) == "New"
    assert certificate_type_of({"certificateName": " Fire Safety "}) == "Fire Safety"
    assert certificate_type_of({"certificate_type_name": "", "cert_type": "Forklift"}) == "Forklift"
    assert staff_name_of(record) == "Ann"
    assert first_present({"a": None}, ["a", "b"]) is None
