from __future__ import annotations

import math
from datetime import datetime

from cert_registry.compliance import (
    COMPLIANT,
    EXPIRED,
    EXPIRING,
    MISSING,
    CertificateSummary,
    Snapshot,
    certificate_summary,
    compute_compliance,
    query_compliance,
    select_certificate,
)
from cert_registry.models import (
    CERTIFICATES,
    EMPLOYEES,
    POSITION_REQUIREMENTS,
    POSITIONS,
    Certificate,
    Employee,
    Position,
    PositionRequirement,
)
from cert_registry.repository import MemoryRepository

NOW = datetime(2024, 6, 1)


def _cert(cid, name, ctype, expires, created=None):
    return Certificate(
        id=cid,
        staff_member_name=name,
        position_id=None,
        certificate_type_name=ctype,
        issue_date=datetime(2023, 1, 1),
        expiration_date=expires,
        created_at=created,
    )


def _snapshot(certificates=None) -> Snapshot:
    positions = [
        Position(title="Welder", id="pw"),
        Position(title="Fitter", id="pf"),
        Position(title="Empty", id="pe"),
        Position(title="No Rules", id="pn"),
        Position(title="Closed", id="px", active=False),
    ]
    requirements = [
        PositionRequirement(position_id="pw", certificate_type_name="First Aid", id="r1"),
        PositionRequirement(position_id="pw", certificate_type_name="Confined Space", id="r2"),
        PositionRequirement(position_id="pw", certificate_type_name="Forklift", is_required=False, id="r3"),
        PositionRequirement(position_id="pw", certificate_type_name="Gas Test", active=False, id="r4"),
        PositionRequirement(position_id="pf", certificate_type_name="First Aid", id="r5"),
        PositionRequirement(position_id="pe", certificate_type_name="First Aid", id="r6"),
        PositionRequirement(position_id="px", certificate_type_name="First Aid", id="r7"),
    ]
    employees = [
        Employee(name="Ann", positions=["pw", {"_id": "pf"}, "px"], primary_position="pw", id="ann"),
        Employee(name="Bob", positions=["pw"], primary_position="pw", id="bob"),
        Employee(name="Carl", positions=["pw"], primary_position="pw", active=False, id="carl"),
        Employee(name="Dee", positions=["pn"], primary_position="pn", id="dee"),
    ]
    if certificates is None:
        certificates = [
            _cert("a-old", "Ann", "First Aid", datetime(2024, 1, 1)),
            _cert("a-new", "Ann", "first aid", datetime(2025, 1, 1)),
            _cert("a-cs", "Ann", "Confined Space", datetime(2024, 6, 20)),
            _cert("b-fa", "Bob", "First Aid", datetime(2024, 5, 1)),
            _cert("b-cs", "BOB", "Confined Space", datetime(2026, 1, 1)),
        ]
    return Snapshot(
        employees=employees,
        positions=positions,
        requirements=requirements,
        certificates=certificates,
    )


def _outcomes(report, employee_id, position_id):
    return {
        r.certificate_type_name: r.outcome
        for r in report.records
        if r.employee_id == employee_id and r.position_id == position_id
    }


def test_requirement_outcomes() -> None:
    report = compute_compliance(_snapshot(), NOW)

    assert _outcomes(report, "ann", "pw") == {"First Aid": COMPLIANT, "Confined Space": EXPIRING}
    assert _outcomes(report, "ann", "pf") == {"First Aid": COMPLIANT}
    # name match is exact, so "BOB" does not count for Bob
    assert _outcomes(report, "bob", "pw") == {"First Aid": EXPIRED, "Confined Space": MISSING}
    assert not [r for r in report.records if r.employee_id == "carl"]
    assert not [r for r in report.records if r.position_id == "px"]

    ann_fa = next(
        r for r in report.records
        if r.employee_id == "ann" and r.position_id == "pw" and r.certificate_type_name == "First Aid"
    )
    assert ann_fa.matched_certificate.id == "a-new"
    assert ann_fa.days_until_expiration == 214


def test_position_and_organization_rollup() -> None:
    report = compute_compliance(_snapshot(), NOW)
    by_id = {p.position_id: p for p in report.positions}

    welder = by_id["pw"]
    assert welder.employee_count == 2
    assert (welder.total, welder.compliant, welder.expiring, welder.expired, welder.missing) == (4, 2, 1, 1, 1)
    assert welder.rate == 0.5
    assert welder.rate_percent == 50

    assert by_id["pf"].rate == 1.0
    assert by_id["pe"].employee_count == 0
    assert by_id["pe"].rate == 0.0
    assert not by_id["pe"].ranked
    assert by_id["pn"].employee_count == 1
    assert by_id["pn"].total == 0
    assert not by_id["pn"].ranked
    assert "px" not in by_id

    org = report.organization
    assert (org.total, org.compliant) == (5, 3)
    assert org.rate == 0.6
    assert org.employee_count == 3
    assert report.rate == 0.6

    entries = {(e.employee_id, e.position_id): e for e in report.employees}
    assert entries[("ann", "pw")].is_primary
    assert not entries[("ann", "pf")].is_primary
    assert entries[("bob", "pw")].rate == 0.0


def test_ranking_skips_empty_positions() -> None:
    report = compute_compliance(_snapshot(), NOW)
    ranked = report.positions_needing_attention()
    assert [p.position_id for p in ranked] == ["pw", "pf"]
    for p in report.positions:
        assert not math.isnan(p.rate)


def test_latest_expiration_wins_in_any_order() -> None:
    older = _cert("c2024", "Ann", "First Aid", datetime(2024, 12, 31))
    newer = _cert("c2025", "Ann", "First Aid", datetime(2025, 12, 31))
    assert select_certificate([older, newer]).id == "c2025"
    assert select_certificate([newer, older]).id == "c2025"
    assert select_certificate([]) is None

    same_a = _cert("x1", "Ann", "First Aid", datetime(2025, 1, 1), created=datetime(2024, 1, 1))
    same_b = _cert("x2", "Ann", "First Aid", datetime(2025, 1, 1), created=datetime(2024, 2, 1))
    assert select_certificate([same_b, same_a]).id == "x2"
    assert select_certificate([same_a, same_b]).id == "x2"


def test_expired_latest_match_is_not_replaced_by_nothing() -> None:
    certs = [_cert("only", "Ann", "First Aid", datetime(2024, 1, 1))]
    report = compute_compliance(_snapshot(certs), NOW)
    assert _outcomes(report, "ann", "pf") == {"First Aid": EXPIRED}


def test_frames() -> None:
    report = compute_compliance(_snapshot(), NOW)
    frame = report.to_frame()
    assert len(frame) == 5
    assert str(frame["days_until_expiration"].dtype) == "Int64"
    missing = frame[frame["outcome"] == MISSING]
    assert missing["certificate_id"].isna().all()

    positions = report.positions_frame()
    assert set(positions["position_id"]) == {"pw", "pf", "pe", "pn"}


def _seed(repo: MemoryRepository) -> None:
    snap = _snapshot()
    for p in snap.positions:
        repo.insert(POSITIONS, p.to_record())
    for r in snap.requirements:
        repo.insert(POSITION_REQUIREMENTS, r.to_record())
    for e in snap.employees:
        repo.insert(EMPLOYEES, e.to_record())
    for c in snap.certificates:
        repo.insert(CERTIFICATES, c.to_record())
    # legacy field names on a stored certificate
    repo.insert(
        CERTIFICATES,
        {"id": "d-fa", "staffMember": "Dee", "certType": "First Aid", "expirationDate": "2025-05-01"},
    )


def test_query_compliance_from_repository() -> None:
    repo = MemoryRepository()
    _seed(repo)

    everyone = query_compliance(repo, now=NOW)
    assert everyone.organization.total == 5

    bob = query_compliance(repo, "bob", now=NOW)
    assert {r.employee_id for r in bob.records} == {"bob"}
    assert bob.organization.total == 2
    assert bob.organization.compliant == 0


def test_query_unknown_employee_is_empty() -> None:
    repo = MemoryRepository()
    _seed(repo)

    report = query_compliance(repo, "nobody", now=NOW)
    assert report.records == []
    assert report.organization.total == 0
    assert report.rate == 0.0
    assert report.positions_needing_attention() == []


def test_legacy_certificate_fields_are_matched() -> None:
    repo = MemoryRepository()
    _seed(repo)
    rule = PositionRequirement(position_id="pn", certificate_type_name="First Aid", id="r8")
    repo.insert(POSITION_REQUIREMENTS, rule.to_record())

    report = query_compliance(repo, "dee", now=NOW)
    assert _outcomes(report, "dee", "pn") == {"First Aid": COMPLIANT}
    assert report.records[0].matched_certificate.id == "d-fa"


def test_certificate_summary_counts_every_record() -> None:
    repo = MemoryRepository()
    _seed(repo)

    everyone = certificate_summary(repo, now=NOW)
    assert everyone == CertificateSummary(total=6, active=3, expiring_soon=1, expired=2)
    assert everyone.to_dict() == {"total": 6, "active": 3, "expiringSoon": 1, "expired": 2}

    ann = certificate_summary(repo, "ann", NOW)
    assert (ann.total, ann.active, ann.expiring_soon, ann.expired) == (3, 1, 1, 1)

    # exact name: "BOB" is someone else's certificate
    bob = certificate_summary(repo, "bob", NOW)
    assert (bob.total, bob.expired) == (1, 1)

    assert certificate_summary(repo, "nobody", NOW) == CertificateSummary()
