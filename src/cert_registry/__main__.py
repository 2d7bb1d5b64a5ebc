from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from .assignments import repair_employees
from .compliance import ALL, certificate_summary, query_compliance
from .config import Settings
from .dates import format_dmy, parse_import_date, to_datetime
from .db import to_duckdb, to_sqlite
from .errors import CertRegistryError, RepositoryError
from .importer import ImportAborted, import_excel
from .io_excel import write_csv, write_import_template, write_report_xlsx
from .logconfig import configure_logging
from .paths import resolve_duckdb_path
from .registry import (
    add_requirement,
    assign_position,
    change_primary_position,
    create_certificate_type,
    create_employee,
    create_position,
    deactivate_certificate_type,
    deactivate_employee,
    deactivate_position,
    deactivate_requirement,
    load_certificates,
    migrate_certificate_aliases,
    refresh_statuses,
    renew_certificate,
    unassign_position,
    update_certificate_type,
    update_employee,
    update_position,
    update_requirement,
)
from .reminders import DueConfig, certificates_frame, compute_due, latest_only, reminder_records, write_ics
from .warehouse import DuckDBRepository

log = logging.getLogger("cert_registry.cli")


def _repo(args: argparse.Namespace) -> DuckDBRepository:
    return DuckDBRepository(resolve_duckdb_path(getattr(args, "duckdb", None)))


def _settings(args: argparse.Namespace) -> Settings:
    return Settings.from_env(getattr(args, "env_file", None))


def _now(args: argparse.Namespace) -> datetime:
    raw = getattr(args, "as_of", None)
    if not raw:
        return datetime.now()
    parsed = parse_import_date(raw)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"--as-of: cannot read date {raw!r}")
    return to_datetime(parsed) or datetime.now()


def _cli_date(raw: str):
    parsed = parse_import_date(raw)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"cannot read date {raw!r} (use DD/MM/YYYY or YYYY-MM-DD)")
    return parsed


def cmd_import(args: argparse.Namespace) -> int:
    xls = Path(args.xls)
    if not xls.exists():
        print(f"File not found: {xls}", file=sys.stderr)
        return 2
    repo = _repo(args)
    try:
        result = import_excel(xls, repo, args.sheet, settings=_settings(args))
    except ImportAborted as exc:
        stats = exc.stats
        print(str(exc), file=sys.stderr)
        print(f"Rows written before the failure: {stats.processed_count}", file=sys.stderr)
        return 1
    stats = result.stats
    print(result.message)
    print(
        f"  new positions={stats.new_positions} employees={stats.new_employees} "
        f"certificate types={stats.new_cert_types}"
    )
    for err in stats.errors:
        print(f"  row {err.row}: {err.reason}")
    return 0


def cmd_template(args: argparse.Namespace) -> int:
    out = write_import_template(Path(args.out))
    print(f"Wrote import template: {out}")
    return 0


def cmd_fix_positions(args: argparse.Namespace) -> int:
    settings = _settings(args)
    summary = repair_employees(_repo(args), fallback=settings.fallback_position, dry_run=args.dry_run)
    verb = "would fix" if args.dry_run else "fixed"
    print(f"{verb}={summary.fixed} skipped={summary.skipped} errors={summary.errors}")
    for report in summary.reports:
        print(
            f"  {report.employee_id}: removed={len(report.positions_removed)} "
            f"added={len(report.positions_added)} primary_changed={report.primary_changed}"
        )
    for rid, reason in summary.failures:
        print(f"  {rid}: {reason}", file=sys.stderr)
    return 0 if summary.errors == 0 else 1


def cmd_compliance(args: argparse.Namespace) -> int:
    settings = _settings(args)
    report = query_compliance(
        _repo(args), args.employee or ALL, _now(args), window=settings.expiring_window
    )
    org = report.organization
    print(
        f"Overall compliance: {org.rate_percent}% ({org.compliant}/{org.total} requirement instances, "
        f"{org.employee_count} employees)"
    )
    for pos in report.positions_needing_attention():
        print(
            f"  {pos.rate_percent:>3}%  {pos.position_title} [{pos.department}] "
            f"employees={pos.employee_count} expired={pos.expired} missing={pos.missing}"
        )

    if args.out:
        out = Path(args.out)
        if out.suffix.lower() == ".csv":
            write_csv(report.to_frame(), out)
        else:
            write_report_xlsx(report, out)
        print(f"Wrote {out}")
    if args.sqlite:
        to_sqlite(report.to_frame(), Path(args.sqlite), table="compliance")
        to_sqlite(report.positions_frame(), Path(args.sqlite), table="position_compliance")
        print(f"SQLite DB: {args.sqlite}")
    if args.export_duckdb:
        to_duckdb(report.to_frame(), Path(args.export_duckdb), table="compliance")
        print(f"DuckDB: {args.export_duckdb}")
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    settings = _settings(args)
    summary = certificate_summary(
        _repo(args), args.employee or ALL, _now(args), window=settings.expiring_window
    )
    print(
        f"Certificates: {summary.total} total, {summary.active} active, "
        f"{summary.expiring_soon} expiring soon, {summary.expired} expired"
    )
    return 0


def cmd_due(args: argparse.Namespace) -> int:
    settings = _settings(args)
    now = _now(args)
    days = args.days if args.days is not None else settings.reminder_threshold_days
    cfg = DueConfig(window_days=days, include_overdue=not args.no_overdue)
    certs = load_certificates(_repo(args))
    if not args.all_history:
        certs = latest_only(certs)

    records = sorted(reminder_records(certs, now, cfg), key=lambda r: r.days_until_expiration)
    for rec in records:
        print(
            f"{rec.days_until_expiration:>5}d  {format_dmy(rec.expiration_date)}  "
            f"{rec.staff_member_name}  {rec.certificate_type_name}"
        )
    print(f"{len(records)} certificate(s) due within {days} days")

    if args.out or args.ics:
        due = compute_due(certificates_frame(certs), as_of=now, cfg=cfg)
        if args.out:
            write_csv(due, Path(args.out))
            print(f"Wrote due list CSV: {args.out} ({len(due)} rows)")
        if args.ics:
            write_ics(due, Path(args.ics))
            print(f"Wrote ICS calendar: {args.ics}")
    return 0


def cmd_refresh_status(args: argparse.Namespace) -> int:
    changed = refresh_statuses(_repo(args), _now(args), settings=_settings(args))
    print(f"Updated status on {changed} certificate(s)")
    return 0


def cmd_migrate_cert_types(args: argparse.Namespace) -> int:
    touched = migrate_certificate_aliases(_repo(args), dry_run=args.dry_run)
    print(f"{'Would rewrite' if args.dry_run else 'Rewrote'} {touched} certificate(s)")
    return 0


def cmd_position_add(args: argparse.Namespace) -> int:
    pos = create_position(_repo(args), args.title, args.department, settings=_settings(args))
    print(f"{pos.id}\t{pos.title}\t{pos.department}")
    return 0


def cmd_position_deactivate(args: argparse.Namespace) -> int:
    pos = deactivate_position(_repo(args), args.position_id)
    print(f"deactivated {pos.id}\t{pos.title}")
    return 0


def cmd_position_update(args: argparse.Namespace) -> int:
    pos = update_position(
        _repo(args), args.position_id, title=args.title, department=args.department, settings=_settings(args)
    )
    print(f"{pos.id}\t{pos.title}\t{pos.department}")
    return 0


def cmd_cert_type_add(args: argparse.Namespace) -> int:
    ctype = create_certificate_type(
        _repo(args), args.name, args.months, args.description, settings=_settings(args)
    )
    print(f"{ctype.id}\t{ctype.name}\t{ctype.validity_period_months} months")
    return 0


def cmd_cert_type_deactivate(args: argparse.Namespace) -> int:
    ctype = deactivate_certificate_type(_repo(args), args.type_id)
    print(f"deactivated {ctype.id}\t{ctype.name}")
    return 0


def cmd_cert_type_update(args: argparse.Namespace) -> int:
    ctype = update_certificate_type(
        _repo(args), args.type_id, name=args.name, validity_period_months=args.months, description=args.description
    )
    print(f"{ctype.id}\t{ctype.name}\t{ctype.validity_period_months} months")
    return 0


def cmd_requirement_add(args: argparse.Namespace) -> int:
    req = add_requirement(
        _repo(args),
        args.position_id,
        args.certificate_type,
        args.months,
        is_required=not args.optional,
        notes=args.notes,
        settings=_settings(args),
    )
    print(f"{req.id}\t{req.certificate_type_name}\t{req.validity_period_months} months")
    return 0


def cmd_requirement_deactivate(args: argparse.Namespace) -> int:
    req = deactivate_requirement(_repo(args), args.requirement_id)
    print(f"deactivated {req.id}")
    return 0


def cmd_requirement_update(args: argparse.Namespace) -> int:
    req = update_requirement(
        _repo(args),
        args.requirement_id,
        certificate_type_name=args.certificate_type,
        validity_period_months=args.months,
        is_required=args.required,
        notes=args.notes,
    )
    kind = "required" if req.is_required else "optional"
    print(f"{req.id}\t{req.certificate_type_name}\t{req.validity_period_months} months\t{kind}")
    return 0


def cmd_employee_add(args: argparse.Namespace) -> int:
    emp = create_employee(
        _repo(args),
        args.name,
        email=args.email,
        positions=args.position or [],
        primary_position=args.primary,
    )
    print(f"{emp.id}\t{emp.name}\tpositions={len(emp.positions)}")
    return 0


def _print_employee(emp) -> None:
    state = "" if emp.active else "\tinactive"
    print(f"{emp.id}\t{emp.name}\tpositions={len(emp.positions)}\tprimary={emp.primary_position or '-'}{state}")


def cmd_employee_update(args: argparse.Namespace) -> int:
    _print_employee(update_employee(_repo(args), args.employee_id, name=args.name, email=args.email))
    return 0


def cmd_employee_assign(args: argparse.Namespace) -> int:
    _print_employee(assign_position(_repo(args), args.employee_id, args.position_id))
    return 0


def cmd_employee_unassign(args: argparse.Namespace) -> int:
    _print_employee(unassign_position(_repo(args), args.employee_id, args.position_id))
    return 0


def cmd_employee_set_primary(args: argparse.Namespace) -> int:
    _print_employee(change_primary_position(_repo(args), args.employee_id, args.position_id))
    return 0


def cmd_employee_deactivate(args: argparse.Namespace) -> int:
    _print_employee(deactivate_employee(_repo(args), args.employee_id))
    return 0


def cmd_renew(args: argparse.Namespace) -> int:
    cert = renew_certificate(
        _repo(args),
        args.certificate_id,
        args.issue_date,
        args.expiry_date,
        now=_now(args),
        settings=_settings(args),
    )
    print(
        f"{cert.id}\t{cert.staff_member_name}\t{cert.certificate_type_name}\t"
        f"expires {format_dmy(cert.expiration_date)} ({cert.status.value})"
    )
    return 0


def _common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--duckdb", help="Path to the DuckDB registry (default: env DUCKDB_DB_PATH or warehouse/)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cert_registry", description="Certification compliance registry")
    p.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    p.add_argument("--log-file", help="Log file path (default: warehouse/logs/cert-registry.log)")
    p.add_argument("--env-file", dest="env_file", help="Optional .env file with CERT_REGISTRY_* settings")
    sub = p.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("import", help="Import certificate rows from an XLS/XLSX workbook")
    pi.add_argument("xls", help="Path to the workbook")
    pi.add_argument("--sheet", help="Sheet name (default: first sheet)")
    _common(pi)
    pi.set_defaults(func=cmd_import)

    pt = sub.add_parser("template", help="Write an empty import template workbook")
    pt.add_argument("out", help="Output .xlsx path")
    pt.set_defaults(func=cmd_template)

    pf = sub.add_parser("fix-positions", help="Repair employee position assignments")
    pf.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    _common(pf)
    pf.set_defaults(func=cmd_fix_positions)

    pc = sub.add_parser("compliance", help="Compute compliance for one employee or everyone")
    pc.add_argument("--employee", help="Employee id (default: all)")
    pc.add_argument("--as-of", dest="as_of", help="Reference date (default: now)")
    pc.add_argument("--out", help="Optional .xlsx or .csv report path")
    pc.add_argument("--sqlite", help="Optional SQLite DB to write report tables to")
    pc.add_argument("--export-duckdb", dest="export_duckdb", help="Optional DuckDB file to write the report table to")
    _common(pc)
    pc.set_defaults(func=cmd_compliance)

    ps = sub.add_parser("summary", help="Count certificates by status for everyone or one employee")
    ps.add_argument("--employee", help="Employee id (default: all certificates)")
    ps.add_argument("--as-of", dest="as_of", help="Reference date (default: now)")
    _common(ps)
    ps.set_defaults(func=cmd_summary)

    pd_ = sub.add_parser("due", help="List certificates nearing or past expiration")
    pd_.add_argument("--days", type=int, help="Days ahead to include (default: CERT_REGISTRY_REMINDER_THRESHOLD_DAYS or 60)")
    pd_.add_argument("--as-of", dest="as_of", help="Reference date (default: now)")
    pd_.add_argument("--no-overdue", action="store_true", help="Leave out certificates that already expired")
    pd_.add_argument("--all-history", action="store_true", help="Include certificates replaced by a later one")
    pd_.add_argument("--out", help="Optional CSV path for the due list")
    pd_.add_argument("--ics", help="Optional ICS calendar path to write")
    _common(pd_)
    pd_.set_defaults(func=cmd_due)

    pr = sub.add_parser("refresh-status", help="Recompute the cached status of every certificate")
    pr.add_argument("--as-of", dest="as_of", help="Reference date (default: now)")
    _common(pr)
    pr.set_defaults(func=cmd_refresh_status)

    pm = sub.add_parser("migrate-cert-types", help="Rewrite legacy certificate field names to canonical ones")
    pm.add_argument("--dry-run", action="store_true")
    _common(pm)
    pm.set_defaults(func=cmd_migrate_cert_types)

    ppos = sub.add_parser("position", help="Manage positions")
    ppos_sub = ppos.add_subparsers(dest="position_cmd", required=True)
    ppa = ppos_sub.add_parser("add", help="Create a position")
    ppa.add_argument("title")
    ppa.add_argument("--department", help="Department (default: General)")
    _common(ppa)
    ppa.set_defaults(func=cmd_position_add)
    ppd = ppos_sub.add_parser("deactivate", help="Deactivate a position")
    ppd.add_argument("position_id")
    _common(ppd)
    ppd.set_defaults(func=cmd_position_deactivate)
    ppu = ppos_sub.add_parser("update", help="Rename a position or change its department")
    ppu.add_argument("position_id")
    ppu.add_argument("--title")
    ppu.add_argument("--department")
    _common(ppu)
    ppu.set_defaults(func=cmd_position_update)

    pct = sub.add_parser("cert-type", help="Manage certificate types")
    pct_sub = pct.add_subparsers(dest="cert_type_cmd", required=True)
    pcta = pct_sub.add_parser("add", help="Create a certificate type")
    pcta.add_argument("name")
    pcta.add_argument("--months", type=int, help="Validity period in months (default: 12)")
    pcta.add_argument("--description")
    _common(pcta)
    pcta.set_defaults(func=cmd_cert_type_add)

    pctd = pct_sub.add_parser("deactivate", help="Deactivate a certificate type")
    pctd.add_argument("type_id")
    _common(pctd)
    pctd.set_defaults(func=cmd_cert_type_deactivate)
    pctu = pct_sub.add_parser("update", help="Change a certificate type")
    pctu.add_argument("type_id")
    pctu.add_argument("--name")
    pctu.add_argument("--months", type=int, help="Validity period in months")
    pctu.add_argument("--description")
    _common(pctu)
    pctu.set_defaults(func=cmd_cert_type_update)

    preq = sub.add_parser("requirement", help="Manage position requirements")
    preq_sub = preq.add_subparsers(dest="requirement_cmd", required=True)
    pra = preq_sub.add_parser("add", help="Require a certificate type for a position")
    pra.add_argument("position_id")
    pra.add_argument("certificate_type")
    pra.add_argument("--months", type=int, help="Validity period (default: the type's)")
    pra.add_argument("--optional", action="store_true", help="Record as recommended, not required")
    pra.add_argument("--notes")
    _common(pra)
    pra.set_defaults(func=cmd_requirement_add)
    prd = preq_sub.add_parser("deactivate", help="Deactivate a requirement")
    prd.add_argument("requirement_id")
    _common(prd)
    prd.set_defaults(func=cmd_requirement_deactivate)
    pru = preq_sub.add_parser("update", help="Change a requirement")
    pru.add_argument("requirement_id")
    pru.add_argument("--certificate-type", dest="certificate_type")
    pru.add_argument("--months", type=int, help="Validity period in months")
    kind = pru.add_mutually_exclusive_group()
    kind.add_argument("--required", dest="required", action="store_const", const=True)
    kind.add_argument("--optional", dest="required", action="store_const", const=False)
    pru.add_argument("--notes")
    _common(pru)
    pru.set_defaults(func=cmd_requirement_update)

    pemp = sub.add_parser("employee", help="Manage employees")
    pemp_sub = pemp.add_subparsers(dest="employee_cmd", required=True)
    pea = pemp_sub.add_parser("add", help="Create an employee")
    pea.add_argument("name")
    pea.add_argument("--email")
    pea.add_argument("--position", action="append", help="Position id (repeatable)")
    pea.add_argument("--primary", help="Primary position id (default: first --position)")
    _common(pea)
    pea.set_defaults(func=cmd_employee_add)
    peu = pemp_sub.add_parser("update", help="Change an employee's name or email")
    peu.add_argument("employee_id")
    peu.add_argument("--name")
    peu.add_argument("--email")
    _common(peu)
    peu.set_defaults(func=cmd_employee_update)
    for name, func, text in (
        ("assign", cmd_employee_assign, "Add a position to an employee"),
        ("unassign", cmd_employee_unassign, "Remove a position from an employee"),
        ("set-primary", cmd_employee_set_primary, "Make one of the employee's positions primary"),
    ):
        pep = pemp_sub.add_parser(name, help=text)
        pep.add_argument("employee_id")
        pep.add_argument("position_id")
        _common(pep)
        pep.set_defaults(func=func)
    ped = pemp_sub.add_parser("deactivate", help="Deactivate an employee")
    ped.add_argument("employee_id")
    _common(ped)
    ped.set_defaults(func=cmd_employee_deactivate)

    prn = sub.add_parser("renew", help="Record a renewal of an existing certificate")
    prn.add_argument("certificate_id")
    prn.add_argument("--issue-date", dest="issue_date", type=_cli_date, required=True)
    prn.add_argument("--expiry-date", dest="expiry_date", type=_cli_date, help="Default: issue date + validity")
    prn.add_argument("--as-of", dest="as_of", help="Reference date for the status (default: now)")
    _common(prn)
    prn.set_defaults(func=cmd_renew)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    try:
        return int(args.func(args))
    except argparse.ArgumentTypeError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except RepositoryError as exc:
        log.error("storage failure: %s", exc)
        print(f"Storage error: {exc}", file=sys.stderr)
        return 1
    except CertRegistryError as exc:
        print(str(exc), file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
