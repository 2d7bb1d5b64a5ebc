import duckdb  # type: ignore

from cert_registry.models import COLLECTIONS, EMPLOYEES, POSITIONS, Employee, Position
from cert_registry.warehouse import DuckDBRepository, ensure_schema


def test_ensure_schema_is_idempotent(tmp_path) -> None:
    db_path = tmp_path / "registry.duckdb"
    ensure_schema(db_path)
    ensure_schema(db_path)

    with duckdb.connect(str(db_path)) as con:
        tables = {r[0] for r in con.execute("SELECT table_name FROM information_schema.tables").fetchall()}
    assert set(COLLECTIONS) <= tables


def test_updates_keep_creation_order_and_active_column(tmp_path) -> None:
    repo = DuckDBRepository(tmp_path / "registry.duckdb")
    first = repo.insert(POSITIONS, Position(title="Welder").to_record())
    repo.insert(POSITIONS, Position(title="Fitter").to_record())

    repo.update(POSITIONS, {**first, "active": False})
    assert [r["title"] for r in repo.find_all(POSITIONS)] == ["Welder", "Fitter"]
    assert [r["title"] for r in repo.find_all_active(POSITIONS)] == ["Fitter"]

    with duckdb.connect(str(repo.db_path)) as con:
        flags = con.execute("SELECT natural_key, active FROM positions ORDER BY seq").fetchall()
    assert flags == [("welder", False), ("fitter", True)]


def test_payload_round_trips_nested_values(tmp_path) -> None:
    repo = DuckDBRepository(tmp_path / "registry.duckdb")
    emp = Employee(name="Ann", positions=[{"_id": "p1"}, "p2"], primary_position="p2", id="e1")
    repo.insert(EMPLOYEES, emp.to_record())

    loaded = Employee.from_record(repo.find_by_id(EMPLOYEES, "e1"))
    assert loaded.positions == [{"_id": "p1"}, "p2"]
    assert loaded.primary_position == "p2"
