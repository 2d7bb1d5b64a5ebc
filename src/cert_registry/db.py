from __future__ import annotations

from pathlib import Path

import duckdb  # type: ignore
import pandas as pd
from sqlalchemy import create_engine, text


def to_sqlite(df: pd.DataFrame, db_path: Path, table: str = "compliance") -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}")
    with engine.begin() as conn:
        df.to_sql(table, conn, if_exists="replace", index=False)
        if "employee_name" in df.columns:
            conn.execute(
                text(f"CREATE INDEX IF NOT EXISTS idx_{table}_employee ON {table}(employee_name)")
            )
    engine.dispose()


def to_duckdb(df: pd.DataFrame, db_path: Path, table: str = "compliance") -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    con = duckdb.connect(str(db_path))
    try:
        con.register("df", df)
        con.execute(f"CREATE OR REPLACE TABLE {table} AS SELECT * FROM df")
        con.unregister("df")
    finally:
        con.close()


__all__ = ["to_sqlite", "to_duckdb"]
