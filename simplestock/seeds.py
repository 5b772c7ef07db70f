"""
Baseline data inserted on first run.

A seed only writes to an empty table, so running seeds again (every startup)
never duplicates or overwrites rows the user created.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from .db import DatabaseConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Seed:
    table: str
    columns: Tuple[str, ...]
    rows: Tuple[Tuple[Any, ...], ...]


INITIAL_PRODUCTS = Seed(
    table="products",
    columns=("name", "unit"),
    rows=(
        ("Arroz", "kg"),
        ("Frijoles", "kg"),
        ("Aceite", "litros"),
        ("Azúcar", "kg"),
        ("Sal", "kg"),
        ("Harina", "bultos"),
        ("Pasta", "kg"),
        ("Leche en polvo", "kg"),
    ),
)

SEEDS: List[Seed] = [INITIAL_PRODUCTS]

# Children before parents
CLEAR_ORDER = ("report_details", "reports", "temp_counts", "products")


class SeedRunner:
    """
    Runs registered seeds against the database owned by *db*.

    Usage:
        >>> SeedRunner(db).run_all_seeds()
        8
    """

    def __init__(self, db: DatabaseConnection, seeds: Sequence[Seed] = SEEDS):
        self.db = db
        self.seeds = list(seeds)

    def run_all_seeds(self) -> int:
        """
        Run every seed whose table is empty.

        Returns:
            Total number of rows inserted
        """
        inserted = 0
        for seed in self.seeds:
            inserted += self._run_seed(seed)
        return inserted

    def _run_seed(self, seed: Seed) -> int:
        placeholders = ", ".join(["?"] * len(seed.columns))
        sql = f"INSERT INTO {seed.table} ({', '.join(seed.columns)}) VALUES ({placeholders})"
        with self.db.transaction("IMMEDIATE") as conn:
            existing = conn.execute(f"SELECT COUNT(*) FROM {seed.table}").fetchone()[0]
            if existing > 0:
                logger.debug("Seed %s skipped: table already has %d row(s)", seed.table, existing)
                return 0
            conn.executemany(sql, seed.rows)

        logger.info("Seeded %d row(s) into %s", len(seed.rows), seed.table)
        return len(seed.rows)

    def clear_all_data(self) -> None:
        """Delete all counts, reports and products.  Categories and admin credentials are kept."""
        with self.db.transaction() as conn:
            for table in CLEAR_ORDER:
                conn.execute(f"DELETE FROM {table}")
        logger.warning("All stock data cleared")

    def reset_database(self) -> int:
        """Clear all data and re-run the seeds.  Returns rows inserted."""
        self.clear_all_data()
        return self.run_all_seeds()
