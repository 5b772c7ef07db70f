#!/usr/bin/env python3
"""
SimpleStock - Entry point.

Initializes the local database (connect, migrate, seed) and reports the
result.  Administrative commands are available through `simplestock --help`.
"""
import sys

from simplestock.bootstrap import close_database, initialize_database
from simplestock.utils.error_formatting import format_error
from simplestock.utils.logging_config import setup_logging


def main() -> int:
    logger = setup_logging()

    try:
        app = initialize_database()
    except Exception as e:
        error = format_error(e, "inicialización")
        logger.critical(error.format_for_log())
        print(error.format_for_display(), file=sys.stderr)
        return 1

    try:
        session = app.new_counting_session()
        print(f"SimpleStock listo: {app.db.db_path}")
        print(f"  Productos activos: {app.product_service.get_active_count()}")
        print(f"  Conteos pendientes: {len(session.counts)}")
        return 0
    finally:
        close_database()


if __name__ == "__main__":
    sys.exit(main())
