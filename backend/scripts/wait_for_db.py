from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.database import engine


def wait_for_database(attempts: int, delay_seconds: float) -> bool:
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError:
            print(f"Waiting for the place store ({attempt}/{attempts})...")
            time.sleep(delay_seconds)
    return False


def main() -> None:
    parser = argparse.ArgumentParser(description="Block until the database accepts connections.")
    parser.add_argument("--attempts", type=int, default=60)
    parser.add_argument("--delay", type=float, default=2.0)
    args = parser.parse_args()

    if not wait_for_database(args.attempts, args.delay):
        raise SystemExit("Database did not become ready in time.")
    print("Database is ready.")


if __name__ == "__main__":
    main()
