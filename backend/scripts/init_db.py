import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import models  # noqa: F401  registers the tables on Base.metadata
from app.database import Base, engine


def main() -> None:
    Base.metadata.create_all(bind=engine)
    print(f"Database initialized with {len(Base.metadata.tables)} discovery tables.")


if __name__ == "__main__":
    main()
