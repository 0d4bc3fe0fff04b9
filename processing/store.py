"""
Persistence for the gym collection.

The merge engine does no I/O. This module reads the authoritative collection
once before a run and writes the merged collection once after it, either to
the database or to a JSON file (gyms_raw.json).
"""

import json
from pathlib import Path
from typing import Any, Union

from sqlalchemy import delete
from sqlalchemy.orm import Session

from config.logging import logger
from processing.models import GymRecord


class GymStore:
    """
    Ordered gym collection backed by the gyms table.

    Usage:
        with SessionLocal() as db:
            store = GymStore(db)
            records = store.load_records()
            store.replace_records(merged)
    """

    def __init__(self, db: Session):
        self.db = db

    def load_records(self) -> list[dict[str, Any]]:
        """Return all payloads in collection order."""
        rows = self.db.query(GymRecord).order_by(GymRecord.position).all()
        return [row.payload for row in rows]

    def count(self) -> int:
        return self.db.query(GymRecord).count()

    def replace_records(self, records: list[dict[str, Any]]) -> int:
        """
        Replace the whole collection in one transaction.

        Returns:
            Number of records written
        """
        try:
            self.db.execute(delete(GymRecord))
            for position, payload in enumerate(records):
                self.db.add(GymRecord(
                    position=position,
                    name=payload.get("name"),
                    address=payload.get("address"),
                    payload=payload,
                ))
            self.db.commit()
        except Exception as e:
            logger.error(f"Saving gym collection failed, rolling back: {e}")
            self.db.rollback()
            raise

        logger.info(f"Saved {len(records)} gym records")
        return len(records)


def load_json_records(path: Union[str, Path]) -> list[Any]:
    """Load a JSON array of gym records."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array, got {type(data).__name__}")
    logger.info(f"Loaded {len(data)} records from {path}")
    return data


def write_json_records(path: Union[str, Path], records: Any):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(records, f, ensure_ascii=False, indent=2)
    logger.info(f"Wrote {path}")
