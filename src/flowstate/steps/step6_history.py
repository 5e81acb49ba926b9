#!/usr/bin/env python3
"""
step6_history.py - Step 6: Generation History
=============================================

Persist a reference-only record of every generation round and animation
sub-run: ids, labels, kinds, MIME types, URIs and content digests. Media
bytes are never stored.

Data:
- SQLite (dev, default) or any SQLAlchemy URL

Listing is newest first. Callers treat history writes as best-effort.

Dependencies: SQLAlchemy
"""

from __future__ import annotations

import json
import argparse
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models import BatchResult, HistoryRecord, new_id

Base = declarative_base()

logger = logging.getLogger("flowstate.history")

# ---------------------------------------------------------------------------
# Database Models
# ---------------------------------------------------------------------------

class HistoryEntry(Base):
    """One generation round or animation sub-run."""
    __tablename__ = "history_records"

    id = Column(String, primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    kind = Column(String, nullable=False)  # "generation" or "animation"
    mode = Column(String, nullable=False)
    inputs_summary = Column(JSON, nullable=False, default=dict)
    asset_refs = Column(JSON, nullable=False, default=list)

    def to_record(self) -> HistoryRecord:
        ts = self.timestamp
        if ts is not None and ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return HistoryRecord(
            id=self.id,
            timestamp=ts,
            kind=self.kind,
            mode=self.mode,
            inputs_summary=dict(self.inputs_summary or {}),
            asset_refs=list(self.asset_refs or []),
        )


def record_from_result(result: BatchResult, kind: str, inputs_summary: Optional[dict] = None) -> HistoryRecord:
    """Build a reference-only history record for a finished round."""
    return HistoryRecord(
        id=new_id("hist"),
        timestamp=datetime.now(timezone.utc),
        kind=kind,
        mode=result.mode,
        inputs_summary={
            **(inputs_summary or {}),
            "round_id": result.round_id,
            "missing_labels": result.missing_labels,
        },
        asset_refs=[a.to_dict() for a in result.assets],
    )


# ---------------------------------------------------------------------------
# History Store
# ---------------------------------------------------------------------------

class HistoryStore:
    """Manage the history database."""

    def __init__(self, db_url: str = "sqlite:///flowstate_history.db"):
        self.db_url = db_url
        engine_kwargs = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(db_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        Base.metadata.create_all(bind=self.engine)
        logger.info(f"History database initialized: {db_url}")

    def get_session(self) -> Session:
        return self.SessionLocal()

    def append(self, record: HistoryRecord) -> HistoryRecord:
        with self.get_session() as session:
            session.add(HistoryEntry(
                id=record.id,
                timestamp=record.timestamp,
                kind=record.kind,
                mode=record.mode,
                inputs_summary=record.inputs_summary,
                asset_refs=record.asset_refs,
            ))
            session.commit()
        logger.info(f"Stored history record {record.id} ({record.kind}, {len(record.asset_refs)} assets)")
        return record

    def list(self, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Records ordered newest first."""
        with self.get_session() as session:
            query = session.query(HistoryEntry).order_by(HistoryEntry.timestamp.desc())
            if limit is not None:
                query = query.limit(limit)
            return [row.to_record() for row in query.all()]

    def get(self, record_id: str) -> Optional[HistoryRecord]:
        with self.get_session() as session:
            row = session.get(HistoryEntry, record_id)
            return row.to_record() if row else None

    def clear(self) -> int:
        with self.get_session() as session:
            deleted = session.query(HistoryEntry).delete()
            session.commit()
        logger.info(f"Cleared {deleted} history records")
        return deleted


# ---------------------------------------------------------------------------
# CLI Interface
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Step 6: Generation History",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", default="sqlite:///flowstate_history.db", help="Database URL")
    parser.add_argument("--limit", type=int, default=20, help="Number of records to show")
    parser.add_argument("--json", action="store_true", help="Print records as JSON")
    parser.add_argument("--clear", action="store_true", help="Delete all history records")
    args = parser.parse_args()

    store = HistoryStore(args.db)
    if args.clear:
        print(f"🗑️  Removed {store.clear()} history records")
        return

    records = store.list(limit=args.limit)
    if args.json:
        print(json.dumps([
            {
                "id": r.id,
                "timestamp": r.timestamp.isoformat(),
                "kind": r.kind,
                "mode": r.mode,
                "inputs_summary": r.inputs_summary,
                "asset_refs": r.asset_refs,
            }
            for r in records
        ], indent=2))
        return

    if not records:
        print("📭 No history yet")
        return
    print(f"📚 {len(records)} most recent records:")
    for r in records:
        labels = ", ".join(a.get("label", "?") for a in r.asset_refs) or "no assets"
        print(f"   {r.timestamp:%Y-%m-%d %H:%M:%S}  {r.kind:<10} {r.mode:<10} {labels}")


if __name__ == "__main__":
    main()
