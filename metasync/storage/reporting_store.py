"""METASYNC: Reporting Store.

Upserts aggregated rows into ``ads_reporting``. A batch with two rows on the
same primary key is rejected before anything is written.
"""

from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from metasync.core.errors import DuplicateStorageKeyError
from metasync.core.logging import get_logger
from metasync.models.insight_models import AggregatedRecord, StorageKey
from metasync.models.reporting_models import AdsReporting

logger = get_logger("storage.reporting")


class ReportingStore:
    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def check_unique_keys(records: List[AggregatedRecord]) -> None:
        seen = set()
        for record in records:
            if record.key in seen:
                raise DuplicateStorageKeyError(
                    f"Duplicate storage key in upsert batch: {record.key}"
                )
            seen.add(record.key)

    def upsert(self, records: List[AggregatedRecord]) -> int:
        """Insert or overwrite each row by primary key. Returns rows written."""
        self.check_unique_keys(records)
        if not records:
            return 0
        try:
            for record in records:
                self.session.merge(AdsReporting.from_aggregated(record))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"Upserted {len(records)} reporting rows", extra={"records": len(records)})
        return len(records)

    def get(self, key: StorageKey) -> Optional[AdsReporting]:
        return self.session.get(AdsReporting, tuple(key.model_dump().values()))

    def count(self, account_id: Optional[str] = None) -> int:
        query = select(func.count()).select_from(AdsReporting)
        if account_id:
            query = query.where(AdsReporting.account_id == account_id)
        return self.session.exec(query).one()
