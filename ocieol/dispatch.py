import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date

from ocieol.eol import DigestRecord, EolBatch, utc_today
from ocieol.oci.annotation import AnnotationError, Annotator

logger = logging.getLogger(__name__)


class BatchAnnotationError(Exception):
    """Raised after a batch completed with failed annotations.

    `batch` holds the failed digests and can be fed back to `annotate`.
    """

    def __init__(self, batch: EolBatch):
        self.batch = batch
        self.failed = len(batch.eolDigests)
        super().__init__(f"Failed to annotate {self.failed} digests for EOL.")


class FailureLedger:
    """Digests that could not be annotated, safe to append to from any thread"""

    def __init__(self):
        self._records: list[DigestRecord] = []
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._records)

    def __bool__(self):
        return len(self) > 0

    @property
    def records(self) -> list[DigestRecord]:
        with self._lock:
            return list(self._records)

    def add(self, digest: str, eol_date: date):
        with self._lock:
            self._records.append(DigestRecord(digest=digest, eolDate=eol_date))

    def to_batch(self, today: date | None = None) -> EolBatch:
        return EolBatch(eolDate=today or utc_today(), eolDigests=self.records)

    def raise_for_failures(self, today: date | None = None):
        if not self:
            logger.info("All digests were annotated")
            return
        batch = self.to_batch(today)
        logger.error("JSON for rerunning failed annotations:\n\n%s\n", batch.dumps())
        raise BatchAnnotationError(batch)


def annotate_digest(
    record: DigestRecord,
    default_date: date,
    annotator: Annotator,
    ledger: FailureLedger,
    skip_check: bool = False,
    dry_run: bool = False,
):
    eol_date = record.effective_date(default_date)
    try:
        if not skip_check and annotator.is_annotated(record.digest):
            logger.info("Digest '%s' is already annotated for EOL", record.digest)
            return
        if dry_run:
            logger.info("[dry-run] Would annotate EOL for digest '%s' (%s)", record.digest, eol_date)
            return
        logger.info("Annotating EOL for digest '%s'", record.digest)
        annotator.annotate(record.digest, eol_date)
    except AnnotationError as e:
        logger.error("Failed to annotate EOL for digest '%s': %s", record.digest, e.reason)
        ledger.add(record.digest, eol_date)
    except Exception:
        logger.exception("Unexpected error annotating EOL for digest '%s'", record.digest)
        ledger.add(record.digest, eol_date)
    else:
        logger.info("Annotated EOL for digest '%s' (%s)", record.digest, eol_date)


def annotate_digests(
    batch: EolBatch,
    annotator: Annotator,
    skip_check: bool = False,
    dry_run: bool = False,
    max_workers: int | None = None,
) -> FailureLedger:
    """Annotate every digest of `batch` in parallel

    A failing digest does not stop the others, it is recorded in the
    returned ledger, whatever the error.
    """
    ledger = FailureLedger()
    logger.info("Annotating %d digests for EOL", len(batch.eolDigests))
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [
            executor.submit(
                annotate_digest,
                record,
                default_date=batch.eolDate,
                annotator=annotator,
                ledger=ledger,
                skip_check=skip_check,
                dry_run=dry_run,
            )
            for record in batch.eolDigests
        ]
    for future in futures:
        future.result()
    return ledger
