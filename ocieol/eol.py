"""EOL batch files

```
{ "eolDate": "YYYY-MM-DD", "eolDigests": [ { "digest": "...", "eolDate": "YYYY-MM-DD" } ] }
```

The same file is produced by `generate`, consumed by `annotate` and printed
for failed annotations so a run can be repeated for just those digests.
"""
import logging
from datetime import date, datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class DigestRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    digest: str
    eolDate: date | None = None

    def effective_date(self, default: date) -> date:
        return self.eolDate or default


class EolBatch(BaseModel):
    eolDate: date
    eolDigests: list[DigestRecord] = []

    @field_validator("eolDigests")
    @classmethod
    def unique_digests(cls, value: list[DigestRecord]) -> list[DigestRecord]:
        seen = set()
        for record in value:
            if record.digest in seen:
                raise ValueError(f"Duplicate digest {record.digest}")
            seen.add(record.digest)
        return value

    @classmethod
    def from_digests(cls, digests, eol_date: date) -> "EolBatch":
        """Create a batch without per-digest dates, duplicates are dropped"""
        return cls(
            eolDate=eol_date,
            eolDigests=[DigestRecord(digest=d) for d in dict.fromkeys(digests)],
        )

    @classmethod
    def load(cls, path: Path) -> "EolBatch":
        logger.debug("Loading EOL batch %s", path)
        return cls.model_validate_json(Path(path).read_bytes())

    def dumps(self) -> str:
        return self.model_dump_json(exclude_none=True, indent=2)

    def dump(self, path: Path):
        Path(path).write_text(self.dumps())
        logger.info("Wrote %d EOL digests to %s", len(self.eolDigests), path)
