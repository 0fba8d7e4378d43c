"""
JSON file sink for run summaries.
"""

import logging
from pathlib import Path

from ..core.errors import BountyWatchError
from ..core.interfaces import Sink
from ..core.models import RunSummary


logger = logging.getLogger(__name__)


class JsonFileSink(Sink):
    """Writes ``latest-run.json`` and a dated archive copy per day.

    The archive file for a day is written by the first run of that day and
    never overwritten afterwards.
    """

    name = "JsonFileSink"

    def __init__(self, output_dir: str = "output"):
        self.output_dir = Path(output_dir)
        self.archive_dir = self.output_dir / "archive"

    @property
    def latest_path(self) -> Path:
        return self.output_dir / "latest-run.json"

    def archive_path(self, summary: RunSummary) -> Path:
        return self.archive_dir / f"run-{summary.started_at:%Y-%m-%d}.json"

    async def handle(self, item: RunSummary) -> None:
        if not isinstance(item, RunSummary):
            raise BountyWatchError(f"{self.name} cannot handle {type(item).__name__}")

        document = item.model_dump_json(indent=2)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

        tmp = self.latest_path.with_suffix(".json.tmp")
        tmp.write_text(document, encoding="utf-8")
        tmp.replace(self.latest_path)
        logger.info("Wrote %s", self.latest_path)

        archive = self.archive_path(item)
        try:
            with archive.open("x", encoding="utf-8") as f:
                f.write(document)
        except FileExistsError:
            logger.debug("Archive %s already exists, leaving it", archive)
        else:
            logger.info("Archived run %s to %s", item.run_id, archive)
