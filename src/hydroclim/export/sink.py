#!/usr/bin/env python3
"""hydroclim.export.sink

CSV table sink.

Each table lands as `{output_dir}/{name}.csv` with header `date,<band1>,...`
and no index column. Writes go to a temp file in the same directory and are
moved into place with os.replace, so a reader sees either the whole table or
nothing.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from hydroclim.errors import SinkFailure
from hydroclim.features.table import OutputTable

logger = logging.getLogger(__name__)


class CsvTableSink:
    def __init__(self, output_dir: Path, overwrite: bool = False) -> None:
        self.output_dir = Path(output_dir)
        self.overwrite = overwrite

    def path_for(self, name: str) -> Path:
        return self.output_dir / f"{name}.csv"

    def write_table(self, table: OutputTable, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise SinkFailure(f"Invalid destination name: {name!r}")

        out_path = self.path_for(name)
        if out_path.exists() and not self.overwrite:
            raise SinkFailure(f"Output already exists (use overwrite to replace): {out_path}")

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.output_dir, prefix=f".{name}.", suffix=".tmp")
        except OSError as e:
            raise SinkFailure(f"Cannot prepare {out_path}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                table.to_frame().to_csv(f, index=False, lineterminator="\n")
            os.replace(tmp_path, out_path)
        except OSError as e:
            raise SinkFailure(f"Failed to write {out_path}: {e}") from e
        finally:
            # Gone after a successful replace; left over on any failure
            tmp_path.unlink(missing_ok=True)

        logger.debug(f"Wrote {len(table.rows)} rows -> {out_path}")
        return out_path
