"""BigQuerySink: streaming inserts of analytics records into one table."""

from __future__ import annotations

import json
import logging

from google.cloud import bigquery

logger = logging.getLogger(__name__)


class BigQuerySink:
    """Insert each record as one row. Unknown fields and invalid rows are skipped."""

    def __init__(self, dataset: str, table: str, client: bigquery.Client | None = None) -> None:
        self._client = client or bigquery.Client()
        self.table_id = f"{self._client.project}.{dataset}.{table}"

    def write(self, record: dict) -> None:
        errors = self._client.insert_rows_json(
            self.table_id,
            [record],
            ignore_unknown_values=True,
            skip_invalid_rows=True,
        )
        if errors:
            logger.error("BigQuery insertion errors: %s", json.dumps(errors, indent=2, default=str))
