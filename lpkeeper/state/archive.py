"""
Archive for transaction-log entries pruned from the state document.

Pruned records are written as gzip-compressed newline-delimited JSON under
`<state_dir>/archive/`. When an S3 bucket is configured (constructor argument
or env `LPK_ARCHIVE_S3_BUCKET`) the archive file is uploaded with boto3.
Upload is best effort: the local gzip file is always kept.
"""

from __future__ import annotations

import gzip
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from lpkeeper.core.json_utils import dumps as json_dumps, loads as json_loads

log = logging.getLogger("lpkeeper")


class TxArchive:
    def __init__(self, state_dir: str, s3_bucket: Optional[str] = None, s3_prefix: str = "lpkeeper/") -> None:
        self.dir = Path(state_dir) / "archive"
        self._bucket = s3_bucket if s3_bucket is not None else os.getenv("LPK_ARCHIVE_S3_BUCKET")
        self._prefix = s3_prefix
        self._seq = 0

    def write(self, records: Sequence[Dict[str, Any]]) -> Optional[Path]:
        """Write records to a new gzip file (blocking; call from an executor)."""
        if not records:
            return None
        self.dir.mkdir(parents=True, exist_ok=True)
        self._seq += 1
        gz_path = self.dir / f"tx_log_{int(time.time() * 1000)}_{self._seq}.jsonl.gz"
        with gzip.open(gz_path, "wt", encoding="utf-8") as fh:
            for rec in records:
                fh.write(json_dumps(rec) + "\n")
            fh.flush()
        log.info(json_dumps({"event": "tx_log_archived", "path": str(gz_path), "records": len(records)}))
        if self._bucket:
            self._upload(gz_path)
        return gz_path

    def _upload(self, gz_path: Path) -> bool:
        import boto3
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            s3 = boto3.client("s3")
            s3.upload_file(str(gz_path), self._bucket, self._prefix + gz_path.name)
        except (BotoCoreError, ClientError, OSError) as exc:
            log.warning(json_dumps({"event": "tx_log_archive_upload_failed", "path": str(gz_path), "err": str(exc)}))
            return False
        return True

    def read_all(self) -> List[Dict[str, Any]]:
        """All archived records, oldest file first."""
        out: List[Dict[str, Any]] = []
        if not self.dir.exists():
            return out
        for path in sorted(self.dir.glob("tx_log_*.jsonl.gz")):
            with gzip.open(path, "rt", encoding="utf-8") as fh:
                for ln in fh:
                    ln = ln.strip()
                    if ln:
                        out.append(json_loads(ln))
        return out
