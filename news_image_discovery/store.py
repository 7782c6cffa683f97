##########################################################################################
#
# Script name: store.py
#
# Description: Date-partitioned metadata ledger with idempotent per-article appends.
#
##########################################################################################

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from .errors import StoreError
from .models import BatchReport, MetadataRecord
from .utils import stable_id, utc_now_iso


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

METADATA_DIRNAME = 'metadata'
PARTITION_PREFIX = 'image-metadata-'
SUMMARY_PREFIX = 'batch-summary-'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def partition_day(record: MetadataRecord) -> str:
    return record.created_at.date().isoformat()


def record_id_for(record: MetadataRecord) -> str:
    return f'{partition_day(record)}:{stable_id(record.article_url, str(record.schema_version))}'


def _write_atomic(path: Path, payload: dict[str, Any]) -> None:
    try:
        text = json.dumps(payload, ensure_ascii=True, indent=2, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise StoreError(StoreError.SERIALIZATION_FAILURE, str(path), str(exc)) from exc
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(text + '\n')
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as exc:
        raise StoreError(StoreError.IO_FAILURE, str(path), str(exc)) from exc


class MetadataStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.metadata_dir = self.root / METADATA_DIRNAME
        self._lock = threading.Lock()

    def partition_path(self, day: str) -> Path:
        return self.metadata_dir / f'{PARTITION_PREFIX}{day}.json'

    def _read_payload(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with path.open('r', encoding='utf-8') as handle:
                payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise StoreError(StoreError.SERIALIZATION_FAILURE, str(path), str(exc)) from exc
        except OSError as exc:
            raise StoreError(StoreError.IO_FAILURE, str(path), str(exc)) from exc
        if not isinstance(payload, dict):
            raise StoreError(StoreError.SERIALIZATION_FAILURE, str(path), 'partition is not a JSON object')
        return payload

    def append(self, record: MetadataRecord) -> str:
        '''
        Write a record into its day partition and return its record id.

        The partition keeps one record per (article_url, schema_version). A newer
        or equally recent record replaces the prior one; an older one is dropped.
        '''
        day = partition_day(record)
        path = self.partition_path(day)
        record_id = record_id_for(record)
        try:
            incoming = record.to_dict()
        except (TypeError, ValueError, AttributeError) as exc:
            raise StoreError(StoreError.SERIALIZATION_FAILURE, str(path), str(exc)) from exc

        with self._lock:
            payload = self._read_payload(path)
            records = list(payload.get('records') or [])
            kept: list[dict[str, Any]] = []
            for existing in records:
                same_key = (
                    existing.get('article_url') == record.article_url
                    and existing.get('schema_version') == record.schema_version
                )
                if not same_key:
                    kept.append(existing)
                    continue
                try:
                    existing_created = MetadataRecord.from_dict(existing).created_at
                except (KeyError, TypeError, ValueError) as exc:
                    raise StoreError(StoreError.SERIALIZATION_FAILURE, str(path), str(exc)) from exc
                if existing_created > record.created_at:
                    log.info('Keeping newer record for %s (%s)', record.article_url, existing_created.isoformat())
                    return record_id
            kept.append(incoming)
            payload = {
                'date': day,
                'schema_version': record.schema_version,
                'total_articles': len(kept),
                'total_images': sum(len(item.get('images') or []) for item in kept),
                'generated_at': utc_now_iso(),
                'records': kept,
            }
            _write_atomic(path, payload)
        log.debug('Stored metadata record %s in %s', record_id, path)
        return record_id

    def load_partition(self, day: str) -> list[MetadataRecord]:
        path = self.partition_path(day)
        payload = self._read_payload(path)
        records = []
        for item in payload.get('records') or []:
            try:
                records.append(MetadataRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                raise StoreError(StoreError.SERIALIZATION_FAILURE, str(path), str(exc)) from exc
        return records

    def latest_by_url(self, day: str) -> dict[str, MetadataRecord]:
        latest: dict[str, MetadataRecord] = {}
        for record in self.load_partition(day):
            current = latest.get(record.article_url)
            if current is None or record.created_at >= current.created_at:
                latest[record.article_url] = record
        return latest

    def write_batch_summary(self, report: BatchReport, day: str) -> Path:
        path = self.metadata_dir / f'{SUMMARY_PREFIX}{day}.json'
        payload = {'date': day, 'generated_at': utc_now_iso(), **report.to_dict()}
        with self._lock:
            _write_atomic(path, payload)
        return path
