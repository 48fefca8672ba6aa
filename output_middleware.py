import csv
import json
import logging
import os

from asn_middleware import ensure_writable
from input_middleware import ConfigError

log = logging.getLogger(__name__)

ATTRIBUTION_FIELDS = ["cdn", "domain_sld", "ip_addr"]


class SinkError(Exception):
    """A result row could not be written to the attribution table."""


def write_json(data, path: str):
    """Write to a sibling temp file, then move into place."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def write_range_table(table, path: str, overwrite: bool = False):
    ensure_writable(path, overwrite)
    try:
        write_json(table.to_dict(), path)
    except OSError as e:
        raise ConfigError(f"cannot write CDN IP map {path}: {e}") from e
    log.info("Wrote CDN to IP mapping to %s", path)


class AttributionSink:
    """
    Append-only ``cdn,domain_sld,ip_addr`` table. Every row is flushed before
    the next is accepted, so the file can be read while a run is in progress.
    """

    def __init__(self, path: str):
        self.path = path
        self.rows = 0
        self._fh = None
        self._writer = None

    def open(self):
        try:
            self._fh = open(self.path, "w", encoding="utf-8", newline="")
            self._writer = csv.writer(self._fh, lineterminator="\n")
            self._writer.writerow(ATTRIBUTION_FIELDS)
            self._fh.flush()
        except OSError as e:
            raise ConfigError(f"cannot create output file {self.path}: {e}") from e
        return self

    def write(self, result):
        try:
            self._writer.writerow(result.row())
            self._fh.flush()
        except (OSError, ValueError, csv.Error) as e:
            raise SinkError(f"error writing {result.domain} to {self.path}: {e}") from e
        self.rows += 1

    def close(self):
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()
        return False
