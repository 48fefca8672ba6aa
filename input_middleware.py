import csv
import logging
import os
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import tldextract

log = logging.getLogger(__name__)

# Offline extractor: bundled public suffix snapshot, no HTTP fetch at runtime.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


class ConfigError(Exception):
    """Missing/malformed input file or bad arguments. Fatal before any work."""


@dataclass(frozen=True)
class ASNRecord:
    cdn_name: str
    asn_list: Tuple[str, ...]


@dataclass(frozen=True)
class DomainJob:
    rank: Optional[int]
    domain: str
    line_no: int = 0

    @property
    def valid(self) -> bool:
        return bool(self.domain)


def _clean(token: str) -> str:
    return token.strip().strip('"').strip()


def read_asn_records(path: str) -> List[ASNRecord]:
    """
    Read the CDN/ASN list.

    The first column of the header must be ``cdn_name``. Every following field
    may hold several comma-separated ASNs (a quoted "13335,209242" is common).
    Rows for the same CDN are merged in first-seen order.
    """
    if not os.path.isfile(path):
        raise ConfigError(f"CDN list not found: {path}")

    merged = {}
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as fh:
            reader = csv.reader(fh)
            header = next(reader, None)
            if not header or _clean(header[0]) != "cdn_name":
                raise ConfigError(f"{path}: expected a header row starting with 'cdn_name'")
            for row in reader:
                if not row or not _clean(row[0]):
                    continue
                cdn = _clean(row[0])
                asns = merged.setdefault(cdn, [])
                for field in row[1:]:
                    for token in field.split(","):
                        token = _clean(token)
                        if token and token not in asns:
                            asns.append(token)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise ConfigError(f"cannot read CDN list {path}: {e}") from e

    if not merged:
        raise ConfigError(f"{path}: no CDN rows")
    return [ASNRecord(cdn, tuple(asns)) for cdn, asns in merged.items()]


def read_cdn_names(path: str) -> List[str]:
    return [r.cdn_name for r in read_asn_records(path)]


def registrable_domain(host: str) -> str:
    ext = _EXTRACT(host or "")
    if not ext.suffix or not ext.domain:
        return host
    return f"{ext.domain}.{ext.suffix}"


def _parse_domain_line(line: str, line_no: int, sld: bool) -> DomainJob:
    parts = [p.strip() for p in line.split(",")]
    if len(parts) < 2 or not parts[1]:
        return DomainJob(rank=None, domain="", line_no=line_no)
    try:
        rank = int(parts[0])
    except ValueError:
        rank = None
    domain = parts[1].rstrip(".").lower()
    if sld:
        domain = registrable_domain(domain)
    return DomainJob(rank=rank, domain=domain, line_no=line_no)


def count_domain_rows(path: str) -> int:
    """Pre-count non-blank rows so progress/ETA are exact without buffering."""
    if not os.path.isfile(path):
        raise ConfigError(f"domain list not found: {path}")
    n = 0
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as fh:
            for line in fh:
                if line.strip():
                    n += 1
    except OSError as e:
        raise ConfigError(f"cannot read domain list {path}: {e}") from e
    return n


def iter_domain_jobs(path: str, sld: bool = False) -> Iterator[DomainJob]:
    """
    Lazily yield one DomainJob per non-blank ``rank,domain`` row.
    Rows without a domain column still yield a job (flagged invalid) so every
    counted row gets exactly one result downstream.
    """
    with open(path, "r", encoding="utf-8", errors="ignore") as fh:
        for line_no, line in enumerate(fh, start=1):
            s = line.strip()
            if not s:
                continue
            job = _parse_domain_line(s, line_no, sld)
            if not job.valid:
                log.warning("Invalid line format (line %d): %s", line_no, s)
            yield job
