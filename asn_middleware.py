import gzip
import logging
import os
import shutil
import threading
import time
from typing import Dict, Iterable, List, Optional

import requests
from tqdm import tqdm

from input_middleware import ASNRecord, ConfigError
from range_middleware import IPRange, RangeTable

log = logging.getLogger(__name__)

IP2ASN_URL = os.environ.get("CDNSCAPE_IP2ASN_URL", "https://iptoasn.com/data/ip2asn-v4.tsv.gz")
RIPESTAT_URL = os.environ.get(
    "CDNSCAPE_RIPESTAT_URL", "https://stat.ripe.net/data/announced-prefixes/data.json"
)
RIPESTAT_DELAY = float(os.environ.get("CDNSCAPE_RIPESTAT_DELAY", "1.0"))
HTTP_TIMEOUT = float(os.environ.get("CDNSCAPE_HTTP_TIMEOUT", "30.0"))
USER_AGENT = "cdnscape/1"


class FetchError(Exception):
    """The ASN-to-prefix source was unreachable or answered badly."""


def normalize_asn(token) -> Optional[str]:
    """'AS13335', ' "13335" ', 'as13335' -> '13335'; None if not an AS number."""
    s = str(token or "").strip().strip("\"'").strip()
    if s[:2].lower() == "as":
        s = s[2:]
    s = s.strip()
    if not s.isdigit():
        return None
    return str(int(s))


def ensure_writable(path: str, overwrite: bool = False):
    """Refuse to clobber an existing range table unless asked to."""
    if os.path.exists(path) and not overwrite:
        raise ConfigError(
            f"Output file {path} already exists. Use a different path, delete it, or pass --force"
        )


def _new_session() -> requests.Session:
    s = requests.Session()
    s.headers["User-Agent"] = USER_AGENT
    return s


# =============================
# Bulk source: iptoasn.com ip2asn-v4.tsv
# =============================
class Ip2AsnSource:
    """
    Bulk ASN -> range table. Downloaded and decompressed once, cached on disk
    (presence check only), then parsed into memory before any query.
    Rows: range_start  range_end  AS_number  country_code  AS_description
    """

    name = "ip2asn"

    def __init__(self, cache_path: str = "ip2asn-v4.tsv", url: str = IP2ASN_URL,
                 session: Optional[requests.Session] = None, timeout: float = HTTP_TIMEOUT):
        self.cache_path = cache_path
        self.url = url
        self.session = session or _new_session()
        self.timeout = timeout
        self._index: Optional[Dict[str, List[IPRange]]] = None

    def _download(self):
        gz_path = self.cache_path + ".gz"
        tmp_path = self.cache_path + ".part"
        log.info("%s not found, downloading %s", self.cache_path, self.url)
        try:
            try:
                with self.session.get(self.url, stream=True, timeout=self.timeout) as resp:
                    if resp.status_code != 200:
                        raise FetchError(f"non-OK response from {self.url}: HTTP {resp.status_code}")
                    with open(gz_path, "wb") as fh:
                        for chunk in resp.iter_content(chunk_size=1 << 16):
                            if chunk:
                                fh.write(chunk)
            except requests.RequestException as e:
                raise FetchError(f"error downloading {self.url}: {e}") from e

            try:
                with gzip.open(gz_path, "rb") as src, open(tmp_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                os.replace(tmp_path, self.cache_path)
            except (OSError, EOFError) as e:
                raise FetchError(f"error extracting {gz_path}: {e}") from e
        finally:
            for p in (gz_path, tmp_path):
                if os.path.exists(p):
                    os.remove(p)
        log.info("Downloaded and extracted %s", self.cache_path)

    def prepare(self):
        if self._index is not None:
            return
        if os.path.isfile(self.cache_path):
            log.info("%s already exists, using existing file", self.cache_path)
        else:
            self._download()

        index: Dict[str, List[IPRange]] = {}
        rows = 0
        with open(self.cache_path, "r", encoding="utf-8", errors="ignore") as fh:
            for line in fh:
                fields = line.rstrip("\n").split("\t")
                if len(fields) < 5:
                    continue
                asn = normalize_asn(fields[2])
                if not asn or asn == "0":
                    continue
                index.setdefault(asn, []).append(IPRange(fields[0], fields[1]))
                rows += 1
        self._index = index
        log.info("Loaded %d ASN entries (%d ASNs) from %s", rows, len(index), self.cache_path)

    def ranges_for(self, asn: str) -> List[IPRange]:
        if self._index is None:
            self.prepare()
        found = self._index.get(asn)
        if not found:
            raise FetchError(f"no IP ranges found for AS{asn}")
        return list(found)


# =============================
# Remote per-ASN source: RIPEstat announced-prefixes
# =============================
class RipeStatSource:
    """Per-ASN prefix API. A fixed delay separates consecutive requests."""

    name = "ripestat"

    def __init__(self, session: Optional[requests.Session] = None, delay: float = RIPESTAT_DELAY,
                 timeout: float = HTTP_TIMEOUT, url: str = RIPESTAT_URL):
        self.session = session or _new_session()
        self.delay = max(0.0, float(delay))
        self.timeout = timeout
        self.url = url
        self._lock = threading.Lock()
        self._last = 0.0

    def prepare(self):
        pass

    def _throttle(self):
        with self._lock:
            since = time.monotonic() - self._last
            if self._last and since < self.delay:
                time.sleep(self.delay - since)
            self._last = time.monotonic()

    def ranges_for(self, asn: str) -> List[IPRange]:
        self._throttle()
        try:
            resp = self.session.get(self.url, params={"resource": f"AS{asn}"}, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"AS{asn}: {e}") from e
        if resp.status_code != 200:
            raise FetchError(f"AS{asn}: HTTP {resp.status_code}")
        try:
            prefixes = [p["prefix"] for p in resp.json()["data"]["prefixes"]]
        except (ValueError, KeyError, TypeError) as e:
            raise FetchError(f"AS{asn}: malformed response: {e}") from e

        out = []
        for prefix in prefixes:
            if ":" in str(prefix):
                continue
            try:
                out.append(IPRange.from_cidr(prefix))
            except ValueError as e:
                log.debug("AS%s: skipping prefix %r: %s", asn, prefix, e)
        if not out:
            raise FetchError(f"no IPv4 prefixes announced by AS{asn}")
        return out


SOURCES = {
    Ip2AsnSource.name: Ip2AsnSource,
    RipeStatSource.name: RipeStatSource,
}


class RangeTableBuilder:
    def __init__(self, source, progress: bool = True):
        self.source = source
        self.progress = progress
        self.asn_ok = 0
        self.asn_failed = 0

    def build(self, records: Iterable[ASNRecord]) -> RangeTable:
        """
        CDN/ASN rows -> RangeTable. Every distinct CDN name becomes a key, even
        when none of its ASNs yielded ranges. Per-ASN failures are skipped.
        """
        records = list(records)
        self.source.prepare()

        cache: Dict[str, Optional[List[IPRange]]] = {}
        mapping: Dict[str, List[IPRange]] = {}
        self.asn_ok = self.asn_failed = 0

        bar = tqdm(records, desc="Building", unit="cdn", disable=not self.progress, dynamic_ncols=True)
        for rec in bar:
            cdn_ranges = mapping.setdefault(rec.cdn_name, [])
            seen = set()
            for token in rec.asn_list:
                asn = normalize_asn(token)
                if asn is None:
                    log.warning("CDN %s: ignoring invalid ASN %r", rec.cdn_name, token)
                    continue
                if asn in seen:
                    continue
                seen.add(asn)

                if asn not in cache:
                    log.debug("Processing ASN %s for CDN %s", asn, rec.cdn_name)
                    try:
                        cache[asn] = self.source.ranges_for(asn)
                        self.asn_ok += 1
                    except FetchError as e:
                        log.warning("Error getting IP ranges for ASN %s (%s): %s", asn, rec.cdn_name, e)
                        cache[asn] = None
                        self.asn_failed += 1
                if cache[asn]:
                    cdn_ranges.extend(cache[asn])

        if self.asn_failed and not self.asn_ok:
            raise FetchError(f"{self.source.name}: all {self.asn_failed} ASN lookups failed")

        table = RangeTable(mapping)
        log.info(
            "Built CDN IP map: %d CDNs, %d ranges, %d ASNs ok, %d ASNs failed",
            len(table), table.range_count, self.asn_ok, self.asn_failed,
        )
        return table
