import bisect
import ipaddress
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from input_middleware import ConfigError

log = logging.getLogger(__name__)

UNKNOWN_CDN = "unknown"
_MAX_V4 = 0xFFFFFFFF


def ip_to_int(text) -> Optional[int]:
    """Dotted-quad IPv4 -> 32-bit int, or None when unparseable / not IPv4."""
    try:
        return int(ipaddress.IPv4Address(str(text).strip()))
    except (ipaddress.AddressValueError, ValueError):
        return None


def int_to_ip(value: int) -> str:
    return str(ipaddress.IPv4Address(value))


@dataclass(frozen=True)
class IPRange:
    start: str
    end: str

    @classmethod
    def from_cidr(cls, prefix: str) -> "IPRange":
        """
        ``a.b.c.d/len`` -> inclusive [network, broadcast].
        Host bits are masked off; a bare address is a /32.
        """
        addr, _, plen = str(prefix).strip().partition("/")
        base = ip_to_int(addr)
        if base is None:
            raise ValueError(f"not an IPv4 prefix: {prefix!r}")
        if plen == "":
            length = 32
        elif plen.isdigit():
            length = int(plen)
        else:
            raise ValueError(f"bad prefix length in {prefix!r}")
        if length > 32:
            raise ValueError(f"bad prefix length in {prefix!r}")
        mask = (_MAX_V4 << (32 - length)) & _MAX_V4
        start = base & mask
        end = start | (~mask & _MAX_V4)
        return cls(int_to_ip(start), int_to_ip(end))

    @classmethod
    def from_obj(cls, obj) -> "IPRange":
        if isinstance(obj, IPRange):
            return obj
        if isinstance(obj, Mapping) and "start" in obj and "end" in obj:
            return cls(str(obj["start"]), str(obj["end"]))
        raise ValueError(f"not a range object: {obj!r}")

    def bounds(self) -> Optional[Tuple[int, int]]:
        lo, hi = ip_to_int(self.start), ip_to_int(self.end)
        if lo is None or hi is None or lo > hi:
            return None
        return lo, hi

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


def _merge(bounds: Iterable[Tuple[int, int]]) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    starts: List[int] = []
    ends: List[int] = []
    for lo, hi in sorted(bounds):
        if ends and lo <= ends[-1] + 1:
            if hi > ends[-1]:
                ends[-1] = hi
            continue
        starts.append(lo)
        ends.append(hi)
    return tuple(starts), tuple(ends)


class RangeTable:
    """
    CDN name -> IP ranges. Read-only once constructed, so it can be shared by
    any number of classifying threads without locking.

    Lookup order is insertion order of the CDNs; the first CDN owning a
    containing range wins. Overlap between distinct CDNs is rare (shared
    hosting) and is resolved by that order, not by any notion of ownership.
    """

    def __init__(self, mapping: Mapping[str, Iterable] = None):
        ranges: Dict[str, Tuple[IPRange, ...]] = {}
        index = []
        malformed = 0
        for cdn, items in (mapping or {}).items():
            cdn = str(cdn)
            if cdn in ranges:
                raise ValueError(f"duplicate CDN name: {cdn}")
            rs = tuple(IPRange.from_obj(o) for o in (items or []))
            ranges[cdn] = rs
            good = []
            for r in rs:
                b = r.bounds()
                if b is None:
                    malformed += 1
                    continue
                good.append(b)
            starts, ends = _merge(good)
            index.append((cdn, starts, ends))
        self._ranges = ranges
        self._index = tuple(index)
        self._malformed = malformed

    def __len__(self):
        return len(self._ranges)

    def __contains__(self, cdn):
        return cdn in self._ranges

    def __eq__(self, other):
        if not isinstance(other, RangeTable):
            return NotImplemented
        return self._ranges == other._ranges

    def __repr__(self):
        return f"<RangeTable cdns={len(self)} ranges={self.range_count}>"

    @property
    def cdns(self) -> List[str]:
        return list(self._ranges)

    @property
    def range_count(self) -> int:
        return sum(len(v) for v in self._ranges.values())

    @property
    def malformed_count(self) -> int:
        return self._malformed

    def ranges(self, cdn: str) -> Tuple[IPRange, ...]:
        return self._ranges[cdn]

    def classify(self, ip: str) -> Tuple[str, bool]:
        """Return (cdn_name, True) for the first owning CDN, else ("unknown", False)."""
        v = ip_to_int(ip)
        if v is None:
            return UNKNOWN_CDN, False
        for cdn, starts, ends in self._index:
            i = bisect.bisect_right(starts, v) - 1
            if i >= 0 and v <= ends[i]:
                return cdn, True
        return UNKNOWN_CDN, False

    def to_dict(self) -> Dict[str, List[dict]]:
        return {cdn: [r.to_dict() for r in rs] for cdn, rs in self._ranges.items()}

    @classmethod
    def loads(cls, text: str, source: str = "<string>") -> "RangeTable":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ConfigError(f"{source}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{source}: expected an object of cdn -> ranges")
        for cdn, items in data.items():
            if items is None:
                continue
            if not isinstance(items, list):
                raise ConfigError(f"{source}: ranges for {cdn!r} must be a list")
            for o in items:
                if not isinstance(o, dict) or "start" not in o or "end" not in o:
                    raise ConfigError(f"{source}: bad range entry for {cdn!r}: {o!r}")
        return cls(data)

    @classmethod
    def load(cls, path: str) -> "RangeTable":
        if not os.path.isfile(path):
            raise ConfigError(f"CDN IP map not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise ConfigError(f"cannot read CDN IP map {path}: {e}") from e
        table = cls.loads(text, source=path)
        log.info("Loaded CDN IP map with %d CDNs (%d ranges)", len(table), table.range_count)
        if table.malformed_count:
            log.warning("%d malformed ranges in %s will never match", table.malformed_count, path)
        return table
