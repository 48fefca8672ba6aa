import gzip

import pytest
import requests

from asn_middleware import (FetchError, Ip2AsnSource, RangeTableBuilder, RipeStatSource,
                            ensure_writable, normalize_asn)
from input_middleware import ASNRecord, ConfigError
from range_middleware import IPRange

TSV = (
    "1.0.0.0\t1.0.0.255\t13335\tUS\tCLOUDFLARENET\n"
    "104.16.0.0\t104.23.255.255\t13335\tUS\tCLOUDFLARENET\n"
    "23.0.0.0\t23.0.255.255\t20940\tEU\tAKAMAI-ASN1\n"
    "0.0.0.0\t0.255.255.255\t0\tNone\tNot routed\n"
    "short\tline\n"
)


class FakeSource:
    name = "fake"

    def __init__(self, data):
        self.data = data
        self.calls = []
        self.prepared = 0

    def prepare(self):
        self.prepared += 1

    def ranges_for(self, asn):
        self.calls.append(asn)
        found = self.data.get(asn)
        if found is None:
            raise FetchError(f"no IP ranges found for AS{asn}")
        return list(found)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self._content = content

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._content), chunk_size):
            yield self._content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def get(self, url, params=None, **kwargs):
        self.requests.append((url, params))
        resp = self.responses[len(self.requests) - 1] if isinstance(self.responses, list) else self.responses
        if isinstance(resp, Exception):
            raise resp
        return resp


@pytest.mark.parametrize("token,expected", [
    ("13335", "13335"),
    ("AS13335", "13335"),
    ("as20940", "20940"),
    (' "16509" ', "16509"),
    ("AS 54113", "54113"),
    ("007", "7"),
    ("", None),
    ("AS", None),
    ("cloudflare", None),
])
def test_normalize_asn(token, expected):
    assert normalize_asn(token) == expected


def test_build_keys_equal_distinct_cdn_names():
    source = FakeSource({"13335": [IPRange("1.0.0.0", "1.0.0.255")]})
    records = [
        ASNRecord("Cloudflare", ("AS13335",)),
        ASNRecord("Nobody", ("64500",)),
        ASNRecord("NoAsn", ()),
    ]
    table = RangeTableBuilder(source, progress=False).build(records)
    assert table.cdns == ["Cloudflare", "Nobody", "NoAsn"]
    assert table.ranges("Cloudflare") == (IPRange("1.0.0.0", "1.0.0.255"),)
    assert table.ranges("Nobody") == ()


def test_build_fetches_each_asn_once_and_skips_invalid():
    source = FakeSource({"13335": [IPRange("1.0.0.0", "1.0.0.255")]})
    records = [
        ASNRecord("A", ("13335", "AS13335", "bogus")),
        ASNRecord("B", ("13335",)),
    ]
    builder = RangeTableBuilder(source, progress=False)
    table = builder.build(records)
    assert source.calls == ["13335"]
    assert table.ranges("A") == table.ranges("B")
    assert builder.asn_ok == 1


def test_build_is_idempotent():
    source = FakeSource({
        "13335": [IPRange("1.0.0.0", "1.0.0.255")],
        "20940": [IPRange("23.0.0.0", "23.0.255.255")],
    })
    records = [ASNRecord("Cloudflare", ("13335",)), ASNRecord("Akamai", ("20940", "64501"))]
    first = RangeTableBuilder(source, progress=False).build(records)
    second = RangeTableBuilder(source, progress=False).build(records)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_build_partial_failure_is_not_fatal():
    source = FakeSource({"20940": [IPRange("23.0.0.0", "23.0.255.255")]})
    builder = RangeTableBuilder(source, progress=False)
    table = builder.build([ASNRecord("Akamai", ("20940", "64501"))])
    assert builder.asn_failed == 1
    assert table.classify("23.0.1.1") == ("Akamai", True)


def test_build_fails_when_every_lookup_fails():
    with pytest.raises(FetchError):
        RangeTableBuilder(FakeSource({}), progress=False).build([ASNRecord("X", ("64500", "64501"))])


def test_ensure_writable(tmp_path):
    target = tmp_path / "map.json"
    ensure_writable(str(target))
    target.write_text("{}")
    with pytest.raises(ConfigError):
        ensure_writable(str(target))
    ensure_writable(str(target), overwrite=True)


def test_ip2asn_uses_cached_table(tmp_path):
    cache = tmp_path / "ip2asn-v4.tsv"
    cache.write_text(TSV)
    session = FakeSession(AssertionError("must not download"))
    source = Ip2AsnSource(cache_path=str(cache), session=session)
    source.prepare()
    assert session.requests == []
    assert source.ranges_for("13335") == [
        IPRange("1.0.0.0", "1.0.0.255"),
        IPRange("104.16.0.0", "104.23.255.255"),
    ]
    with pytest.raises(FetchError):
        source.ranges_for("0")
    with pytest.raises(FetchError):
        source.ranges_for("64500")


def test_ip2asn_downloads_and_decompresses(tmp_path):
    cache = tmp_path / "ip2asn-v4.tsv"
    session = FakeSession(FakeResponse(content=gzip.compress(TSV.encode())))
    source = Ip2AsnSource(cache_path=str(cache), session=session)
    source.prepare()
    assert cache.read_text() == TSV
    assert not (tmp_path / "ip2asn-v4.tsv.gz").exists()
    assert source.ranges_for("20940") == [IPRange("23.0.0.0", "23.0.255.255")]


def test_ip2asn_non_ok_download_is_fatal(tmp_path):
    source = Ip2AsnSource(cache_path=str(tmp_path / "t.tsv"), session=FakeSession(FakeResponse(503)))
    with pytest.raises(FetchError):
        source.prepare()
    with pytest.raises(FetchError):
        RangeTableBuilder(source, progress=False).build([ASNRecord("A", ("13335",))])


def test_ip2asn_unreachable_is_fatal(tmp_path):
    session = FakeSession(requests.ConnectionError("down"))
    source = Ip2AsnSource(cache_path=str(tmp_path / "t.tsv"), session=session)
    with pytest.raises(FetchError):
        source.prepare()


class BrokenStream(FakeResponse):
    def iter_content(self, chunk_size=1):
        yield self._content[:10]
        raise requests.exceptions.ChunkedEncodingError("connection reset")


def test_ip2asn_interrupted_download_leaves_no_partial_file(tmp_path):
    cache = tmp_path / "ip2asn-v4.tsv"
    session = FakeSession(BrokenStream(content=gzip.compress(TSV.encode())))
    source = Ip2AsnSource(cache_path=str(cache), session=session)
    with pytest.raises(FetchError):
        source.prepare()
    assert list(tmp_path.iterdir()) == []


def test_ripestat_converts_prefixes():
    payload = {"data": {"prefixes": [
        {"prefix": "104.16.0.0/13"},
        {"prefix": "2606:4700::/32"},
        {"prefix": "198.41.128.0/17"},
    ]}}
    session = FakeSession(FakeResponse(payload=payload))
    source = RipeStatSource(session=session, delay=0)
    assert source.ranges_for("13335") == [
        IPRange("104.16.0.0", "104.23.255.255"),
        IPRange("198.41.128.0", "198.41.255.255"),
    ]
    assert session.requests[0][1] == {"resource": "AS13335"}


@pytest.mark.parametrize("response", [
    FakeResponse(status_code=429),
    FakeResponse(payload=ValueError("not json")),
    FakeResponse(payload={"data": {}}),
    FakeResponse(payload={"data": {"prefixes": [{"prefix": "2001:db8::/32"}]}}),
    requests.Timeout("slow"),
])
def test_ripestat_errors_become_fetch_errors(response):
    source = RipeStatSource(session=FakeSession(response), delay=0)
    with pytest.raises(FetchError):
        source.ranges_for("13335")


def test_ripestat_spaces_requests(monkeypatch):
    sleeps = []
    monkeypatch.setattr("asn_middleware.time.sleep", lambda s: sleeps.append(s))
    payload = {"data": {"prefixes": [{"prefix": "10.0.0.0/8"}]}}
    source = RipeStatSource(session=FakeSession(FakeResponse(payload=payload)), delay=5.0)
    source.ranges_for("1")
    source.ranges_for("2")
    source.ranges_for("3")
    assert len(sleeps) == 2
    assert all(0 < s <= 5.0 for s in sleeps)


def test_ripestat_builder_skips_failed_asn():
    session = FakeSession([
        FakeResponse(payload={"data": {"prefixes": [{"prefix": "10.0.0.0/24"}]}}),
        FakeResponse(status_code=500),
    ])
    table = RangeTableBuilder(RipeStatSource(session=session, delay=0), progress=False).build(
        [ASNRecord("A", ("1", "2"))]
    )
    assert table.ranges("A") == (IPRange("10.0.0.0", "10.0.0.255"),)
