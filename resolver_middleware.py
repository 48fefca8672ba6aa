import ipaddress
import logging
import os
import random
import threading
import time
from typing import List, Optional, Sequence, Tuple

import dns.exception
import dns.resolver
import yaml

log = logging.getLogger(__name__)

DNS_TIMEOUT = float(os.environ.get("CDNSCAPE_DNS_TIMEOUT", "2.0"))

# Public resolvers spread across regions; order is irrelevant, it is
# shuffled per lookup.
DEFAULT_RESOLVERS: List[str] = [
    # North America
    "8.8.8.8",          # Google
    "1.1.1.1",          # Cloudflare
    "9.9.9.9",          # Quad9
    "208.67.222.222",   # OpenDNS
    "64.6.64.6",        # Verisign
    "8.26.56.26",       # Comodo Secure DNS
    # Europe
    "84.200.69.80",     # DNS.WATCH
    "77.88.8.8",        # Yandex
    "80.80.80.80",      # Freenom World
    "195.46.39.39",     # SafeDNS
    # Asia
    "119.29.29.29",     # DNSPod
    "114.114.114.114",  # 114DNS
    "223.5.5.5",        # AliDNS
    "180.76.76.76",     # Baidu
    "101.226.4.6",      # DNSPai
    "1.2.4.8",          # CNNIC SDNS
    "168.95.1.1",       # Chunghwa Telecom
    "202.181.224.2",    # PCCW
    "101.101.101.101",  # TWNIC Quad101
    # Oceania
    "203.50.2.71",      # Telstra
    # Africa
    "196.213.41.10",    # Internet Solutions
    # South America
    "200.56.224.11",    # Ultranet
    "200.85.37.254",    # Telecom Argentina
]


class ResolutionError(Exception):
    """Every configured resolver failed or returned no address."""


class ResolutionCancelled(ResolutionError):
    pass


def _parse_endpoint(entry) -> Optional[Tuple[str, int]]:
    """``ip`` or ``ip:port`` (or an ``(ip, port)`` tuple); None unless the host is a literal IP."""
    if isinstance(entry, tuple) and len(entry) == 2:
        host, port = str(entry[0]).strip(), entry[1]
    else:
        s = str(entry or "").strip()
        if not s:
            return None
        host, port = s, 53
        if s.count(":") == 1:
            host, _, p = s.partition(":")
            if not p.isdigit():
                return None
            port = p
    try:
        ipaddress.ip_address(host.strip())
        port = int(port)
    except (TypeError, ValueError):
        return None
    if not 0 < port < 65536:
        return None
    return host.strip(), port


def load_resolvers(path: Optional[str] = None) -> List[Tuple[str, int]]:
    """
    resolvers.yaml:
      resolvers:
        - 8.8.8.8
        - "1.1.1.1:53"
    Falls back to the built-in list when the file is absent, empty or broken.
    """
    builtin = [_parse_endpoint(r) for r in DEFAULT_RESOLVERS]
    env_path = os.environ.get("CDNSCAPE_RESOLVERS_FILE")
    default_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "resolvers.yaml")

    for p in [x for x in (path, env_path, default_path) if x]:
        if not os.path.isfile(p):
            if p != default_path:
                log.warning("Resolvers file not found at %s; will try defaults.", p)
            continue
        try:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            log.warning("Failed to read resolvers file %s: %s; using built-in resolvers.", p, e)
            return builtin
        entries = data.get("resolvers") if isinstance(data, dict) else data
        parsed = [_parse_endpoint(x) for x in (entries or [])]
        out = [x for x in parsed if x]
        if len(out) != len(parsed):
            log.warning("%s: ignored %d malformed resolver entries", p, len(parsed) - len(out))
        if out:
            return out
        log.warning("%s is empty; using built-in resolvers.", p)
        return builtin

    return builtin


class ResolverPool:
    """
    A-record lookups with failover across public resolvers.

    Each lookup walks a privately shuffled copy of the resolver list, one
    attempt per resolver, each bounded by ``timeout``. Worst case is
    ``len(resolvers) * timeout``.
    """

    def __init__(self, resolvers: Sequence = None, timeout: float = DNS_TIMEOUT,
                 cancel_event: Optional[threading.Event] = None):
        eps = [_parse_endpoint(e) for e in (resolvers or DEFAULT_RESOLVERS)]
        self.resolvers: List[Tuple[str, int]] = [e for e in eps if e]
        if len(self.resolvers) != len(eps):
            log.warning("ignored %d malformed resolver entries", len(eps) - len(self.resolvers))
        if not self.resolvers:
            raise ValueError("at least one resolver is required")
        self.timeout = float(timeout)
        self.cancel_event = cancel_event or threading.Event()

    def __len__(self):
        return len(self.resolvers)

    def _query(self, server: Tuple[str, int], domain: str) -> List[str]:
        r = dns.resolver.Resolver(configure=False)
        r.port = server[1]
        r.nameservers = [server[0]]
        r.timeout = self.timeout
        r.lifetime = self.timeout
        ans = r.resolve(domain, "A", raise_on_no_answer=False)
        if not ans or not getattr(ans, "rrset", None):
            return []
        return [rr.address for rr in ans]

    def resolve(self, domain: str) -> Tuple[str, float]:
        started = time.monotonic()
        servers = list(self.resolvers)
        random.Random().shuffle(servers)

        last_exc: Optional[Exception] = None
        for server in servers:
            if self.cancel_event.is_set():
                raise ResolutionCancelled(f"cancelled while resolving {domain}")
            log.debug("Attempting DNS lookup for %s using %s:%d", domain, *server)
            try:
                ips = self._query(server, domain)
            except (dns.exception.DNSException, OSError, ValueError) as e:
                last_exc = e
                log.debug("DNS lookup for %s failed with %s:%d: %s", domain, server[0], server[1], e)
                continue
            if ips:
                return ips[0], time.monotonic() - started
            last_exc = ResolutionError(f"no A records from {server[0]}")

        raise ResolutionError(f"all {len(servers)} DNS servers failed to resolve {domain}: {last_exc}")
