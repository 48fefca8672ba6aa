import threading

import pytest

from range_middleware import RangeTable
from resolver_middleware import ResolverPool


class FakePool(ResolverPool):
    """ResolverPool whose per-resolver query is answered from a dict."""

    def __init__(self, answers, resolvers=("192.0.2.1", "192.0.2.2", "192.0.2.3"), timeout=0.1,
                 cancel_event=None):
        super().__init__(list(resolvers), timeout=timeout, cancel_event=cancel_event)
        self.answers = answers
        self.calls = []
        self._lock = threading.Lock()

    def _query(self, server, domain):
        with self._lock:
            self.calls.append((server, domain))
        ans = self.answers.get(domain)
        if isinstance(ans, Exception):
            raise ans
        if callable(ans):
            return ans(server)
        return list(ans or [])


@pytest.fixture
def example_table():
    return RangeTable({"ExampleCDN": [{"start": "10.0.0.0", "end": "10.0.0.255"}]})


@pytest.fixture
def fake_pool_cls():
    return FakePool
