import threading

import pytest

from btcd_monitor import BlockHeader, NetTotals, NodeInfo, UpstreamError


class FakeBtcdClient:
    """Stands in for BtcdClient; records the order of calls and can fail any of them."""

    def __init__(self, info=None, totals=None, best_block_hash="00" * 32, header_time=1700000000, fail=None):
        self.info = info or NodeInfo(blocks=800000, connections=8, difficulty=55e12)
        self.totals = totals or NetTotals(total_bytes_sent=1000000, total_bytes_recv=2000000)
        self.best_block_hash = best_block_hash
        self.header_time = header_time
        self.fail = fail or {}
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, method):
        with self._lock:
            self.calls.append(method)
        if method in self.fail:
            cause = self.fail[method]
            raise UpstreamError("{} failed: {}".format(method, cause)) from cause

    def get_info(self):
        self._record("getinfo")
        return self.info

    def get_net_totals(self):
        self._record("getnettotals")
        return self.totals

    def get_best_block_hash(self):
        self._record("getbestblockhash")
        return self.best_block_hash

    def get_block_header(self, block_hash):
        self._record("getblockheader")
        assert block_hash == self.best_block_hash
        return BlockHeader(hash=block_hash, height=self.info.blocks, timestamp=self.header_time)


@pytest.fixture
def fake_client():
    return FakeBtcdClient()
