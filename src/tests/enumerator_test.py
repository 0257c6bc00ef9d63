"""Tests for the URL enumerator

Tests cover:
- Trade sequence probing stops at the first absent number
- Transient probe failures are left out without ending the day
- Locally present archives are not probed
- Depth placeholders and sibling-code reuse
- Offline enumeration
- Probe concurrency bound and interruption
"""

import re
import threading
import time
from concurrent.futures import as_completed
from datetime import date, timedelta
from unittest.mock import Mock, patch

import pytest

from bitget_history.core.errors import ProbeError
from bitget_history.core.models import ProbeResult, ProxyEndpoint
from bitget_history.downloader.enumerator import URLEnumerator
from bitget_history.downloader.resume import LocalFileResumeMarker

DAY = date(2025, 5, 2)
_SEQ_RE = re.compile(r"_(\d{3})\.zip$")


def _pool():
    pool = Mock()
    pool.get.return_value = [ProxyEndpoint.parse("socks5://10.0.0.1:1080")]
    return pool


def _trade_prober(existing, failing=()):
    """Prober answering by sequence number; thread-safe call log."""
    calls = []
    lock = threading.Lock()

    def probe(url, proxies, cancel_event=None):
        seq = int(_SEQ_RE.search(url).group(1))
        with lock:
            calls.append(seq)
        if seq in failing:
            raise ProbeError(url, 3, ConnectionError("refused"))
        if seq in existing:
            return ProbeResult(exists=True, size=100 + seq, status_code=200)
        return ProbeResult(exists=False, size=0, status_code=404)

    prober = Mock()
    prober.probe.side_effect = probe
    return prober, calls


@pytest.fixture
def resume(tmp_path):
    return LocalFileResumeMarker(tmp_path / "archives")


class TestTrades:

    def test_stops_at_first_absent_sequence(self, resume):
        prober, calls = _trade_prober(existing=set(range(1, 8)))
        enumerator = URLEnumerator(_pool(), prober, resume, max_workers=4)

        found = enumerator.enumerate("BTCUSDT", "spot", "trades", DAY, DAY)

        assert [r.sequence for r in found] == [1, 2, 3, 4, 5, 6, 7]
        assert found[0].remote_path == "trades/SPBL/BTCUSDT/20250502_001.zip"
        assert found[6].size_hint == 107
        assert max(calls) == 10

    def test_absence_in_second_batch(self, resume):
        prober, calls = _trade_prober(existing=set(range(1, 8)))
        enumerator = URLEnumerator(_pool(), prober, resume, max_workers=2, batch_size=5)

        found = enumerator.enumerate("BTCUSDT", "spot", "trades", DAY, DAY)

        assert len(found) == 7
        assert sorted(calls) == list(range(1, 11))

    def test_only_prefix_below_first_absent_kept(self, resume):
        # 9 exists but 8 does not: 9 is beyond the end of the day
        prober, _ = _trade_prober(existing={1, 2, 3, 4, 5, 6, 7, 9})
        enumerator = URLEnumerator(_pool(), prober, resume)

        found = enumerator.enumerate("BTCUSDT", "spot", "trades", DAY, DAY)

        assert [r.sequence for r in found] == [1, 2, 3, 4, 5, 6, 7]

    def test_transient_failure_excluded(self, resume):
        prober, _ = _trade_prober(existing=set(range(1, 8)), failing={3})
        enumerator = URLEnumerator(_pool(), prober, resume)

        found = enumerator.enumerate("BTCUSDT", "spot", "trades", DAY, DAY)

        assert [r.sequence for r in found] == [1, 2, 4, 5, 6, 7]

    def test_all_markets_and_days(self, resume):
        prober, _ = _trade_prober(existing={1})
        enumerator = URLEnumerator(_pool(), prober, resume)

        found = enumerator.enumerate("btcusdt", "all", "trades", DAY, date(2025, 5, 3))

        assert [r.remote_path for r in found] == [
            "trades/SPBL/BTCUSDT/20250502_001.zip",
            "trades/SPBL/BTCUSDT/20250503_001.zip",
            "trades/UMCBL/BTCUSDT/20250502_001.zip",
            "trades/UMCBL/BTCUSDT/20250503_001.zip",
        ]

    def test_skip_locally_present(self, resume):
        folder = resume.archive_dir / "trades" / "SPBL" / "BTCUSDT"
        folder.mkdir(parents=True)
        for seq in (1, 2):
            (folder / f"20250502_{seq:03d}.zip").write_bytes(b"zip")
        prober, calls = _trade_prober(existing={1, 2, 3})
        enumerator = URLEnumerator(_pool(), prober, resume)

        found = enumerator.enumerate("BTCUSDT", "spot", "trades", DAY, DAY, skip_locally_present=True)

        assert [r.sequence for r in found] == [1, 2, 3]
        assert [r.size_hint for r in found] == [0, 0, 103]
        assert 1 not in calls and 2 not in calls


class TestDepth:

    def _depth_prober(self, status_by_code):
        def probe(url, proxies, cancel_event=None):
            code = url.split("/")[-2]
            status = status_by_code[code]
            return ProbeResult(exists=status < 400, size=500 if status < 400 else 0, status_code=status)

        prober = Mock()
        prober.probe.side_effect = probe
        return prober

    def test_existing_and_placeholder(self, resume):
        prober = self._depth_prober({"1": 200, "2": 404})
        enumerator = URLEnumerator(_pool(), prober, resume)

        found = enumerator.enumerate("BTCUSDT", "all", "depth", DAY, DAY)

        assert [r.remote_path for r in found] == ["depth/BTCUSDT/1/20250502.zip"]
        placeholder = resume.archive_dir / "depth" / "BTCUSDT" / "2" / "20250502.zip"
        assert placeholder.exists() and placeholder.stat().st_size == 0

    def test_server_error_writes_no_placeholder(self, resume):
        prober = self._depth_prober({"1": 500})
        enumerator = URLEnumerator(_pool(), prober, resume)

        assert enumerator.enumerate("BTCUSDT", "spot", "depth", DAY, DAY) == []
        assert not (resume.archive_dir / "depth" / "BTCUSDT" / "1" / "20250502.zip").exists()

    def test_sibling_copy_reused(self, resume):
        src = resume.archive_dir / "depth" / "BTCUSDT" / "1" / "20250502.zip"
        src.parent.mkdir(parents=True)
        src.write_bytes(b"depth-zip")
        prober = Mock()
        enumerator = URLEnumerator(_pool(), prober, resume)

        found = enumerator.enumerate("BTCUSDT", "all", "depth", DAY, DAY, skip_locally_present=True)

        assert [r.remote_path for r in found] == [
            "depth/BTCUSDT/1/20250502.zip",
            "depth/BTCUSDT/2/20250502.zip",
        ]
        copied = resume.archive_dir / "depth" / "BTCUSDT" / "2" / "20250502.zip"
        assert copied.read_bytes() == b"depth-zip"
        prober.probe.assert_not_called()


class TestOffline:

    def test_skip_download_uses_local_files_only(self, resume):
        folder = resume.archive_dir / "depth" / "BTCUSDT" / "2"
        folder.mkdir(parents=True)
        (folder / "20250502.zip").write_bytes(b"zip")
        (folder / "20250503.zip").touch()
        pool, prober = _pool(), Mock()
        enumerator = URLEnumerator(pool, prober, resume)

        found = enumerator.enumerate("BTCUSDT", "futures", "depth", DAY, date(2025, 5, 3), skip_download=True)

        assert [r.remote_path for r in found] == ["depth/BTCUSDT/2/20250502.zip"]
        pool.get.assert_not_called()
        prober.probe.assert_not_called()


class TestConcurrency:

    def _slow_prober(self, delay=0.05):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0, "calls": 0}

        def probe(url, proxies, cancel_event=None):
            with lock:
                state["calls"] += 1
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(delay)
            with lock:
                state["active"] -= 1
            return ProbeResult(exists=True, size=500, status_code=200)

        prober = Mock()
        prober.probe.side_effect = probe
        return prober, state

    def test_worker_bound_respected(self, resume):
        prober, state = self._slow_prober()
        enumerator = URLEnumerator(_pool(), prober, resume, max_workers=3)

        found = enumerator.enumerate("BTCUSDT", "spot", "depth", DAY, DAY + timedelta(days=11))

        assert len(found) == 12
        assert 1 <= state["peak"] <= 3

    def test_interrupt_cancels_queued_probes(self, resume):
        prober, state = self._slow_prober()
        enumerator = URLEnumerator(_pool(), prober, resume, max_workers=2)
        cancel = threading.Event()

        def interrupted(futures):
            completed = as_completed(futures)
            yield next(completed)
            raise KeyboardInterrupt

        with patch("bitget_history.downloader.enumerator.as_completed", side_effect=interrupted):
            with pytest.raises(KeyboardInterrupt):
                enumerator.enumerate("BTCUSDT", "spot", "depth", DAY, DAY + timedelta(days=39),
                                     cancel_event=cancel)

        assert cancel.is_set()
        assert state["calls"] < 10
