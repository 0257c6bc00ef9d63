import zipfile
from datetime import date

import pytest

from bitget_history.core.errors import ConfigurationError
from bitget_history.core.models import DataKind, ProxyEndpoint, ProxyScheme
from bitget_history.exchanges.bitget_archive import (
    depth_resource,
    iter_local_archives,
    local_path,
    market_codes,
    normalize_pair,
    sibling_depth_code,
    trade_resource,
    validate_archive,
)


class TestMarketCodes:

    @pytest.mark.parametrize("kind,market,expected", [
        ("trades", "spot", ["SPBL"]),
        ("trades", "futures", ["UMCBL"]),
        ("trades", "all", ["SPBL", "UMCBL"]),
        ("depth", "spot", ["1"]),
        ("depth", "all", ["1", "2"]),
    ])
    def test_codes(self, kind, market, expected):
        assert market_codes(kind, market) == expected

    def test_invalid_market(self):
        with pytest.raises(ConfigurationError):
            market_codes("trades", "margin")

    def test_sibling_depth_code(self):
        assert sibling_depth_code("1") == "2"
        assert sibling_depth_code("2") == "1"

    def test_normalize_pair(self):
        assert normalize_pair(" btcusdt ") == "BTCUSDT"
        with pytest.raises(ConfigurationError):
            normalize_pair("BTC/USDT")


class TestResources:

    def test_trade_resource_path(self):
        r = trade_resource("BTCUSDT", "SPBL", date(2025, 5, 2), 7)
        assert r.remote_path == "trades/SPBL/BTCUSDT/20250502_007.zip"
        assert r.url == "https://img.bitgetimg.com/online/trades/SPBL/BTCUSDT/20250502_007.zip"
        assert r.sequence == 7

    def test_trade_sequence_bounds(self):
        with pytest.raises(ValueError):
            trade_resource("BTCUSDT", "SPBL", date(2025, 5, 2), 1000)

    def test_depth_resource_path(self, tmp_path):
        r = depth_resource("BTCUSDT", "2", date(2025, 5, 2), base_url="http://cdn/")
        assert r.remote_path == "depth/BTCUSDT/2/20250502.zip"
        assert r.url == "http://cdn/depth/BTCUSDT/2/20250502.zip"
        assert local_path(tmp_path, r) == tmp_path / "depth" / "BTCUSDT" / "2" / "20250502.zip"

    def test_iter_local_archives(self, tmp_path):
        folder = tmp_path / "trades" / "SPBL" / "BTCUSDT"
        folder.mkdir(parents=True)
        for name in ("20250502_001.zip", "20250502_002.zip", "20250503_001.zip", "notes.txt"):
            (folder / name).write_bytes(b"x")

        found = list(iter_local_archives(tmp_path, DataKind.TRADES, "BTCUSDT", ["SPBL", "UMCBL"],
                                         start=date(2025, 5, 2), end=date(2025, 5, 2)))
        assert [r.remote_path for r in found] == [
            "trades/SPBL/BTCUSDT/20250502_001.zip",
            "trades/SPBL/BTCUSDT/20250502_002.zip",
        ]


class TestValidateArchive:

    def test_valid_zip(self, tmp_path):
        path = tmp_path / "ok.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("a.csv", "h\n1\n")
        assert validate_archive(path)

    def test_garbage_rejected(self, tmp_path):
        path = tmp_path / "bad.zip"
        path.write_bytes(b"<html>blocked</html>")
        assert not validate_archive(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.zip"
        path.touch()
        assert not validate_archive(path)
        assert validate_archive(path, allow_empty=True)

    def test_missing_file(self, tmp_path):
        assert not validate_archive(tmp_path / "missing.zip")


class TestProxyEndpoint:

    def test_parse(self):
        p = ProxyEndpoint.parse("socks5://user:pw@10.0.0.1:1080")
        assert p.scheme == ProxyScheme.SOCKS5
        assert (p.host, p.port, p.username, p.password) == ("10.0.0.1", 1080, "user", "pw")
        assert p.requests_proxies()["https"] == "socks5h://user:pw@10.0.0.1:1080"

    def test_socks4_dialed_as_socks5_for_check(self):
        p = ProxyEndpoint.parse("socks4://10.0.0.2:4145")
        assert p.dial_url() == "socks4a://10.0.0.2:4145"
        assert p.dial_url(as_socks5=True) == "socks5h://10.0.0.2:4145"

    @pytest.mark.parametrize("raw", ["http://1.2.3.4:80", "socks5://1.2.3.4", "garbage"])
    def test_parse_invalid(self, raw):
        with pytest.raises(ValueError):
            ProxyEndpoint.parse(raw)
