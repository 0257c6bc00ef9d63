from unittest.mock import Mock, patch

import pytest
import requests

from bitget_history.core.errors import NoWorkingProxiesError, ProbeError
from bitget_history.core.models import ProbeResult, ProxyEndpoint
from bitget_history.downloader.prober import ExistenceProber, ProbeCache

URL = "https://img.bitgetimg.com/online/trades/SPBL/BTCUSDT/20250502_001.zip"
PROXIES = [ProxyEndpoint.parse("socks5://10.0.0.1:1080"), ProxyEndpoint.parse("socks5://10.0.0.2:1080")]


def _head(status, length=None):
    resp = Mock()
    resp.status_code = status
    resp.headers = {} if length is None else {"Content-Length": str(length)}
    return resp


class TestProbe:

    def test_existing_archive(self):
        prober = ExistenceProber()
        with patch("bitget_history.downloader.prober.requests.head", return_value=_head(200, 1234)) as head:
            result = prober.probe(URL, PROXIES)
        assert result == ProbeResult(exists=True, size=1234, status_code=200)
        _, kwargs = head.call_args
        assert kwargs["allow_redirects"] is False
        assert kwargs["proxies"]["https"].startswith("socks5h://10.0.0.")

    def test_redirect_counts_as_existing_without_length(self):
        with patch("bitget_history.downloader.prober.requests.head", return_value=_head(302)):
            result = ExistenceProber().probe(URL, PROXIES)
        assert result.exists and result.size == 0

    @pytest.mark.parametrize("status", [403, 404, 500])
    def test_error_status_is_definitive(self, status):
        with patch("bitget_history.downloader.prober.requests.head", return_value=_head(status)) as head:
            result = ExistenceProber(attempts=3).probe(URL, PROXIES)
        assert not result.exists
        assert result.status_code == status
        assert head.call_count == 1

    def test_network_errors_retried_then_raise(self):
        with patch("bitget_history.downloader.prober.requests.head",
                   side_effect=requests.ConnectionError("refused")) as head:
            with pytest.raises(ProbeError) as excinfo:
                ExistenceProber(attempts=3).probe(URL, PROXIES)
        assert head.call_count == 3
        assert excinfo.value.url == URL
        assert excinfo.value.attempts == 3

    def test_network_error_then_success(self):
        with patch("bitget_history.downloader.prober.requests.head",
                   side_effect=[requests.Timeout("slow"), _head(200, 10)]):
            result = ExistenceProber(attempts=3).probe(URL, PROXIES)
        assert result.exists

    def test_no_proxies(self):
        with pytest.raises(NoWorkingProxiesError):
            ExistenceProber().probe(URL, [])


class TestProbeCache:

    def test_positive_result_cached_forever(self, tmp_path):
        cache = ProbeCache(tmp_path / "checked_urls.db", negative_ttl=60)
        prober = ExistenceProber(cache=cache)
        with patch("bitget_history.downloader.prober.requests.head", return_value=_head(200, 99)) as head:
            prober.probe(URL, PROXIES)
            again = prober.probe(URL, PROXIES)
        assert head.call_count == 1
        assert again.cached and again.exists and again.size == 99
        assert cache.get(URL, now=10 ** 12).exists
        cache.close()

    def test_negative_result_expires(self, tmp_path):
        cache = ProbeCache(tmp_path / "checked_urls.db", negative_ttl=60)
        cache.put(URL, ProbeResult(exists=False, size=0, status_code=404), now=1000.0)
        assert cache.get(URL, now=1030.0).status_code == 404
        assert cache.get(URL, now=1061.0) is None
        cache.close()

    def test_transient_errors_not_cached(self, tmp_path):
        cache = ProbeCache(tmp_path / "checked_urls.db")
        prober = ExistenceProber(cache=cache, attempts=2)
        with patch("bitget_history.downloader.prober.requests.head", side_effect=requests.Timeout("slow")):
            with pytest.raises(ProbeError):
                prober.probe(URL, PROXIES)
        assert cache.get(URL) is None
        cache.close()
