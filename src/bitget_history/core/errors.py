"""Exception hierarchy shared by the downloader, the loader and the CLI.

Fatal classes derive from ``ConfigurationError`` or are
``PersistenceSwapError``; everything else is handled per resource or per
archive and only logged.
"""

from __future__ import annotations


class BitgetHistoryError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(BitgetHistoryError):
    """Invalid input or environment. Never retried."""


class ProxyListEmptyError(ConfigurationError):
    """The raw proxy candidate list could not be obtained or is empty."""


class NoWorkingProxiesError(ConfigurationError):
    """No candidate survived validation, or the working-set file is empty."""


class OperationCancelled(BitgetHistoryError):
    """The caller's cancel event was set while work was in flight."""


class ProbeError(BitgetHistoryError):
    """Existence probe failed on every attempt with a network-level error."""

    def __init__(self, url: str, attempts: int, last_error: Exception | None = None) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"probe of {url} failed after {attempts} attempts: {last_error}")


class DownloadError(BitgetHistoryError):
    """At least one resource could not be retrieved after exhausting retries."""

    def __init__(self, failed_urls: list[str], results: list | None = None) -> None:
        self.failed_urls = list(failed_urls)
        self.results = list(results or [])
        super().__init__(
            f"failed to download {len(self.failed_urls)} files: {', '.join(self.failed_urls)}"
        )


class CorruptArchiveError(BitgetHistoryError):
    """The local artifact is not a well-formed ZIP archive."""


class ConversionError(BitgetHistoryError):
    """The archive is readable but holds no usable CSV/XLSX payload."""


class PersistenceSwapError(BitgetHistoryError):
    """Moving the working database over the live file failed."""
