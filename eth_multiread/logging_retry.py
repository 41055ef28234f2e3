"""HTTP retry policy that tells what it is doing.

Used for the CoinGecko session. Rate limiting (429) is not retried here,
see :py:class:`eth_multiread.metadata.queue.MetadataQueue`.
"""

import logging

from urllib3 import Retry

from eth_multiread.utils import get_url_domain


class LoggingRetry(Retry):
    """urllib3 ``Retry`` that logs each retry as a warning.

    - The log line has the domain only, as some APIs carry keys in the URL

    - The logger survives :py:meth:`new`, which urllib3 calls on every increment

    Example:

    .. code-block:: python

        retry_policy = LoggingRetry(total=2, backoff_factor=0.5, status_forcelist=[500, 502, 503, 504], logger=logger)
        session.mount("https://", LimiterAdapter(per_second=1, max_retries=retry_policy))
    """

    def __init__(self, *args, logger: logging.Logger | None = None, **kwargs):
        self.logger = logger or logging.getLogger(__name__)
        super().__init__(*args, **kwargs)

    def new(self, **kwargs) -> "LoggingRetry":
        retry = super().new(**kwargs)
        retry.logger = self.logger
        return retry

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        if response is not None:
            cause = f"HTTP {response.status} {response.reason}"
        else:
            cause = repr(error)

        host = _pool.host if _pool is not None else (get_url_domain(url) if url and "://" in url else url)

        self.logger.warning(
            "Retrying %s %s, attempt %d, cause: %s",
            method,
            host,
            len(self.history) + 1,
            cause,
        )
        return super().increment(method, url, response, error, _pool, _stacktrace)
