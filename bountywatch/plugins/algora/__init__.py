"""Algora plugin package – backends and extraction strategies.

* :class:`HttpBackend`, :class:`PlaywrightBackend`,
  :class:`FirecrawlSelfHostedBackend`, :class:`FirecrawlBackend` – ways of
  fetching a bounty page, registered by name for ``fetch.backends``
* :func:`default_strategies` – structured data, then issue links in the page,
  then the Algora listing API
"""

from .backends import (  # noqa: F401
    FirecrawlBackend,
    FirecrawlSelfHostedBackend,
    HttpBackend,
    PlaywrightBackend,
)
from .strategies import default_strategies  # noqa: F401
