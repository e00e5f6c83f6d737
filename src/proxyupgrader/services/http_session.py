"""HTTP session factory shared by the feed, download and management clients."""

import requests
from requests.adapters import HTTPAdapter

from proxyupgrader.constants import MAX_CONNECTIONS_PER_HOST


def build_session(
    max_connections: int = MAX_CONNECTIONS_PER_HOST,
    user_agent: str = "proxyupgrader",
) -> requests.Session:
    """Session whose connection pool blocks instead of opening more than `max_connections`."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=max_connections,
        pool_maxsize=max_connections,
        pool_block=True,
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers["User-Agent"] = user_agent
    return session
