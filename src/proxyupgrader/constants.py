"""Shared constants for ProxyUpgrader."""

MAX_INSTALLED_VERSIONS = 3

CHECKSUM_CHUNK_SIZE = 64 * 1024
DOWNLOAD_CHUNK_SIZE = 64 * 1024

DEFAULT_PROXY_PORT = 17080
DEFAULT_DRY_RUN_PORT = 17081
DEFAULT_MANAGEMENT_PATH = "/v0/management"

DEFAULT_RELEASE_FEED_URL = "https://api.github.com/repos/router-for-me/CLIProxyAPI/releases"
DEFAULT_BINARY_NAME = "CLIProxyAPI"
DEFAULT_PROXY_ARGS = ["--port", "{port}"]

# Seconds.
PROBE_TIMEOUT = 5.0
METADATA_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 60.0
STOP_TIMEOUT = 10.0

STARTUP_ATTEMPTS = 10
STARTUP_INTERVAL = 1.0

MAX_CONNECTIONS_PER_HOST = 2

BINARY_MODE = 0o755

INDEX_FILE = "versions.json"
CURRENT_MARKER_FILE = "current"
VERSIONS_DIR = "versions"
JOURNAL_FILE = "last-upgrade.json"
STAGING_DIR = ".staging"
