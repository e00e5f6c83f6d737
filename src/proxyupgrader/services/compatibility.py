"""Health and version probing of a running proxy instance."""

from typing import Callable, Optional

import requests

from proxyupgrader.models import CompatibilityCheckResult, strip_version_prefix


def _connection_refused(exc: BaseException) -> bool:
    """True when the error chain shows nothing was listening on the socket."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if not isinstance(current, BaseException) or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        pending.extend((current.__cause__, current.__context__, getattr(current, "reason", None)))
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))
    return "refused" in str(exc).lower()


class CompatibilityProbe:
    """Classifies a proxy instance as compatible, not responding, not running or unreachable."""

    def __init__(self, client, logger, is_running: Optional[Callable[[], bool]] = None):
        self.client = client
        self.logger = logger
        self.is_running = is_running

    def is_responding(self) -> bool:
        return self.client.check_responding()

    def reported_version(self) -> str:
        return strip_version_prefix(self.client.fetch_latest_version())

    def check_compatibility(self) -> CompatibilityCheckResult:
        if self.is_running is not None and not self.is_running():
            return CompatibilityCheckResult.not_running()

        try:
            self.client.ping()
        except requests.Timeout:
            result = CompatibilityCheckResult.not_responding()
        except (requests.exceptions.SSLError, requests.exceptions.ProxyError) as exc:
            result = CompatibilityCheckResult.connection_error(str(exc))
        except requests.ConnectionError as exc:
            if _connection_refused(exc):
                result = CompatibilityCheckResult.not_running()
            else:
                result = CompatibilityCheckResult.connection_error(str(exc))
        except requests.HTTPError as exc:
            self.logger.debug("Liveness probe returned an error status: %s", exc)
            result = CompatibilityCheckResult.not_responding()
        except requests.RequestException as exc:
            result = CompatibilityCheckResult.connection_error(str(exc))
        else:
            result = CompatibilityCheckResult.compatible()

        self.logger.debug("Compatibility check: %s", result.description)
        return result
