import pytest

from proxyupgrader.errors import ConfigError, UpgradeError
from proxyupgrader.services.validation import ValidationService


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def warning(self, *args, **_kwargs):
        self.warnings.append(args)


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


def test_validation_service_blocks_insecure_http():
    service = ValidationService(allow_insecure_http=False)

    with pytest.raises(UpgradeError, match="insecure HTTP"):
        service.enforce_https_policy(
            "http://example.com/releases",
            "Release feed",
            DummyLogger(),
            DummyConsole(),
        )


def test_validation_service_warns_when_insecure_http_allowed():
    logger = DummyLogger()
    service = ValidationService(allow_insecure_http=True)

    service.enforce_https_policy("http://localhost:17080", "Management URL", logger, DummyConsole())

    assert len(logger.warnings) == 1


def test_validation_service_rejects_non_url_locations():
    service = ValidationService()

    with pytest.raises(UpgradeError, match="not an HTTP"):
        service.enforce_https_policy("/tmp/proxy", "Download", DummyLogger(), DummyConsole())


def test_require_sha256_normalizes_and_rejects_invalid_values():
    service = ValidationService()

    assert service.require_sha256(" " + "AB" * 32 + " ", "--sha256") == "ab" * 32
    with pytest.raises(ConfigError, match="--sha256 must be a valid SHA-256"):
        service.require_sha256("abc123", "--sha256")
