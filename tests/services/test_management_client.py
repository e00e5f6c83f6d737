import pytest
import requests

from proxyupgrader.errors import ParseError
from proxyupgrader.services.management_client import ManagementClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.headers = {}
        self.responses = responses or {}
        self.error = error
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.responses[url]

    def close(self):
        self.closed = True


BASE = "http://127.0.0.1:17080/v0/management"


def test_client_sends_bearer_token_and_timeout():
    session = FakeSession({f"{BASE}/debug": FakeResponse()})
    client = ManagementClient(BASE + "/", auth_key="secret", session=session, timeout=2.5)

    client.ping()

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", f"{BASE}/debug")
    assert kwargs["timeout"] == 2.5
    assert session.headers["Authorization"] == "Bearer secret"


def test_check_responding_reports_failures_as_false():
    assert ManagementClient(BASE, session=FakeSession({f"{BASE}/debug": FakeResponse(401)})).check_responding() is False
    assert (
        ManagementClient(BASE, session=FakeSession(error=requests.ConnectionError("refused"))).check_responding()
        is False
    )
    assert ManagementClient(BASE, session=FakeSession({f"{BASE}/debug": FakeResponse()})).check_responding() is True


def test_fetch_latest_version_reads_field():
    session = FakeSession({f"{BASE}/latest-version": FakeResponse(payload={"latest-version": " v6.6.70 "})})

    assert ManagementClient(BASE, session=session).fetch_latest_version() == "v6.6.70"


@pytest.mark.parametrize("payload", [None, {"version": "1"}, ["v1"], {"latest-version": ""}])
def test_fetch_latest_version_rejects_unexpected_payloads(payload):
    session = FakeSession({f"{BASE}/latest-version": FakeResponse(payload=payload)})

    with pytest.raises(ParseError):
        ManagementClient(BASE, session=session).fetch_latest_version()


def test_close_invalidates_session():
    session = FakeSession()

    ManagementClient(BASE, session=session).close()

    assert session.closed is True
