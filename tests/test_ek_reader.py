import pytest
import requests

from ek_config import EkConfig
from ek_reader import USER_AGENTS, FetchError, Reader


class _FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class _FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}

    def get(self, url, timeout=None):
        self.calls.append({"url": url, "timeout": timeout})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        pass


def _reader(session):
    return Reader(EkConfig(base_delay=0, request_timeout=7), session=session)


def test_reader_passes_timeout_and_returns_response():
    session = _FakeSession([_FakeResponse(text="<html></html>")])
    response = _reader(session)("https://www.kleinanzeigen.de/s-anzeige/1")

    assert response.text == "<html></html>"
    assert session.calls == [{"url": "https://www.kleinanzeigen.de/s-anzeige/1", "timeout": 7.0}]


def test_reader_wraps_network_errors():
    session = _FakeSession([requests.ConnectionError("down")])
    with pytest.raises(FetchError, match="ConnectionError"):
        _reader(session).get("https://www.kleinanzeigen.de/")


def test_reader_rotates_user_agent_when_blocked(caplog):
    session = _FakeSession([_FakeResponse(status_code=403)])
    reader = _reader(session)
    with caplog.at_level("WARNING"):
        response = reader.get("https://www.kleinanzeigen.de/")

    assert response.status_code == 403
    assert session.headers["User-Agent"] == USER_AGENTS[1]
    assert "Blocked" in " ".join(caplog.messages)


def test_reader_builds_retrying_session():
    reader = Reader(EkConfig(max_retries=2))
    session = reader._session_with_retries()
    adapter = session.get_adapter("https://www.kleinanzeigen.de/")

    assert adapter.max_retries.total == 2
    assert 429 in adapter.max_retries.status_forcelist
    assert session.headers["User-Agent"] == USER_AGENTS[0]
    reader.close()


def test_reader_paces_requests_per_host(monkeypatch):
    sleeps = []
    monkeypatch.setattr("ek_reader.time.sleep", sleeps.append)
    session = _FakeSession([_FakeResponse(), _FakeResponse(), _FakeResponse()])
    reader = Reader(EkConfig(base_delay=2), session=session)

    reader.get("https://www.kleinanzeigen.de/s-anzeige/1")
    reader.get("https://img.example/a.JPG")
    assert sleeps == []

    reader.get("https://www.kleinanzeigen.de/s-anzeige/2")
    assert len(sleeps) == 1
    assert 1.0 < sleeps[0] <= 2.2
