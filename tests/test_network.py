import pytest
import requests

from aovpn import network


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.payload


@pytest.fixture
def fake_get(monkeypatch):
    state = {"response": FakeResponse({}), "calls": []}

    def fake(url, **kwargs):
        state["calls"].append((url, kwargs))
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(network.requests, "get", fake)
    return state


def test_parses_lookup(fake_get):
    fake_get["response"] = FakeResponse(
        {
            "ip": "198.51.100.7",
            "hostname": "host.example.net",
            "city": "Oslo",
            "region": "Oslo",
            "country": "NO",
            "org": "AS64500 Example",
        }
    )
    info = network.get_public_ip_address(url="https://lookup.example/json", timeout=3)
    assert info.ip == "198.51.100.7"
    assert info.country == "NO"
    assert info.org == "AS64500 Example"
    url, kwargs = fake_get["calls"][0]
    assert url == "https://lookup.example/json"
    assert kwargs["timeout"] == 3


def test_minimal_payload(fake_get):
    fake_get["response"] = FakeResponse({"ip": "2001:db8::1"})
    info = network.get_public_ip_address()
    assert info.ip == "2001:db8::1"
    assert info.hostname == ""
    assert fake_get["calls"][0][0] == network.config.PUBLIC_IP_URL


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse({"ip": ""}),
        FakeResponse(["198.51.100.7"]),
        FakeResponse(status_code=503),
        FakeResponse(invalid_json=True),
        requests.ConnectionError("Name or service not known"),
    ],
)
def test_failures_raise_runtime_error(fake_get, response):
    fake_get["response"] = response
    with pytest.raises(RuntimeError):
        network.get_public_ip_address()
