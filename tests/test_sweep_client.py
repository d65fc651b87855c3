import pytest
import requests

from lending_service import sweep_client
from lending_service.sweep_client import SweepFailed, main, trigger_overdue_sweep


class FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


def test_sweep_posts_with_service_headers(monkeypatch):
    calls = []

    def fake_post(url, headers=None, timeout=None):
        calls.append((url, headers, timeout))
        return FakeResponse(200, {"updated_count": 3})

    monkeypatch.setattr(sweep_client.requests, "post", fake_post)

    assert trigger_overdue_sweep("http://lending:5001/", "secret", 7, timeout=5) == 3
    assert calls == [
        (
            "http://lending:5001/api/loans/update-overdue",
            {"X-API-Key": "secret", "X-User-Id": "7"},
            5,
        )
    ]


def test_sweep_rejected_by_service(monkeypatch):
    monkeypatch.setattr(
        sweep_client.requests,
        "post",
        lambda url, headers=None, timeout=None: FakeResponse(403, text="forbidden"),
    )
    with pytest.raises(SweepFailed, match="403"):
        trigger_overdue_sweep("http://lending:5001", "secret", 7)


def test_sweep_unreachable(monkeypatch):
    def fake_post(url, headers=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(sweep_client.requests, "post", fake_post)
    with pytest.raises(SweepFailed, match="Could not reach"):
        trigger_overdue_sweep("http://lending:5001", "secret", 7)


def test_main_exit_codes(monkeypatch, capsys):
    monkeypatch.setattr(
        sweep_client.requests,
        "post",
        lambda url, headers=None, timeout=None: FakeResponse(200, {"updated_count": 2}),
    )
    assert main(["--base-url", "http://lending:5001", "--api-key", "k", "--librarian-id", "1"]) == 0
    assert "updated_count=2" in capsys.readouterr().out

    monkeypatch.setattr(
        sweep_client.requests,
        "post",
        lambda url, headers=None, timeout=None: FakeResponse(500, text="boom"),
    )
    assert main(["--base-url", "http://lending:5001", "--api-key", "k"]) == 1


def test_sweep_against_running_app(app, client, make_user, make_book, loans, clock, monkeypatch):
    librarian = make_user(role="librarian")
    loans.borrow_book(make_book().id, make_user().id)
    clock.advance(days=20)

    def fake_post(url, headers=None, timeout=None):
        path = url.split("http://lending", 1)[1]
        resp = client.post(path, headers=headers)
        return FakeResponse(resp.status_code, resp.get_json(), resp.get_data(as_text=True))

    monkeypatch.setattr(sweep_client.requests, "post", fake_post)
    key = app.config["SERVICE_API_KEY"]
    assert trigger_overdue_sweep("http://lending", key, librarian.id) == 1
