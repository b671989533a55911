"""Shared fixtures: temporary stores, a logged-in Flask client, fake fping."""

import subprocess

import pytest

from netkeeper import scanner
from netkeeper.app import APP
from netkeeper.storage import open_store


def sample_dataset() -> dict:
    return {
        "subnets": [
            {"id": "sub1", "name": "LAN", "cidr": "10.0.0.0/24", "gateway": "10.0.0.1",
             "vlanId": "10", "vlanName": "Office", "vlanDescription": "Office clients"},
            {"id": "sub2", "name": "Servers", "cidr": "10.0.1.0/28", "vlanId": "20", "vlanName": "Servers"},
        ],
        "vlans": [],
        "natRules": [
            {"id": "nat1", "internalIp": "10.0.1.5", "internalPort": "443",
             "externalIp": "203.0.113.10", "externalPort": 443, "protocol": "tcp"},
        ],
        "ipAddresses": [
            {"id": "ip1", "address": "10.0.0.1", "hostname": "gw", "subnetId": "sub1",
             "deviceType": "router", "isOnline": True},
            {"id": "ip2", "address": "10.0.0.20", "hostname": "desk-01", "subnetId": "sub1",
             "deviceType": "desktop", "parentDeviceId": "ip1", "connectionType": "wired"},
            {"id": "ip3", "address": "10.0.1.5", "hostname": "web", "subnetId": "sub2",
             "deviceType": "server", "isOnline": False, "notes": "reverse proxy"},
        ],
        "wifiNetworks": [{"id": "wifi1", "ssid": "office", "security": "WPA3-SAE", "vlanId": "10"}],
        "applications": [{"id": "app1", "name": "Wiki", "url": "https://wiki.lan", "host": "web"}],
    }


@pytest.fixture
def dataset():
    return sample_dataset()


@pytest.fixture(params=["json", "sqlite"])
def store(request, tmp_path):
    """One store per backend; tests using it run twice."""
    return open_store(tmp_path, request.param)


@pytest.fixture
def json_store(tmp_path):
    return open_store(tmp_path, "json")


@pytest.fixture
def app(tmp_path):
    APP.config.update(
        TESTING=True,
        DATA_DIR=tmp_path,
        BACKEND="sqlite",
        FPING="fping",
        PUBLIC_URL="",
        MONITOR_AUTOSTART=False,
        WEBUI_DEBUG=False,
    )
    APP.extensions.pop("netkeeper_store", None)
    APP.extensions.pop("netkeeper_poller", None)
    yield APP
    poller = APP.extensions.pop("netkeeper_poller", None)
    if poller is not None:
        poller.stop(timeout=1.0)
    APP.extensions.pop("netkeeper_store", None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    r = client.post("/api/login", json={"username": "admin", "password": "admin"})
    assert r.status_code == 200
    return client


class FakeFping:
    """Stands in for ``subprocess.run`` inside the scanner module."""

    def __init__(self):
        self.stdout = ""
        self.stderr = ""
        self.returncode = 0
        self.raises = None
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if self.raises is not None:
            raise self.raises
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr=self.stderr)


@pytest.fixture
def fake_fping(monkeypatch):
    fake = FakeFping()
    monkeypatch.setattr(scanner.subprocess, "run", fake)
    return fake
