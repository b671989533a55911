"""End-to-end tests of the REST API through Flask's test client."""

import io
import json

import pytest

from netkeeper import notify


class TestAuth:

    def test_health_is_public(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.get_json()["backend"] == "sqlite"

    @pytest.mark.parametrize("path", ["/api/data", "/api/dashboard", "/api/monitor/devices", "/api/backup"])
    def test_requires_login(self, client, path):
        r = client.get(path)
        assert r.status_code == 401
        assert r.get_json()["ok"] is False

    def test_session_flow(self, client):
        assert client.get("/api/session").get_json()["authenticated"] is False
        r = client.post("/api/login", json={"username": "admin", "password": "wrong"})
        assert r.status_code == 401
        r = client.post("/api/login", json={"username": "admin", "password": "admin"})
        assert r.status_code == 200
        assert client.get("/api/session").get_json() == {"ok": True, "authenticated": True, "username": "admin"}
        client.post("/api/logout")
        assert client.get("/api/data").status_code == 401

    def test_change_credentials(self, auth_client):
        r = auth_client.post("/api/account", json={"username": "", "password": "abc", "confirmPassword": "abc"})
        assert r.status_code == 400
        assert "too short" in r.get_json()["message"]

        r = auth_client.post("/api/account", json={"password": "secret", "confirmPassword": "other"})
        assert r.get_json()["message"] == "Passwords do not match."

        r = auth_client.post("/api/account", json={"username": "ops", "password": "secret", "confirmPassword": "secret"})
        assert r.status_code == 200
        auth_client.post("/api/logout")
        assert auth_client.post("/api/login", json={"username": "admin", "password": "admin"}).status_code == 401
        assert auth_client.post("/api/login", json={"username": "ops", "password": "secret"}).status_code == 200

    def test_plain_text_account_change_refused(self, auth_client):
        body = json.dumps({"username": "evil", "password": "pwned1", "confirmPassword": "pwned1"})
        r = auth_client.post("/api/account", data=body, content_type="text/plain")
        assert r.status_code == 415
        assert r.get_json()["ok"] is False
        auth_client.post("/api/logout")
        assert auth_client.post("/api/login", json={"username": "admin", "password": "admin"}).status_code == 200

    @pytest.mark.parametrize("content_type", ["text/plain", "application/x-www-form-urlencoded"])
    def test_non_json_mutations_refused(self, auth_client, dataset, content_type):
        r = auth_client.post("/api/data", data=json.dumps(dataset), content_type=content_type)
        assert r.status_code == 415
        r = auth_client.post("/api/notifications/settings", data='{"cooldownMinutes": 0}', content_type=content_type)
        assert r.status_code == 415

    def test_session_cookie_is_same_site(self, client):
        r = client.post("/api/login", json={"username": "admin", "password": "admin"})
        cookie = r.headers["Set-Cookie"]
        assert "SameSite=Lax" in cookie
        assert "HttpOnly" in cookie


class TestDataset:

    def test_replace_and_read(self, auth_client, dataset):
        r = auth_client.post("/api/data", json=dataset)
        assert r.get_json() == {"status": "success"}
        data = auth_client.get("/api/data").get_json()
        assert [s["usedIps"] for s in data["subnets"]] == [2, 1]
        assert data["natRules"][0]["protocol"] == "TCP"

    def test_missing_collections_become_empty(self, auth_client):
        auth_client.post("/api/data", json={"subnets": [{"id": "s", "name": "n", "cidr": "10.1.0.0/24"}]})
        data = auth_client.get("/api/data").get_json()
        assert data["ipAddresses"] == []
        assert data["applications"] == []

    def test_invalid_body(self, auth_client):
        r = auth_client.post("/api/data", data="nope", content_type="application/json")
        assert r.status_code == 400
        assert r.get_json() == {"error": "Invalid JSON body"}

    def test_orphan_ip_rejected(self, auth_client, dataset):
        dataset["ipAddresses"][0]["subnetId"] = "missing"
        r = auth_client.post("/api/data", json=dataset)
        assert r.status_code == 400
        assert "unknown subnet" in r.get_json()["message"]

    def test_duplicate_ids_rejected(self, auth_client, dataset):
        dataset["natRules"].append(dict(dataset["natRules"][0], externalPort=8443))
        r = auth_client.post("/api/data", json=dataset)
        assert r.status_code == 400
        assert r.get_json()["message"] == "natRules: duplicate id nat1"
        assert auth_client.get("/api/data").get_json()["natRules"] == []


class TestRecords:

    def test_crud(self, auth_client):
        r = auth_client.post("/api/subnets", json={"name": "LAN", "cidr": "192.168.1.0/24", "vlanId": "5"})
        assert r.status_code == 201
        sid = r.get_json()["record"]["id"]

        r = auth_client.post("/api/ips", json={"address": "192.168.1.10", "hostname": "pc", "subnetId": sid})
        assert r.status_code == 201
        ip_id = r.get_json()["record"]["id"]

        r = auth_client.put(f"/api/subnets/{sid}", json={"description": "main"})
        rec = r.get_json()["record"]
        assert rec["description"] == "main"
        assert rec["usedIps"] == 1

        r = auth_client.put(f"/api/ips/{ip_id}", json={"status": "static"})
        assert r.get_json()["record"]["status"] == "static"

        vlans = auth_client.get("/api/vlans").get_json()["vlans"]
        assert vlans[0]["vlanNumber"] == "5"

        assert auth_client.delete(f"/api/subnets/{sid}").status_code == 200
        data = auth_client.get("/api/data").get_json()
        assert data["subnets"] == [] and data["ipAddresses"] == []

    @pytest.mark.parametrize("kind,collection,rec,edit", [
        ("nat", "natRules", {"internalIp": "10.0.0.5", "externalIp": "203.0.113.1", "protocol": "udp", "externalPort": "53"},
         {"description": "dns"}),
        ("wifi", "wifiNetworks", {"ssid": "guest", "security": "Open"}, {"isActive": False}),
        ("applications", "applications", {"name": "Wiki", "url": "https://wiki"}, {"host": "web01"}),
    ])
    def test_roundtrip(self, auth_client, kind, collection, rec, edit):
        r = auth_client.post(f"/api/{kind}", json=rec)
        assert r.status_code == 201
        created = r.get_json()["record"]

        edited = auth_client.put(f"/api/{kind}/{created['id']}", json=edit).get_json()["record"]
        stored = auth_client.get("/api/data").get_json()[collection]
        assert stored == [edited]
        for k, v in edit.items():
            assert edited[k] == v

        assert auth_client.delete(f"/api/{kind}/{created['id']}").status_code == 200
        assert auth_client.get("/api/data").get_json()[collection] == []

    def test_validation(self, auth_client):
        r = auth_client.post("/api/nat", json={"internalIp": "10.0.0.1", "externalIp": "1.2.3.4", "protocol": "GRE"})
        assert r.status_code == 400
        r = auth_client.post("/api/ips", json={"address": "10.0.0.1", "hostname": "x", "subnetId": "nope"})
        assert r.status_code == 400

    def test_not_found(self, auth_client):
        assert auth_client.put("/api/wifi/missing", json={"ssid": "x"}).status_code == 404
        assert auth_client.delete("/api/applications/missing").status_code == 404
        assert auth_client.post("/api/printers", json={}).status_code == 404

    def test_dashboard_and_topology(self, auth_client, dataset):
        auth_client.post("/api/data", json=dataset)
        d = auth_client.get("/api/dashboard").get_json()
        assert d["totalTracked"] == 3
        assert d["vlanCount"] == 2
        topo = auth_client.get("/api/topology").get_json()
        assert len(topo["nodes"]) == 6
        assert len(topo["links"]) == 5


class TestScan:

    def test_cidr_required(self, auth_client, fake_fping):
        r = auth_client.post("/api/scan", json={})
        assert r.status_code == 400
        assert r.get_json() == {"error": "CIDR required"}

    def test_invalid_cidr(self, auth_client, fake_fping):
        r = auth_client.post("/api/scan", json={"cidr": "10.0.0.0/33"})
        assert r.status_code == 400
        assert fake_fping.calls == []

    def test_scan(self, auth_client, fake_fping):
        fake_fping.stdout = "10.0.0.20\n10.0.0.1\n"
        fake_fping.returncode = 1
        r = auth_client.post("/api/scan", json={"cidr": "10.0.0.0/24"})
        assert r.get_json() == {"aliveHosts": ["10.0.0.1", "10.0.0.20"]}

    def test_fping_missing(self, auth_client, fake_fping):
        fake_fping.raises = FileNotFoundError()
        r = auth_client.post("/api/scan", json={"cidr": "10.0.0.0/24"})
        assert r.status_code == 500
        assert "not installed" in r.get_json()["message"]

    def test_subnet_scan_and_import(self, auth_client, fake_fping, dataset):
        auth_client.post("/api/data", json=dataset)
        fake_fping.stdout = "10.0.0.20\n10.0.0.99\n"
        r = auth_client.post("/api/subnets/sub1/scan")
        assert r.get_json()["updated"] == 2

        r = auth_client.post("/api/subnets/sub1/import", json={"devices": [{"ip": "10.0.0.20"}, {"ip": "10.0.0.99"}]})
        body = r.get_json()
        assert body["message"] == "Successfully added 1 device(s) to LAN"
        assert body["added"][0]["hostname"] == "host-99"

        r = auth_client.post("/api/subnets/sub1/import", json={"devices": [{"ip": "10.0.0.99"}]})
        assert r.status_code == 400
        assert r.get_json()["message"] == "All selected devices already exist in the subnet"

        ips = {i["address"]: i for i in auth_client.get("/api/data").get_json()["ipAddresses"]}
        assert ips["10.0.0.20"]["isOnline"] is True
        assert ips["10.0.0.1"]["isOnline"] is False

    def test_monitor_check(self, auth_client, fake_fping):
        fake_fping.stderr = "10.0.0.1 : xmt/rcv/%loss = 1/1/0%, min/avg/max = 1.9/1.9/1.9\n"
        r = auth_client.post("/api/monitor/check", json={"devices": [{"id": "a", "ipAddress": "10.0.0.1"}]})
        assert r.get_json() == {"results": [{"id": "a", "ipAddress": "10.0.0.1", "isOnline": True, "latency": 2}]}

    def test_malformed_device_lists(self, auth_client, fake_fping, dataset):
        auth_client.post("/api/data", json=dataset)
        r = auth_client.post("/api/monitor/check", json={"devices": ["10.0.0.1"]})
        assert r.status_code == 200
        assert r.get_json() == {"results": []}
        r = auth_client.post("/api/subnets/sub1/import", json={"devices": ["10.0.0.99", None]})
        assert r.status_code == 400
        assert r.get_json()["message"] == "Please select at least one device to add"


class TestMonitorApi:

    def test_devices_toggle_run(self, auth_client, fake_fping, dataset):
        auth_client.post("/api/data", json=dataset)
        devices = auth_client.get("/api/monitor/devices").get_json()["devices"]
        assert [d["id"] for d in devices] == ["ip1", "ip2", "ip3"]

        r = auth_client.post("/api/monitor/devices/ip3/toggle")
        assert r.get_json()["device"]["enabled"] is False
        assert auth_client.post("/api/monitor/devices/nope/toggle").status_code == 404

        fake_fping.returncode = 1
        fake_fping.stderr = (
            "10.0.0.1 : xmt/rcv/%loss = 1/1/0%, min/avg/max = 1.0/1.0/1.0\n"
            "10.0.0.20 : xmt/rcv/%loss = 1/0/100%\n"
        )
        r = auth_client.post("/api/monitor/run").get_json()
        assert r["stats"]["totalDevices"] == 2
        assert r["stats"]["onlineDevices"] == 1
        assert fake_fping.calls[-1][-2:] == ["10.0.0.1", "10.0.0.20"]

        stats = auth_client.get("/api/monitor/stats").get_json()
        assert stats["lastCheck"]

    def test_poller(self, auth_client):
        status = auth_client.get("/api/monitor/poller").get_json()
        assert status["running"] is False
        r = auth_client.post("/api/monitor/poller", json={"interval": 60})
        assert r.get_json()["interval"] == 60
        assert auth_client.post("/api/monitor/poller", json={"interval": 7}).status_code == 400
        assert auth_client.post("/api/monitor/poller", json={"interval": "x"}).status_code == 400

    def test_poller_restart_while_stopping(self, auth_client, monkeypatch):
        from netkeeper.app import get_poller

        monkeypatch.setattr(get_poller(), "start", lambda: False)
        r = auth_client.post("/api/monitor/poller", json={"running": True})
        assert r.status_code == 409
        assert "still stopping" in r.get_json()["message"]

    def test_notifications(self, auth_client, app):
        from netkeeper import monitor
        from netkeeper.app import get_store

        store = get_store()
        entry = monitor.record_notification(store, {"id": "d"}, notify.offline_alert("nas", "10.0.0.5"))
        monitor.record_notification(store, {"id": "e"}, notify.offline_alert("gw", "10.0.0.1"))

        body = auth_client.get("/api/notifications").get_json()
        assert body["unread"] == 2
        assert auth_client.post(f"/api/notifications/{entry['id']}/read").get_json()["updated"] == 1
        assert auth_client.post("/api/notifications/read-all").get_json()["updated"] == 1
        assert auth_client.get("/api/notifications").get_json()["unread"] == 0


class TestNotificationApi:

    def test_settings(self, auth_client):
        s = auth_client.get("/api/notifications/settings").get_json()["settings"]
        assert s["cooldownMinutes"] == 5
        r = auth_client.post("/api/notifications/settings", json={"ntfy": {"enabled": True, "topic": "net"}})
        s = r.get_json()["settings"]
        assert s["ntfy"]["topic"] == "net"
        assert s["ntfy"]["serverUrl"] == "https://ntfy.sh"
        assert auth_client.get("/api/notifications/settings").get_json()["settings"] == s

    def test_bad_threshold_rejected_and_monitor_keeps_running(self, auth_client, fake_fping, dataset):
        auth_client.post("/api/data", json=dataset)
        r = auth_client.post("/api/notifications/settings", json={"highLatencyThreshold": "200ms"})
        assert r.status_code == 400
        assert r.get_json()["message"] == "highLatencyThreshold must be a whole number"
        assert auth_client.get("/api/notifications/settings").get_json()["settings"]["highLatencyThreshold"] == 200
        fake_fping.returncode = 1
        assert auth_client.post("/api/monitor/run").status_code == 200

    def test_test_endpoint(self, auth_client, monkeypatch):
        calls = []
        monkeypatch.setattr(notify, "send_test_notification",
                            lambda channel, config, click_url="": calls.append((channel, config)) or True)
        r = auth_client.post("/api/notifications/test", json={"channel": "gotify", "config": {"serverUrl": "x"}})
        assert r.get_json()["ok"] is True
        assert calls == [("gotify", {"serverUrl": "x"})]
        assert auth_client.post("/api/notifications/test", json={"channel": "pager"}).status_code == 400

    def test_smtp_endpoint(self, auth_client, monkeypatch):
        sent = []
        monkeypatch.setattr(notify, "send_smtp_mail", lambda config, payload: sent.append((config, payload)))
        r = auth_client.post("/api/notifications/smtp", json={
            "config": {"host": "mail", "toAddresses": ["a@b.c"]},
            "payload": {"subject": "s", "text": "t", "html": "<p>t</p>"},
        })
        assert r.get_json()["ok"] is True
        assert sent[0][1]["subject"] == "s"

    def test_smtp_endpoint_bad_config(self, auth_client):
        r = auth_client.post("/api/notifications/smtp", json={"config": {}, "payload": {"subject": "s"}})
        assert r.status_code == 400
        assert r.get_json()["message"] == "SMTP host is required"


class TestBackupExport:

    def test_backup_download(self, auth_client, dataset):
        auth_client.post("/api/data", json=dataset)
        r = auth_client.get("/api/backup")
        assert "netkeeper_backup.json" in r.headers["Content-Disposition"]
        assert len(json.loads(r.data)["subnets"]) == 2

    def test_restore_upload(self, auth_client, dataset):
        auth_client.post("/api/data", json=dataset)
        backup = json.dumps({"wifiNetworks": [{"ssid": "guest"}]}).encode()
        r = auth_client.post("/api/restore", data={"file": (io.BytesIO(backup), "b.json")},
                             content_type="multipart/form-data")
        assert r.status_code == 200
        data = auth_client.get("/api/data").get_json()
        assert [w["ssid"] for w in data["wifiNetworks"]] == ["guest"]
        assert len(data["subnets"]) == 2

    def test_restore_invalid(self, auth_client):
        r = auth_client.post("/api/restore", data=b"garbage", content_type="application/json")
        assert r.status_code == 400
        assert r.get_json()["message"] == "Invalid backup file."

    @pytest.mark.parametrize("fmt,mimetype,magic", [
        ("csv", "text/csv", b"subnet,cidr"),
        ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", b"PK"),
        ("pdf", "application/pdf", b"%PDF"),
    ])
    def test_export(self, auth_client, dataset, fmt, mimetype, magic):
        auth_client.post("/api/data", json=dataset)
        r = auth_client.get(f"/api/export?fmt={fmt}")
        assert r.status_code == 200
        assert r.mimetype == mimetype
        assert r.data.startswith(magic)
        assert r.headers["Content-Disposition"].endswith(f".{fmt}")

    def test_export_unknown_format(self, auth_client):
        assert auth_client.get("/api/export?fmt=doc").status_code == 400


class TestUi:

    def test_index(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert b"NetKeeper" in r.data

    def test_spa_fallback(self, client):
        assert client.get("/monitor").status_code == 200
        assert client.get("/api/nothing-here").status_code == 404
