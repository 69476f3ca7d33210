from unittest.mock import MagicMock

import pytest

from vum_mcp_pro.config import VsphereConfig
from vum_mcp_pro.errors import TaskTimeoutError, VumNotFoundError, VumPreconditionError
from vum_mcp_pro.inventory import VsphereApiError, VsphereClient
from vum_mcp_pro.models import MoRef

BASE = "https://vc.example.test"

CLUSTERS = [{"cluster": "domain-c8", "name": "prod"}, {"cluster": "domain-c9", "name": "lab"}]
MEMBERS = {
    "domain-c8": [{"host": "host-21", "name": "esx01"}, {"host": "host-22", "name": "esx02"}],
    "domain-c9": [{"host": "host-31", "name": "esx11"}],
}


def _response(status, body=None):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.json.return_value = body
    r.headers = {"content-type": "application/json"}
    return r


def _client(handler=None, api_mode="api"):
    client = VsphereClient(VsphereConfig(host="vc.example.test", user="u", password="p", api_mode=api_mode))
    client._session = MagicMock()
    client._session_id = "sess-1"
    if handler:
        client._session.request.side_effect = handler
    return client


def _inventory(method, url, params=None, **kwargs):
    path = url[len(BASE):]
    params = params or {}
    if path == "/api/vcenter/cluster":
        names = params.get("names")
        return _response(200, [c for c in CLUSTERS if not names or c["name"] in names])
    if path == "/api/vcenter/host":
        if params.get("clusters"):
            return _response(200, MEMBERS.get(params["clusters"][0], []))
        names = params.get("names")
        every = [h for hs in MEMBERS.values() for h in hs] + [{"host": "host-99", "name": "standalone"}]
        return _response(200, [h for h in every if not names or h["name"] in names])
    return _response(404, {"error_type": "NOT_FOUND"})


def test_login_stores_session_token():
    client = VsphereClient(VsphereConfig(host="vc.example.test", user="u", password="p"))
    client._session = MagicMock()
    client._session.post.return_value = _response(201, "tok-123")

    client.login()

    assert client.session_id == "tok-123"
    assert client._session.post.call_args[0][0] == f"{BASE}/api/session"


def test_login_failure_raises_api_error():
    client = VsphereClient(VsphereConfig(host="vc.example.test", user="u", password="bad"))
    client._session = MagicMock()
    client._session.post.return_value = _response(401, {"error_type": "UNAUTHENTICATED"})

    with pytest.raises(VsphereApiError) as exc:
        client.login()
    assert exc.value.status_code == 401
    assert not client.is_authenticated


def test_find_host_returns_inventory_object():
    client = _client(_inventory)

    host = client.find_host("esx02")

    assert host.ref == MoRef(type="HostSystem", value="host-22")
    _, kwargs = client._session.request.call_args
    assert kwargs["headers"] == {"vmware-api-session-id": "sess-1"}


def test_missing_entities_are_reported_by_kind():
    client = _client(_inventory)

    with pytest.raises(VumNotFoundError, match="Host 'esx99' not found"):
        client.find_entity("esx99", "host")
    with pytest.raises(VumNotFoundError, match="Cluster 'dev' not found"):
        client.find_entity("dev", "cluster")
    with pytest.raises(ValueError, match="Unsupported entity kind"):
        client.find_entity("prod", "datacenter")


def test_rest_mode_uses_filter_params_and_unwraps_value():
    def handler(method, url, params=None, **kwargs):
        assert url == f"{BASE}/rest/vcenter/cluster"
        assert params == {"filter.names": ["prod"]}
        return _response(200, {"value": CLUSTERS[:1]})

    cluster = _client(handler, api_mode="rest").find_cluster("prod")

    assert cluster.is_cluster
    assert cluster.moid == "domain-c8"


def test_find_host_cluster():
    client = _client(_inventory)

    assert client.find_host_cluster("host-31").name == "lab"
    assert client.find_host_cluster("host-99") is None


def test_expired_session_is_renewed_once():
    client = _client()
    client._session.request.side_effect = [_response(401), _response(200, CLUSTERS)]
    client._session.post.return_value = _response(201, {"value": "sess-2"})

    clusters = client.list_clusters()

    assert [c.name for c in clusters] == ["prod", "lab"]
    assert client.session_id == "sess-2"
    assert client._session.request.call_count == 2


def test_run_guest_command_polls_until_exit():
    polls = iter([{"started": "t0"}, {"started": "t0"}, {"started": "t0", "finished": "t1", "exit_code": 0}])
    sleeps = []

    def handler(method, url, params=None, json=None, **kwargs):
        if params == {"action": "create"}:
            assert json["spec"] == {"path": "/bin/mkdir", "arguments": "-p /storage/updatemgr/import"}
            assert json["credentials"]["user_name"] == "root"
            return _response(201, 4242)
        assert url.endswith("/guest/processes/4242")
        return _response(200, next(polls))

    code = _client(handler).run_guest_command("vm-5", "root", "pw", "/bin/mkdir",
                                              "-p /storage/updatemgr/import", poll_interval_s=1.5,
                                              sleep=sleeps.append)

    assert code == 0
    assert sleeps == [1.5, 1.5]


def test_find_vm_not_found():
    client = _client(lambda method, url, params=None, **kw: _response(200, []))

    with pytest.raises(VumNotFoundError, match="VM 'vcsa' not found"):
        client.find_vm("vcsa")


def test_run_guest_command_gives_up_at_deadline():
    now = [0.0]

    def handler(method, url, params=None, json=None, **kwargs):
        if params == {"action": "create"}:
            return _response(201, 77)
        return _response(200, {"started": "t0", "finished": None})

    def sleep(seconds):
        now[0] += seconds

    with pytest.raises(TaskTimeoutError, match="still running after 10s") as exc:
        _client(handler).run_guest_command("vm-5", "root", "pw", "/usr/bin/curl", "-o /tmp/a https://x/a",
                                           poll_interval_s=2, timeout_s=10, sleep=sleep, clock=lambda: now[0])

    assert exc.value.task == "vm-5/77"
    assert now[0] <= 10


def test_guest_operations_need_api_mode(tmp_path):
    client = _client(api_mode="rest")
    local = tmp_path / "esxi.zip"
    local.write_bytes(b"PK")

    with pytest.raises(VumPreconditionError, match="VSPHERE_API_MODE=api"):
        client.run_guest_command("vm-5", "root", "pw", "/bin/mkdir", "-p /storage")
    with pytest.raises(VumPreconditionError):
        client.upload_guest_file("vm-5", "root", "pw", str(local), "/storage/esxi.zip")
    client._session.request.assert_not_called()


def test_non_idempotent_requests_are_not_retried():
    client = VsphereClient(VsphereConfig(host="vc.example.test", user="u", password="p"))

    retry = client._session.get_adapter(f"{BASE}/api/vcenter/vm").max_retries

    assert retry.is_retry("GET", 503)
    assert not retry.is_retry("POST", 503)
    assert not retry.is_retry("PUT", 503)
