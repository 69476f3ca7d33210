from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Ensure tests import the local tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from vum_mcp_pro.config import VumConfig  # noqa: E402
from vum_mcp_pro.errors import VumNotFoundError  # noqa: E402
from vum_mcp_pro.models import CLUSTER_KIND, HOST_KIND, InventoryObject, MoRef, ServiceContent  # noqa: E402
from vum_mcp_pro.session import VumSession  # noqa: E402

CONTENT = ServiceContent(
    session_manager=MoRef(type="VciSessionManager", value="session"),
    baseline_manager=MoRef(type="BaselineManager", value="baselines"),
    baseline_group_manager=MoRef(type="BaselineGroupManager", value="groups"),
    compliance_status_manager=MoRef(type="ComplianceStatusManager", value="compliance"),
    remediation_manager=MoRef(type="RemediationManager", value="remediation"),
    config_manager=MoRef(type="ConfigManager", value="config"),
    file_upload_manager=MoRef(type="FileUploadManager", value="upload"),
    upgrade_product_manager=MoRef(type="UpgradeProductManager", value="products"),
    property_collector=MoRef(type="PropertyCollector", value="props"),
)


class FakeSoapClient:
    """Records every invoke() and answers from per-method handlers."""

    def __init__(self, host: str = "vc.example.test"):
        self.host = host
        self.calls: List[Tuple[str, MoRef, Dict[str, Any]]] = []
        self.handlers: Dict[str, Any] = {}
        self.closed = False

    def invoke(self, method: str, this: MoRef, **params: Any) -> Any:
        self.calls.append((method, this, params))
        handler = self.handlers.get(method)
        if callable(handler):
            return handler(this, **params)
        return handler

    def close(self) -> None:
        self.closed = True


class FakeUpdateManager:
    """A scripted Integrity endpoint behind a real VumSession."""

    def __init__(self, **cfg: Any):
        self.client = FakeSoapClient()
        self.task_states: Dict[str, List[str]] = {}
        self.task_errors: Dict[str, str] = {}
        self.properties: Dict[str, Any] = {}
        self.client.handlers["RetrievePropertiesEx"] = self._retrieve
        settings = {"task_warmup_s": 0, "task_poll_interval_s": 0, "scan_limit": 16}
        settings.update(cfg)
        self.session = VumSession(self.client, CONTENT, VumConfig(**settings))

    def on(self, method: str, handler: Any) -> None:
        self.client.handlers[method] = handler

    def script_task(self, task: str, *states: str, error: str = "remote failure") -> MoRef:
        self.task_states[task] = list(states)
        self.task_errors[task] = error
        return MoRef(type="Task", value=task)

    def _retrieve(self, this: MoRef, specSet: Dict[str, Any], options: Dict[str, Any]) -> Dict[str, Any]:
        path = specSet["propSet"]["pathSet"]
        obj = specSet["objectSet"]["obj"]
        if path == "info":
            state = self.task_states[obj.value].pop(0)
            val: Any = {"key": obj.value, "state": state, "progress": "40"}
            if state == "error":
                val["error"] = {"localizedMessage": self.task_errors[obj.value]}
        else:
            val = self.properties.get(path)
        return {"objects": {"obj": obj, "propSet": {"name": path, "val": val}}}

    @property
    def methods(self) -> List[str]:
        return [c[0] for c in self.client.calls]

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [params for m, _, params in self.client.calls if m == method]


def host(moid: str, name: Optional[str] = None) -> InventoryObject:
    return InventoryObject(kind=HOST_KIND, moid=moid, name=name or f"esx-{moid}")


def cluster(moid: str, name: Optional[str] = None) -> InventoryObject:
    return InventoryObject(kind=CLUSTER_KIND, moid=moid, name=name or f"cl-{moid}")


class FakeInventory:
    """Inventory connection stub: clusters and their member hosts, plus guest operations."""

    def __init__(self, clusters: Optional[List[Tuple[InventoryObject, List[InventoryObject]]]] = None):
        self.clusters = clusters or []
        self.list_calls = 0
        self.uploads: List[Tuple[str, str, str]] = []
        self.commands: List[Tuple[str, str, str]] = []
        self.exit_code = 0
        self.timeouts: List[float] = []
        self.host = "vc.example.test"
        self.session_id = "vc-session-1"

    def list_cluster_hosts(self, cluster_moid: str) -> List[InventoryObject]:
        self.list_calls += 1
        for c, hosts in self.clusters:
            if c.moid == cluster_moid:
                return list(hosts)
        return []

    def find_host_cluster(self, host_moid: str) -> Optional[InventoryObject]:
        for c, hosts in self.clusters:
            if any(h.moid == host_moid for h in hosts):
                return c
        return None

    def find_entity(self, name: str, kind: str = "host") -> InventoryObject:
        for c, hosts in self.clusters:
            candidates = [c] if kind == "cluster" else hosts
            for obj in candidates:
                if obj.name == name:
                    return obj
        raise VumNotFoundError(kind, name)

    def find_vm(self, name: str) -> str:
        return f"vm-{name}"

    def upload_guest_file(self, vm: str, user: str, password: str, local_path: str, guest_path: str) -> None:
        self.uploads.append((vm, local_path, guest_path))

    def run_guest_command(self, vm: str, user: str, password: str, program: str, arguments: str,
                          poll_interval_s: float = 2.0, timeout_s: float = 1800.0,
                          sleep: Optional[Callable[[float], None]] = None) -> int:
        self.commands.append((vm, program, arguments))
        self.timeouts.append(timeout_s)
        return self.exit_code


@pytest.fixture
def vum() -> FakeUpdateManager:
    return FakeUpdateManager()


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()
