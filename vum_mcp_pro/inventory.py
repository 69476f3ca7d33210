from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import AppConfig, VsphereConfig
from .errors import TaskTimeoutError, VumNotFoundError, VumPreconditionError
from .models import CLUSTER_KIND, HOST_KIND, InventoryObject

logger = logging.getLogger(__name__)


class VsphereApiError(Exception):
    """Exception raised when the vCenter REST API returns an error response."""

    def __init__(
        self,
        message: str,
        status_code: int,
        response_body: Optional[Dict[str, Any]] = None,
        path: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body or {}
        self.path = path
        self.error_type = self._extract_error_type()

        detail = f"HTTP {status_code}"
        if path:
            detail += f" on {path}"
        if self.error_type:
            detail += f" [{self.error_type}]"
        messages = self._extract_error_messages()
        if messages:
            detail += f": {'; '.join(messages)}"
        super().__init__(f"{message}: {detail}")

    def _extract_error_type(self) -> Optional[str]:
        body = self.response_body
        if "error_type" in body:
            return body["error_type"]
        if "type" in body:
            return body["type"].split(".")[-1].upper()
        return None

    def _extract_error_messages(self) -> List[str]:
        body = self.response_body
        if isinstance(body.get("value"), dict):
            body = body["value"]
        messages = []
        for msg in body.get("messages", []):
            if isinstance(msg, dict) and "default_message" in msg:
                messages.append(msg["default_message"])
            elif isinstance(msg, str):
                messages.append(msg)
        return messages

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or bool(self.error_type and "NOT_FOUND" in self.error_type.upper())


def _guest_credentials(user: str, password: str) -> Dict[str, Any]:
    return {
        "interactive_session": False,
        "type": "USERNAME_PASSWORD",
        "user_name": user,
        "password": password,
    }


class VsphereClient:
    """vCenter REST client used as the inventory connection a VUM session binds to."""

    def __init__(self, cfg: VsphereConfig):
        self._cfg = cfg
        self._session = requests.Session()
        retry = Retry(
            total=cfg.request_retries,
            backoff_factor=cfg.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods={"GET", "DELETE"},
            raise_on_status=False,
        )
        self._session.mount("https://", HTTPAdapter(max_retries=retry))
        self._session.verify = cfg.ca_bundle or cfg.verify_ssl
        self._timeout = cfg.default_timeout_s
        self._lock = threading.Lock()
        self._session_id: Optional[str] = None
        self._base = f"https://{cfg.host}"
        self._api_mode = "api" if cfg.api_mode == "api" else "rest"

    @property
    def host(self) -> str:
        return self._cfg.host

    @property
    def config(self) -> VsphereConfig:
        return self._cfg

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_authenticated(self) -> bool:
        return self._session_id is not None

    def _auth_header(self) -> Dict[str, str]:
        return {"vmware-api-session-id": self._session_id} if self._session_id else {}

    def login(self) -> None:
        with self._lock:
            if self._session_id:
                return
            if self._api_mode == "api":
                url = f"{self._base}/api/session"
            else:
                url = f"{self._base}/rest/com/vmware/cis/session"
            r = self._session.post(url, timeout=self._timeout, auth=(self._cfg.user, self._cfg.password))
            if not r.ok:
                raise VsphereApiError("Login failed", status_code=r.status_code,
                                      response_body=self._safe_json(r), path=url)
            token = r.json()
            if isinstance(token, dict):
                token = token.get("value")
            if not token:
                raise RuntimeError(f"vCenter {url} returned no session token")
            self._session_id = token
            logger.debug("Logged in to %s", self._cfg.host)

    def logout(self) -> None:
        with self._lock:
            if not self._session_id:
                return
            url = f"{self._base}{self._v('/rest/com/vmware/cis/session', '/api/session')}"
            try:
                self._session.delete(url, headers=self._auth_header(), timeout=self._timeout)
                logger.debug("Logged out from %s", self._cfg.host)
            except requests.RequestException as e:
                logger.warning("Logout failed for %s: %s", self._cfg.host, e)
            finally:
                self._session_id = None

    def close(self) -> None:
        self.logout()
        self._session.close()

    @staticmethod
    def _safe_json(r: requests.Response) -> Optional[Dict[str, Any]]:
        try:
            if r.headers.get("content-type", "").startswith("application/json"):
                return r.json()
        except ValueError:
            pass
        return None

    def _check_response(self, r: requests.Response, path: str, operation: str) -> None:
        if r.ok:
            return
        raise VsphereApiError(
            f"Failed to {operation}",
            status_code=r.status_code,
            response_body=self._safe_json(r),
            path=path,
        )

    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                 json_body: Optional[Any] = None) -> requests.Response:
        url = f"{self._base}{path}"
        r = self._session.request(method, url, headers=self._auth_header(), params=params,
                                  json=json_body, timeout=self._timeout)
        if r.status_code == 401:
            with self._lock:
                self._session_id = None
            self.login()
            r = self._session.request(method, url, headers=self._auth_header(), params=params,
                                      json=json_body, timeout=self._timeout)
        return r

    def _v(self, rest: str, api: str) -> str:
        return api if self._api_mode == "api" else rest

    def _filter(self, name: str) -> str:
        return name if self._api_mode == "api" else f"filter.{name}"

    def _get_list(self, rest: str, api: str, operation: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        path = self._v(rest, api)
        r = self._request("GET", path, params={self._filter(k): v for k, v in params.items()})
        self._check_response(r, path, operation)
        data = r.json()
        if self._api_mode == "rest" and isinstance(data, dict) and "value" in data:
            return data["value"]
        return data

    # --- Hosts and clusters ---

    def list_clusters(self, names: Optional[List[str]] = None) -> List[InventoryObject]:
        params = {"names": names} if names else {}
        data = self._get_list("/rest/vcenter/cluster", "/api/vcenter/cluster", "list clusters", params)
        return [InventoryObject(kind=CLUSTER_KIND, moid=c["cluster"], name=c["name"]) for c in data]

    def list_hosts(self, names: Optional[List[str]] = None,
                   clusters: Optional[List[str]] = None) -> List[InventoryObject]:
        params: Dict[str, Any] = {}
        if names:
            params["names"] = names
        if clusters:
            params["clusters"] = clusters
        data = self._get_list("/rest/vcenter/host", "/api/vcenter/host", "list hosts", params)
        return [InventoryObject(kind=HOST_KIND, moid=h["host"], name=h["name"]) for h in data]

    def list_cluster_hosts(self, cluster_moid: str) -> List[InventoryObject]:
        return self.list_hosts(clusters=[cluster_moid])

    def find_host(self, name: str) -> InventoryObject:
        hosts = self.list_hosts(names=[name])
        if not hosts:
            raise VumNotFoundError("host", name)
        return hosts[0]

    def find_cluster(self, name: str) -> InventoryObject:
        clusters = self.list_clusters(names=[name])
        if not clusters:
            raise VumNotFoundError("cluster", name)
        return clusters[0]

    def find_entity(self, name: str, kind: str = "host") -> InventoryObject:
        if kind.lower() == "cluster":
            return self.find_cluster(name)
        if kind.lower() == "host":
            return self.find_host(name)
        raise ValueError(f"Unsupported entity kind '{kind}' (expected 'host' or 'cluster')")

    def find_host_cluster(self, host_moid: str) -> Optional[InventoryObject]:
        """Return the cluster owning a host, or None for a standalone host."""
        for cluster in self.list_clusters():
            if any(h.moid == host_moid for h in self.list_cluster_hosts(cluster.moid)):
                return cluster
        return None

    # --- Guest operations ---

    def _require_api_mode(self, operation: str) -> None:
        # Guest file and process operations only exist under /api.
        if self._api_mode != "api":
            raise VumPreconditionError(
                f"Cannot {operation} on {self._cfg.host}: guest operations need VSPHERE_API_MODE=api"
            )

    def find_vm(self, name: str) -> str:
        data = self._get_list("/rest/vcenter/vm", "/api/vcenter/vm", f"find VM '{name}'", {"names": [name]})
        if not data:
            raise VumNotFoundError("VM", name)
        return data[0]["vm"]

    def upload_guest_file(self, vm: str, user: str, password: str, local_path: str, guest_path: str) -> None:
        self._require_api_mode(f"upload '{local_path}'")
        path = f"/api/vcenter/vm/{vm}/guest/filesystem"
        body = {
            "credentials": _guest_credentials(user, password),
            "spec": {
                "path": guest_path,
                "attributes": {"overwrite": True, "size": os.path.getsize(local_path)},
            },
        }
        r = self._request("POST", path, params={"action": "create"}, json_body=body)
        self._check_response(r, path, f"create guest transfer for '{guest_path}'")
        transfer_url = r.json()

        logger.info("Uploading %s to %s:%s", local_path, vm, guest_path)
        with open(local_path, "rb") as fh:
            put = self._session.put(transfer_url, data=fh, timeout=(self._timeout, None))
        if not put.ok:
            raise VsphereApiError(f"Failed to upload '{local_path}'", status_code=put.status_code, path=guest_path)

    def run_guest_command(
        self,
        vm: str,
        user: str,
        password: str,
        program: str,
        arguments: str,
        poll_interval_s: float = 2.0,
        timeout_s: float = 1800.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> int:
        """
        Start a guest process and block until it exits; returns its exit code.

        Raises:
            TaskTimeoutError: the process was still running after ``timeout_s``.
        """
        self._require_api_mode(f"run '{program}'")
        creds = _guest_credentials(user, password)
        path = f"/api/vcenter/vm/{vm}/guest/processes"
        r = self._request("POST", path, params={"action": "create"},
                          json_body={"credentials": creds, "spec": {"path": program, "arguments": arguments}})
        self._check_response(r, path, f"start '{program}' in guest")
        pid = r.json()
        logger.debug("Started %s in %s as pid %s", program, vm, pid)

        deadline = clock() + timeout_s
        status_path = f"{path}/{pid}"
        while True:
            r = self._request("POST", status_path, params={"action": "get"}, json_body={"credentials": creds})
            self._check_response(r, status_path, f"query guest process {pid}")
            info = r.json()
            if info.get("finished") is not None and info.get("exit_code") is not None:
                return int(info["exit_code"])
            if clock() + poll_interval_s > deadline:
                raise TaskTimeoutError(
                    f"'{program}' in {vm} still running after {timeout_s:.0f}s", task=f"{vm}/{pid}"
                )
            sleep(poll_interval_s)


class VsphereClientPool:
    """Per-host cache of authenticated inventory clients, closed on process exit."""

    def __init__(self, cfg: AppConfig):
        self._cfg = cfg
        self._clients: Dict[str, VsphereClient] = {}
        self._lock = threading.Lock()
        atexit.register(self.close_all)

    def get(self, hostname: Optional[str] = None) -> VsphereClient:
        host = (hostname or self._cfg.vsphere.host).strip()
        if self._cfg.vsphere.allowed_hosts and host not in self._cfg.vsphere.allowed_hosts:
            raise PermissionError(f"Hostname '{host}' not in allowed set")

        with self._lock:
            client = self._clients.get(host)
            if client is None:
                host_cfg = self._cfg.vsphere.model_copy(update={"host": host}, deep=True)
                client = VsphereClient(host_cfg)
                self._clients[host] = client
                logger.info("Created inventory client for %s (pool size: %d)", host, len(self._clients))
            if not client.is_authenticated:
                client.login()
            return client

    def close_all(self) -> None:
        with self._lock:
            for host, client in list(self._clients.items()):
                try:
                    client.close()
                except requests.RequestException as e:
                    logger.warning("Error closing client for %s: %s", host, e)
            self._clients.clear()
