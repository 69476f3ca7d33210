from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Union

from pydantic import ValidationError

from .config import VumConfig
from .errors import VumConnectionError, VumError
from .inventory import VsphereClient
from .models import MoRef, ServiceContent, TaskInfo, as_list
from .soap import VumApiError, VumSoapClient

logger = logging.getLogger(__name__)

SERVICE_INSTANCE = MoRef(type="VcIntegrity", value="Integrity.VcIntegrity")


class VumSession:
    """Authenticated Update Manager session.

    Every operation receives one of these explicitly; nothing reads a
    process-wide "current connection".
    """

    def __init__(self, client: VumSoapClient, content: ServiceContent, cfg: VumConfig):
        self.client = client
        self.content = content
        self.cfg = cfg

    @property
    def host(self) -> str:
        return self.client.host

    def manager(self, name: str) -> MoRef:
        ref = getattr(self.content, name, None)
        if ref is None:
            raise VumError(f"Update Manager on {self.host} does not expose '{name}'")
        return ref

    def call(self, method: str, this: Union[str, MoRef], **params: Any) -> Any:
        """Invoke ``method`` on a named manager (e.g. ``"baseline_group_manager"``) or an explicit reference."""
        ref = this if isinstance(this, MoRef) else self.manager(this)
        return self.client.invoke(method, ref, **params)

    def retrieve_property(self, obj: MoRef, path: str) -> Any:
        result = self.call(
            "RetrievePropertiesEx",
            "property_collector",
            specSet={"propSet": {"type": obj.type, "pathSet": path}, "objectSet": {"obj": obj}},
            options={},
        )
        if not isinstance(result, dict):
            return None
        for o in as_list(result.get("objects")):
            for prop in as_list(o.get("propSet")):
                if prop.get("name") == path:
                    return prop.get("val")
        return None

    def set_property(self, obj: MoRef, path: str, value: Any) -> None:
        self.call("SetProperty", obj, path=path, value=value)

    def task_info(self, task: MoRef) -> TaskInfo:
        data = self.retrieve_property(task, "info")
        if not data:
            raise VumApiError("RetrievePropertiesEx", f"no info returned for task {task.value}")
        return TaskInfo.model_validate(data)


def establish_session(
    inventory: VsphereClient,
    cfg: VumConfig,
    client: Optional[VumSoapClient] = None,
) -> VumSession:
    """Open a VUM session bound to an authenticated inventory connection."""
    sid = inventory.session_id
    if not sid:
        raise VumConnectionError(f"Inventory connection to {inventory.host} is not authenticated")

    client = client or VumSoapClient(inventory.config, cfg)
    try:
        content = ServiceContent.model_validate(client.invoke("RetrieveVcIntegrityContent", SERVICE_INSTANCE))
        # The Integrity service accepts the vCenter session id as both credentials.
        client.invoke("VciLogin", content.session_manager, userName=sid, password=sid, locale="en")
    except (VumApiError, ValidationError) as e:
        client.close()
        raise VumConnectionError(f"Could not open Update Manager session on {inventory.host}: {e}") from e

    logger.info("Opened Update Manager session on %s", inventory.host)
    return VumSession(client, content, cfg)


def close_session(session: VumSession) -> None:
    try:
        session.client.invoke("VciLogout", session.content.session_manager)
        logger.debug("Logged off Update Manager on %s", session.host)
    except VumError as e:
        logger.warning("Update Manager logoff failed on %s: %s", session.host, e)
    finally:
        session.client.close()


@contextmanager
def open_session(
    inventory: VsphereClient,
    cfg: VumConfig,
    client: Optional[VumSoapClient] = None,
) -> Iterator[VumSession]:
    session = establish_session(inventory, cfg, client=client)
    try:
        yield session
    finally:
        close_session(session)
