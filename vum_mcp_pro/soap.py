from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

import lxml.etree as etree  # nosec B410 - parser below disables entities and network access
import requests
from pydantic import BaseModel
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import VsphereConfig, VumConfig
from .errors import VumError
from .models import MoRef

logger = logging.getLogger(__name__)

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"
XSI = "http://www.w3.org/2001/XMLSchema-instance"

_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    remove_comments=True,
    remove_pis=True,
)


class VumApiError(VumError):
    """A remote Integrity call failed; carries the service's fault text verbatim."""

    def __init__(
        self,
        method: str,
        message: str,
        fault_code: Optional[str] = None,
        fault_type: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.method = method
        self.fault_message = message
        self.fault_code = fault_code
        self.fault_type = fault_type
        self.status_code = status_code

        detail = f"{method} failed"
        if fault_type:
            detail += f" [{fault_type}]"
        super().__init__(f"{detail}: {message}")

    @property
    def is_not_found(self) -> bool:
        return bool(self.fault_type and "NotFound" in self.fault_type)


# --- Envelope serialization ---


def _append(parent: etree._Element, ns: str, name: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append(parent, ns, name, item)
        return

    el = etree.SubElement(parent, f"{{{ns}}}{name}")
    if isinstance(value, MoRef):
        el.set("type", value.type)
        el.text = value.value
    elif isinstance(value, BaseModel):
        for field_name, field in type(value).model_fields.items():
            _append(el, ns, field.alias or field_name, getattr(value, field_name))
    elif isinstance(value, dict):
        for k, v in value.items():
            _append(el, ns, k, v)
    elif isinstance(value, bool):
        el.text = "true" if value else "false"
    elif isinstance(value, Enum):
        el.text = str(value.value)
    else:
        el.text = str(value)


def build_envelope(namespace: str, method: str, this: MoRef, params: Dict[str, Any]) -> bytes:
    env = etree.Element(f"{{{SOAP_ENV}}}Envelope", nsmap={"soapenv": SOAP_ENV, "xsi": XSI})
    body = etree.SubElement(env, f"{{{SOAP_ENV}}}Body")
    call = etree.SubElement(body, f"{{{namespace}}}{method}", nsmap={None: namespace})
    _append(call, namespace, "_this", this)
    for k, v in params.items():
        _append(call, namespace, k, v)
    return etree.tostring(env, xml_declaration=True, encoding="UTF-8")


# --- Response deserialization ---


def _local(tag: str) -> str:
    return etree.QName(tag).localname


def _children(el: etree._Element):
    return [c for c in el if isinstance(c.tag, str)]


def deserialize(el: etree._Element) -> Any:
    """Turn a response element into MoRef / str / dict, collapsing repeated tags into lists."""
    children = _children(el)
    if not children:
        text = el.text or ""
        if el.get("type") is not None:
            return MoRef(type=el.get("type"), value=text)
        return text

    out: Dict[str, Any] = {}
    repeated = set()
    for c in children:
        name = _local(c.tag)
        val = deserialize(c)
        if name not in out:
            out[name] = val
        elif name in repeated:
            out[name].append(val)
        else:
            out[name] = [out[name], val]
            repeated.add(name)
    return out


def _fault_error(method: str, fault: etree._Element) -> VumApiError:
    code = fault.findtext("faultcode") or None
    message = (fault.findtext("faultstring") or "").strip() or "unknown fault"
    fault_type = None
    detail = fault.find("detail")
    if detail is not None:
        first = next(iter(_children(detail)), None)
        if first is not None:
            xsi_type = first.get(f"{{{XSI}}}type")
            fault_type = (xsi_type.split(":")[-1] if xsi_type else _local(first.tag))
    return VumApiError(method, message, fault_code=code, fault_type=fault_type)


def parse_response(method: str, content: bytes) -> Any:
    root = etree.fromstring(content, _PARSER)
    body = root.find(f"{{{SOAP_ENV}}}Body")
    if body is None:
        raise VumApiError(method, "response has no SOAP body")

    fault = body.find(f"{{{SOAP_ENV}}}Fault")
    if fault is not None:
        raise _fault_error(method, fault)

    resp = next(iter(_children(body)), None)
    if resp is None:
        return None
    values = [deserialize(c) for c in _children(resp) if _local(c.tag) == "returnval"]
    if not values:
        return None
    return values[0] if len(values) == 1 else values


def connect_only_retry(cfg: VsphereConfig) -> Retry:
    """Retry only failures to reach the server; a request it may have received is never resent."""
    return Retry(
        total=cfg.request_retries,
        connect=cfg.request_retries,
        read=0,
        status=0,
        other=0,
        backoff_factor=cfg.backoff_factor,
        respect_retry_after_header=False,
        raise_on_status=False,
    )


class VumSoapClient:
    """Blocking SOAP client for the vCenter Integrity endpoint."""

    def __init__(self, vsphere_cfg: VsphereConfig, vum_cfg: VumConfig):
        self._session = requests.Session()
        self._session.mount("https://", HTTPAdapter(max_retries=connect_only_retry(vsphere_cfg)))
        self._session.verify = vsphere_cfg.ca_bundle or vsphere_cfg.verify_ssl
        self._timeout = vsphere_cfg.default_timeout_s
        self._host = vsphere_cfg.host
        self._url = f"https://{vsphere_cfg.host}{vum_cfg.sdk_path}"
        self._ns = vum_cfg.namespace

    @property
    def host(self) -> str:
        return self._host

    def invoke(self, method: str, this: MoRef, **params: Any) -> Any:
        payload = build_envelope(self._ns, method, this, params)
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": f'"{self._ns}"'}
        try:
            r = self._session.post(self._url, data=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as e:
            raise VumApiError(method, str(e)) from e
        logger.debug("%s on %s -> HTTP %d", method, this, r.status_code)

        try:
            result = parse_response(method, r.content)
        except etree.XMLSyntaxError:
            raise VumApiError(method, f"HTTP {r.status_code}: {r.text[:200]}", status_code=r.status_code)
        if not r.ok:
            raise VumApiError(method, f"HTTP {r.status_code}", status_code=r.status_code)
        return result

    def close(self) -> None:
        self._session.close()
