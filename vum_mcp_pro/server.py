from __future__ import annotations

import functools
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from . import baselines, content, remediation
from .audit import AuditEvent, Auditor
from .authz import Authorizer, TokenBucketLimiter
from .config import AppConfig, load_config
from .errors import VumNotFoundError
from .inventory import VsphereClient, VsphereClientPool
from .models import HostRemediationConfig, parse_staging
from .session import VumSession, open_session

logger = logging.getLogger(__name__)


def _with_guard(
    tool_name: str,
    *,
    auditor: Auditor,
    limiter: TokenBucketLimiter,
    authz: Authorizer,
    destructive: bool = False,
):
    def deco(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            token = kwargs.pop("token", None)
            role = authz.resolve_role(token)

            start = time.perf_counter()
            ok = False
            error = None
            host_used: Optional[str] = None

            try:
                if not limiter.allow(token or "anonymous"):
                    raise PermissionError("Rate limit exceeded")
                authz.check(tool_name, role)
                if destructive and not kwargs.get("confirm", False):
                    raise PermissionError("Destructive operation: set confirm=True to proceed")

                result = fn(*args, **kwargs)
                ok = True
                host_used = result.get("meta", {}).get("host")
                return result
            except Exception as e:
                error = str(e)
                raise
            finally:
                auditor.log(AuditEvent(
                    ts=time.time(), tool=tool_name, ok=ok,
                    duration_ms=(time.perf_counter() - start) * 1000.0,
                    args=kwargs, error=error, host=host_used, role=role,
                ))
        return wrapper
    return deco


def _dump(items) -> List[Dict[str, Any]]:
    return [i.model_dump(mode="json") for i in items]


def build_server(cfg: AppConfig) -> FastMCP:
    mcp = FastMCP(
        cfg.server.name,
        host=cfg.server.host,
        port=cfg.server.port,
        streamable_http_path=cfg.server.mcp_path,
    )
    auditor = Auditor(cfg.server.audit_log_path)
    authz = Authorizer(cfg.auth)
    limiter = TokenBucketLimiter(cfg.ratelimit)
    pool = VsphereClientPool(cfg)

    def tool(name: str, destructive: bool = False):
        """Register a tool wrapped with rate limiting, authorization and auditing."""
        def decorator(fn):
            wrapped = _with_guard(name, auditor=auditor, limiter=limiter, authz=authz, destructive=destructive)(fn)
            mcp.tool(name=name)(wrapped)
            return fn
        return decorator

    @contextmanager
    def vum(hostname: Optional[str]) -> Iterator[Tuple[VsphereClient, VumSession]]:
        inventory = pool.get(hostname)
        with open_session(inventory, cfg.vum) as session:
            yield inventory, session

    def meta(inventory: VsphereClient) -> Dict[str, Any]:
        return {"host": inventory.host}

    # --- Queries ---

    @tool("list_baseline_groups")
    def list_baseline_groups(hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            groups = baselines.list_baseline_groups(s)
        return {"ok": True, "meta": meta(inv), "count": len(groups), "baseline_groups": _dump(groups)}

    @tool("get_baseline_group")
    def get_baseline_group(name: Optional[str] = None, key: Optional[int] = None, hostname: Optional[str] = None,
                           token: Optional[str] = None) -> Dict[str, Any]:
        if (name is None) == (key is None):
            raise ValueError("Pass exactly one of name or key")
        with vum(hostname) as (inv, s):
            if key is not None:
                group = baselines.get_baseline_group(s, key)
                if group is None:
                    raise VumNotFoundError("baseline group", f"key {key}")
            else:
                group = baselines.find_baseline_group(s, name)
            members = [b for b in (baselines.get_baseline(s, k) for k in group.baselines) if b is not None]
        return {"ok": True, "meta": meta(inv), "baseline_group": group.model_dump(mode="json"),
                "baselines": _dump(members)}

    @tool("list_baselines")
    def list_baselines(hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            items = baselines.list_baselines(s)
        return {"ok": True, "meta": meta(inv), "count": len(items), "baselines": _dump(items)}

    @tool("list_images")
    def list_images(hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            images = content.list_images(s)
        return {"ok": True, "meta": meta(inv), "count": len(images), "images": _dump(images)}

    @tool("get_compliance")
    def get_compliance(group_name: str, entity_names: List[str], entity_type: str = "host",
                       hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        with vum(hostname) as (inv, s):
            group = baselines.find_baseline_group(s, group_name)
            for name in entity_names:
                entity = inv.find_entity(name, entity_type)
                remediation.scan_entity(s, entity.ref)
                results[name] = _dump(remediation.query_compliance(s, entity.ref, group))
        return {"ok": True, "meta": meta(inv), "baseline_group": group_name, "compliance": results}

    @tool("get_remediation_defaults")
    def get_remediation_defaults(hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            config = remediation.default_remediation_config(s)
        return {"ok": True, "meta": meta(inv), "config": config.model_dump(mode="json")}

    # --- Assignment, remediation and import ---

    @tool("assign_baseline_group")
    def assign_baseline_group(group_name: str, entity_names: List[str], entity_type: str = "host",
                              hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        changed: Dict[str, bool] = {}
        with vum(hostname) as (inv, s):
            for name in entity_names:
                entity = inv.find_entity(name, entity_type)
                changed[name] = baselines.assign_baseline_group(s, group_name, entity.ref)
        return {"ok": True, "meta": meta(inv), "assigned": changed}

    @tool("unassign_baseline_group")
    def unassign_baseline_group(group_name: str, entity_names: List[str], entity_type: str = "host",
                                hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            for name in entity_names:
                entity = inv.find_entity(name, entity_type)
                baselines.unassign_baseline_group(s, group_name, entity.ref)
        return {"ok": True, "meta": meta(inv), "unassigned": entity_names}

    @tool("remediate_entities", destructive=True)
    def remediate_entities(group_name: str, entity_names: List[str], entity_type: str = "host",
                           config: Optional[Dict[str, Any]] = None, confirm: bool = False,
                           hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        remediation_config = HostRemediationConfig.model_validate(config) if config else None
        with vum(hostname) as (inv, s):
            entities = [inv.find_entity(name, entity_type) for name in entity_names]
            outcomes = remediation.remediate_many(s, inv, entities, group_name, remediation_config)
        return {"ok": True, "meta": meta(inv), "results": _dump(outcomes)}

    @tool("import_content")
    def import_content(staging: Dict[str, Any], hostname: Optional[str] = None,
                       token: Optional[str] = None) -> Dict[str, Any]:
        variant = parse_staging(staging)
        with vum(hostname) as (inv, s):
            info = content.import_content(s, inv, variant)
        return {"ok": True, "meta": meta(inv), "task": info.model_dump(mode="json")}

    # --- Administration ---

    @tool("create_baseline_group")
    def create_baseline_group(name: str, description: str = "", baseline_names: Optional[List[str]] = None,
                              hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            group = baselines.create_baseline_group(s, name, description, baseline_names or [])
        return {"ok": True, "meta": meta(inv), "baseline_group": group.model_dump(mode="json")}

    @tool("remove_baseline_group", destructive=True)
    def remove_baseline_group(name: str, force: bool = False, confirm: bool = False,
                              hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            removal = baselines.remove_baseline_group(s, name, force=force)
        return {"ok": True, "meta": meta(inv), "result": removal.model_dump(mode="json")}

    @tool("attach_baseline")
    def attach_baseline(group_name: str, baseline_name: str, hostname: Optional[str] = None,
                        token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            group = baselines.attach_baseline(s, group_name, baseline_name)
        return {"ok": True, "meta": meta(inv), "baseline_group": group.model_dump(mode="json")}

    @tool("detach_baseline")
    def detach_baseline(group_name: str, baseline_name: str, hostname: Optional[str] = None,
                        token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            group = baselines.detach_baseline(s, group_name, baseline_name)
        return {"ok": True, "meta": meta(inv), "baseline_group": group.model_dump(mode="json")}

    @tool("create_patch_baseline")
    def create_patch_baseline(name: str, patch_ids: List[str], description: str = "",
                              hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            baseline = baselines.create_patch_baseline(s, name, patch_ids, description)
        return {"ok": True, "meta": meta(inv), "baseline": baseline.model_dump(mode="json")}

    @tool("create_upgrade_baseline")
    def create_upgrade_baseline(name: str, image_name: str, description: str = "",
                                hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            baseline = baselines.create_upgrade_baseline(s, name, image_name, description)
        return {"ok": True, "meta": meta(inv), "baseline": baseline.model_dump(mode="json")}

    @tool("remove_baseline", destructive=True)
    def remove_baseline(name: str, confirm: bool = False, hostname: Optional[str] = None,
                        token: Optional[str] = None) -> Dict[str, Any]:
        with vum(hostname) as (inv, s):
            baseline = baselines.remove_baseline(s, name)
        return {"ok": True, "meta": meta(inv), "baseline": baseline.model_dump(mode="json")}

    @tool("set_remediation_defaults", destructive=True)
    def set_remediation_defaults(config: Dict[str, Any], confirm: bool = False,
                                 hostname: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        new_config = HostRemediationConfig.model_validate(config)
        with vum(hostname) as (inv, s):
            remediation.set_default_remediation_config(s, new_config)
        return {"ok": True, "meta": meta(inv), "config": new_config.model_dump(mode="json")}

    return mcp


def main() -> None:
    load_dotenv()
    cfg = load_config()
    logging.basicConfig(
        level=cfg.server.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    mcp = build_server(cfg)
    mcp.run(transport="streamable-http")


if __name__ == "__main__":
    main()
