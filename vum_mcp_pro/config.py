from __future__ import annotations

import json
import os
from typing import Dict, Optional, Set

from pydantic import BaseModel, Field, field_validator


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class AuthConfig(BaseModel):
    tokens_to_roles: Dict[str, str] = Field(default_factory=dict)
    roles_to_tools: Dict[str, Set[str]] = Field(default_factory=dict)
    enforce: bool = True

    @field_validator("roles_to_tools", mode="before")
    @classmethod
    def coerce_sets(cls, v):
        return {k: set(vv) for k, vv in (v or {}).items()}


class RateLimitConfig(BaseModel):
    enabled: bool = True
    rate_per_sec: float = 5.0
    burst: int = 10


class VsphereConfig(BaseModel):
    """Inventory connection: the vCenter REST endpoint the VUM session is bound to."""

    host: str
    user: str
    password: str
    api_mode: str = Field(default="api")  # "api" | "rest"
    verify_ssl: bool = True
    ca_bundle: Optional[str] = None
    default_timeout_s: float = 20.0
    request_retries: int = 3
    backoff_factor: float = 0.5
    allowed_hosts: Set[str] = Field(default_factory=set)


class VumConfig(BaseModel):
    """Update Manager SOAP endpoint and orchestration tuning."""

    sdk_path: str = "/vci/sdk"
    namespace: str = "urn:integrity"
    # The Integrity API has no enumeration call; baselines and groups are
    # located by probing keys 0..scan_limit-1.
    scan_limit: int = Field(default=768, ge=1)
    task_warmup_s: float = Field(default=5.0, ge=0)
    task_poll_interval_s: float = Field(default=10.0, ge=0)
    task_timeout_s: float = Field(default=14400.0, gt=0)
    guest_poll_interval_s: float = Field(default=2.0, ge=0)
    guest_timeout_s: float = Field(default=1800.0, gt=0)
    appliance_stage_dir: str = "/storage/updatemgr/import"


class ServerConfig(BaseModel):
    name: str = "vum-mcp-pro"
    host: str = "0.0.0.0"
    port: int = 8000
    mcp_path: str = "/mcp"
    audit_log_path: Optional[str] = None
    log_level: str = "INFO"


class AppConfig(BaseModel):
    vsphere: VsphereConfig
    vum: VumConfig
    auth: AuthConfig
    ratelimit: RateLimitConfig
    server: ServerConfig


_READ_TOOLS = {
    "list_baseline_groups", "get_baseline_group", "list_baselines",
    "list_images", "get_compliance", "get_remediation_defaults",
}
_OPS_TOOLS = _READ_TOOLS | {
    "assign_baseline_group", "unassign_baseline_group",
    "remediate_entities", "import_content",
}
_ADMIN_TOOLS = _OPS_TOOLS | {
    "create_baseline_group", "remove_baseline_group",
    "attach_baseline", "detach_baseline",
    "create_patch_baseline", "create_upgrade_baseline", "remove_baseline",
    "set_remediation_defaults",
}

DEFAULT_ROLES_TO_TOOLS = {"read": _READ_TOOLS, "ops": _OPS_TOOLS, "admin": _ADMIN_TOOLS}


def _env_json(name: str):
    v = os.getenv(name)
    if not v:
        return None
    return json.loads(v)


def load_config() -> AppConfig:
    allowed_hosts = set()
    if os.getenv("ALLOWED_VCENTER_HOSTS"):
        allowed_hosts = {h.strip() for h in os.getenv("ALLOWED_VCENTER_HOSTS", "").split(",") if h.strip()}

    roles_to_tools = _env_json("ROLES_TO_TOOLS") or DEFAULT_ROLES_TO_TOOLS
    tokens_to_roles = _env_json("TOKENS_TO_ROLES") or {}

    cfg = AppConfig(
        vsphere=VsphereConfig(
            host=os.getenv("VCENTER_HOST", "").strip() or "CHANGE_ME",
            user=os.getenv("VCENTER_USER", ""),
            password=os.getenv("VCENTER_PASSWORD", ""),
            api_mode=os.getenv("VSPHERE_API_MODE", "api").lower(),
            verify_ssl=not _env_bool("INSECURE", "false"),
            ca_bundle=os.getenv("VCENTER_CA_BUNDLE"),
            default_timeout_s=float(os.getenv("VCENTER_TIMEOUT_S", "20")),
            request_retries=int(os.getenv("VCENTER_RETRIES", "3")),
            backoff_factor=float(os.getenv("VCENTER_BACKOFF", "0.5")),
            allowed_hosts=allowed_hosts or {os.getenv("VCENTER_HOST", "").strip()} - {""},
        ),
        vum=VumConfig(
            sdk_path=os.getenv("VUM_SDK_PATH", "/vci/sdk"),
            namespace=os.getenv("VUM_NAMESPACE", "urn:integrity"),
            scan_limit=int(os.getenv("VUM_SCAN_LIMIT", "768")),
            task_warmup_s=float(os.getenv("VUM_TASK_WARMUP_S", "5")),
            task_poll_interval_s=float(os.getenv("VUM_TASK_POLL_S", "10")),
            task_timeout_s=float(os.getenv("VUM_TASK_TIMEOUT_S", "14400")),
            guest_poll_interval_s=float(os.getenv("VUM_GUEST_POLL_S", "2")),
            guest_timeout_s=float(os.getenv("VUM_GUEST_TIMEOUT_S", "1800")),
            appliance_stage_dir=os.getenv("VUM_APPLIANCE_STAGE_DIR", "/storage/updatemgr/import"),
        ),
        auth=AuthConfig(
            tokens_to_roles=tokens_to_roles,
            roles_to_tools=roles_to_tools,
            enforce=_env_bool("AUTH_ENFORCE", "true"),
        ),
        ratelimit=RateLimitConfig(
            enabled=_env_bool("RATE_LIMIT", "true"),
            rate_per_sec=float(os.getenv("RATE_LIMIT_RPS", "5")),
            burst=int(os.getenv("RATE_LIMIT_BURST", "10")),
        ),
        server=ServerConfig(
            name=os.getenv("SERVER_NAME", "vum-mcp-pro"),
            host=os.getenv("SERVER_HOST", "0.0.0.0"),
            port=int(os.getenv("SERVER_PORT", "8000")),
            mcp_path=os.getenv("MCP_PATH", "/mcp"),
            audit_log_path=os.getenv("AUDIT_LOG_PATH"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        ),
    )
    if cfg.vsphere.host == "CHANGE_ME":
        raise RuntimeError("Set VCENTER_HOST/VCENTER_USER/VCENTER_PASSWORD")
    return cfg
