from __future__ import annotations

import posixpath
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


def as_list(v: Any) -> List[Any]:
    """Normalize a deserialized SOAP value that may hold zero, one or many items."""
    if v is None or v == "":
        return []
    if isinstance(v, list):
        return v
    return [v]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class MoRef(BaseModel):
    """Managed object reference: the (type, value) pair the Integrity API addresses objects by."""

    model_config = ConfigDict(frozen=True)

    type: str
    value: str

    @classmethod
    def from_inventory_id(cls, inventory_id: str) -> "MoRef":
        # "HostSystem-host-12" -> ("HostSystem", "host-12")
        kind, sep, value = inventory_id.partition("-")
        if not sep or not kind or not value:
            raise ValueError(f"Malformed inventory identifier '{inventory_id}'")
        return cls(type=kind, value=value)

    def __str__(self) -> str:
        return f"{self.type}-{self.value}"


HOST_KIND = "HostSystem"
CLUSTER_KIND = "ClusterComputeResource"


class InventoryObject(BaseModel):
    kind: Literal["HostSystem", "ClusterComputeResource"]
    moid: str
    name: str

    @property
    def inventory_id(self) -> str:
        return f"{self.kind}-{self.moid}"

    @property
    def ref(self) -> MoRef:
        return MoRef.from_inventory_id(self.inventory_id)

    @property
    def is_cluster(self) -> bool:
        return self.kind == CLUSTER_KIND


class ServiceContent(WireModel):
    session_manager: MoRef
    baseline_manager: Optional[MoRef] = None
    baseline_group_manager: Optional[MoRef] = None
    compliance_status_manager: Optional[MoRef] = None
    remediation_manager: Optional[MoRef] = None
    config_manager: Optional[MoRef] = None
    file_upload_manager: Optional[MoRef] = None
    upgrade_product_manager: Optional[MoRef] = None
    property_collector: Optional[MoRef] = None


# --- Baselines ---


class BaselineType(str, Enum):
    PATCH = "Patch"
    UPGRADE = "Upgrade"


class Baseline(WireModel):
    key: int
    name: str
    description: str = ""
    baseline_type: BaselineType = BaselineType.PATCH
    target_type: str = "HOST"


class BaselineGroup(WireModel):
    key: int
    name: str
    description: str = ""
    version: int = Field(default=0, alias="versionNumber")
    baselines: List[int] = Field(default_factory=list, alias="baseline")
    target_type: str = "HOST"

    @field_validator("baselines", mode="before")
    @classmethod
    def coerce_baselines(cls, v):
        return as_list(v)


class Image(WireModel):
    key: str
    name: str
    version: Optional[str] = None
    vendor: Optional[str] = None
    description: Optional[str] = None


class GroupRemoval(BaseModel):
    group: str
    removed: bool
    assigned_entities: List[MoRef] = Field(default_factory=list)


# --- Tasks ---


class TaskState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class TaskInfo(WireModel):
    key: str
    state: TaskState
    progress: Optional[int] = None
    description_id: Optional[str] = None
    error: Optional[Any] = None

    @field_validator("state", mode="before")
    @classmethod
    def lower_state(cls, v):
        return v.lower() if isinstance(v, str) else v

    @property
    def done(self) -> bool:
        return self.state in (TaskState.SUCCESS, TaskState.ERROR)

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            return str(self.error.get("localizedMessage") or self.error.get("fault") or self.error)
        return str(self.error) if self.error else "unknown error"


# --- Compliance ---


class ComplianceStatus(str, Enum):
    COMPLIANT = "Compliant"
    NOT_COMPLIANT = "NotCompliant"
    INCOMPATIBLE = "Incompatible"
    UNKNOWN = "Unknown"


class ComplianceResult(WireModel):
    entity: Optional[MoRef] = None
    baseline_group: Optional[int] = None
    status: ComplianceStatus = ComplianceStatus.UNKNOWN

    @field_validator("status", mode="before")
    @classmethod
    def unknown_status(cls, v):
        known = {s.value for s in ComplianceStatus}
        return v if v in known else ComplianceStatus.UNKNOWN.value


# --- Remediation ---


class FailureAction(str, Enum):
    FAIL_TASK = "FailTask"
    RETRY = "Retry"


class VmPowerAction(str, Enum):
    POWER_OFF = "PowerOffVMs"
    SUSPEND = "SuspendVMs"
    DO_NOT_CHANGE = "DoNotChangeVMsPowerState"


class ClusterRemediationOptions(WireModel):
    disable_dpm: bool = True
    disable_ha_admission_control: bool = False
    disable_ft: bool = False
    enable_parallel_remediate: bool = False
    max_concurrent_hosts: int = Field(default=0, ge=0)  # 0 lets the server decide


class HostRemediationConfig(WireModel):
    failure_action: FailureAction = FailureAction.RETRY
    retry_delay_seconds: int = Field(default=300, ge=0)
    retry_count: int = Field(default=3, ge=0)
    vm_power_action: VmPowerAction = VmPowerAction.DO_NOT_CHANGE
    pxe_booted_host_patching: bool = False
    cluster: ClusterRemediationOptions = Field(default_factory=ClusterRemediationOptions)


class UpgradeOptions(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ignore_third_party_modules: bool = True


class RemediationSpec(WireModel):
    config: HostRemediationConfig
    upgrade_options: UpgradeOptions = Field(default_factory=UpgradeOptions)
    baseline_group: int


class ResolvedEntity(BaseModel):
    leaves: List[MoRef]
    parent: Optional[MoRef] = None
    target: MoRef


class RemediationOutcome(BaseModel):
    entity: str
    baseline_group: str
    status: Literal["compliant", "remediated"]
    task: Optional[TaskInfo] = None


# --- Content staging ---


class WindowsShareStaging(BaseModel):
    """Copy through a share mapped from a Windows-hosted Update Manager server."""

    kind: Literal["windows_share"] = "windows_share"
    local_path: str
    share_path: str
    server_path: str

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.local_path.replace("\\", "/"))


class ApplianceCopyStaging(BaseModel):
    """Upload a local file into the appliance through guest file transfer."""

    kind: Literal["appliance_copy"] = "appliance_copy"
    vm_name: str
    guest_user: str
    guest_password: str
    local_path: str

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.local_path.replace("\\", "/"))


class ApplianceDownloadStaging(BaseModel):
    """Have the appliance download the file itself."""

    kind: Literal["appliance_download"] = "appliance_download"
    vm_name: str
    guest_user: str
    guest_password: str
    url: str
    file_name_override: Optional[str] = Field(default=None, alias="file_name")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def file_name(self) -> str:
        if self.file_name_override:
            return self.file_name_override
        return posixpath.basename(self.url.split("?", 1)[0].rstrip("/"))


ContentStaging = Annotated[
    Union[WindowsShareStaging, ApplianceCopyStaging, ApplianceDownloadStaging],
    Field(discriminator="kind"),
]

_staging_adapter: TypeAdapter = TypeAdapter(ContentStaging)


def parse_staging(data: Any) -> ContentStaging:
    return _staging_adapter.validate_python(data)
