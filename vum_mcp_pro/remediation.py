"""
Compliance checking and remediation of hosts and clusters against a baseline group.

Sequence for one entity: locate group -> resolve entity -> scan and query
compliance (stop if compliant) -> build spec -> submit -> poll.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Optional

from .baselines import find_baseline_group
from .errors import VumPreconditionError, VumTaskError
from .models import (
    BaselineGroup,
    ComplianceResult,
    ComplianceStatus,
    HostRemediationConfig,
    InventoryObject,
    MoRef,
    RemediationOutcome,
    RemediationSpec,
    ResolvedEntity,
    TaskInfo,
    UpgradeOptions,
    as_list,
)
from .soap import VumApiError
from .tasks import ProgressCallback, wait_for_task

logger = logging.getLogger(__name__)

COMPLIANCE_MANAGER = "compliance_status_manager"
REMEDIATION_MANAGER = "remediation_manager"
CONFIG_MANAGER = "config_manager"
DEFAULTS_PROPERTY = "hostRemediationConfig"


def resolve_entity(inventory, entity: InventoryObject) -> ResolvedEntity:
    """
    Map a host or cluster to the references the remediation call expects.

    A host remediates itself under its owning cluster; a cluster
    remediates all of its member hosts and is its own parent.
    """
    if entity.is_cluster:
        hosts = inventory.list_cluster_hosts(entity.moid)
        return ResolvedEntity(leaves=[h.ref for h in hosts], parent=entity.ref, target=entity.ref)

    cluster = inventory.find_host_cluster(entity.moid)
    return ResolvedEntity(
        leaves=[entity.ref],
        parent=cluster.ref if cluster is not None else None,
        target=entity.ref,
    )


def _expect_task(method: str, result) -> MoRef:
    if not isinstance(result, MoRef):
        raise VumApiError(method, f"expected a task reference, got {result!r}")
    return result


def scan_entity(
    session,
    target: MoRef,
    *,
    cancel: Optional[threading.Event] = None,
) -> TaskInfo:
    task = _expect_task("ScanForUpdates_Task", session.call("ScanForUpdates_Task", COMPLIANCE_MANAGER, entity=target))
    logger.info("Scanning %s for updates (task %s)", target, task.value)
    return wait_for_task(session, task, cancel=cancel)


def query_compliance(session, target: MoRef, group: BaselineGroup) -> List[ComplianceResult]:
    result = session.call(
        "QueryComplianceStatus",
        COMPLIANCE_MANAGER,
        entity=target,
        query={"baselineGroup": group.key},
    )
    return [ComplianceResult.model_validate(r) for r in as_list(result) if isinstance(r, dict)]


def check_compliance(
    session,
    target: MoRef,
    group: BaselineGroup,
    *,
    cancel: Optional[threading.Event] = None,
) -> bool:
    scan_entity(session, target, cancel=cancel)
    results = query_compliance(session, target, group)
    compliant = bool(results) and all(r.status == ComplianceStatus.COMPLIANT for r in results)
    logger.info(
        "%s vs baseline group '%s': %s",
        target, group.name, ", ".join(r.status.value for r in results) or "no status",
    )
    return compliant


def default_remediation_config(session) -> HostRemediationConfig:
    data = session.retrieve_property(session.manager(CONFIG_MANAGER), DEFAULTS_PROPERTY)
    if not isinstance(data, dict):
        raise VumApiError("RetrievePropertiesEx", f"no '{DEFAULTS_PROPERTY}' returned by {session.host}")
    return HostRemediationConfig.model_validate(data)


def set_default_remediation_config(session, config: HostRemediationConfig) -> None:
    session.set_property(session.manager(CONFIG_MANAGER), DEFAULTS_PROPERTY, config)
    logger.info("Updated default remediation settings on %s", session.host)


def build_remediation_spec(
    session,
    group: BaselineGroup,
    config: Optional[HostRemediationConfig] = None,
) -> RemediationSpec:
    if config is None:
        config = default_remediation_config(session)
    return RemediationSpec(config=config, upgrade_options=UpgradeOptions(), baseline_group=group.key)


def submit_remediation(session, resolved: ResolvedEntity, spec: RemediationSpec) -> MoRef:
    result = session.call(
        "Remediate_Task",
        REMEDIATION_MANAGER,
        entity=resolved.leaves,
        parent=resolved.parent,
        spec=spec,
    )
    return _expect_task("Remediate_Task", result)


def remediate(
    session,
    inventory,
    entity: InventoryObject,
    group_name: str,
    config: Optional[HostRemediationConfig] = None,
    *,
    limit: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> RemediationOutcome:
    group = find_baseline_group(session, group_name, limit)
    resolved = resolve_entity(inventory, entity)

    if check_compliance(session, resolved.target, group, cancel=cancel):
        logger.info("%s is already compliant with '%s'; nothing to remediate", entity.name, group_name)
        return RemediationOutcome(entity=entity.name, baseline_group=group_name, status="compliant")

    if not resolved.leaves:
        raise VumPreconditionError(f"Cluster '{entity.name}' has no hosts to remediate")

    spec = build_remediation_spec(session, group, config)
    task = submit_remediation(session, resolved, spec)
    logger.info(
        "Remediating %s (%d host(s)) against '%s' (task %s)",
        entity.name, len(resolved.leaves), group_name, task.value,
    )
    try:
        info = wait_for_task(session, task, cancel=cancel, on_progress=on_progress)
    except VumTaskError as e:
        raise type(e)(f"Remediation of {entity.name} against '{group_name}' failed: {e}", task=e.task) from e

    return RemediationOutcome(entity=entity.name, baseline_group=group_name, status="remediated", task=info)


def remediate_many(
    session,
    inventory,
    entities: Iterable[InventoryObject],
    group_name: str,
    config: Optional[HostRemediationConfig] = None,
    **kwargs,
) -> List[RemediationOutcome]:
    """Remediate entities one after another; the first failure stops the run."""
    return [remediate(session, inventory, e, group_name, config, **kwargs) for e in entities]
