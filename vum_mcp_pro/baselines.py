from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .content import find_image
from .errors import ScanExhaustedError, VumNotFoundError, VumPreconditionError
from .models import Baseline, BaselineGroup, BaselineType, GroupRemoval, MoRef, as_list
from .soap import VumApiError

logger = logging.getLogger(__name__)

GROUP_MANAGER = "baseline_group_manager"
BASELINE_MANAGER = "baseline_manager"


def _lookup(session, method: str, manager: str, key: int) -> Optional[Dict[str, Any]]:
    """Fetch the record stored under ``key``; an empty slot yields None."""
    try:
        data = session.call(method, manager, id=key)
    except VumApiError as e:
        if e.is_not_found:
            return None
        raise
    if not isinstance(data, dict):
        return None
    data.setdefault("key", key)
    return data


def _scan(session, method: str, manager: str, limit: Optional[int]) -> Iterator[Dict[str, Any]]:
    for key in range(limit or session.cfg.scan_limit):
        data = _lookup(session, method, manager, key)
        if data is not None:
            yield data


def _find_or_none(finder: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return finder(*args, **kwargs)
    except VumNotFoundError:
        return None


# --- Baseline groups ---


def get_baseline_group(session, key: int) -> Optional[BaselineGroup]:
    data = _lookup(session, "GetBaselineGroupInfo", GROUP_MANAGER, key)
    return BaselineGroup.model_validate(data) if data else None


def find_baseline_group(session, name: str, limit: Optional[int] = None) -> BaselineGroup:
    """
    Locate a baseline group by exact name.

    Probes keys 0..limit-1 in order and stops at the first match, so a
    group stored under key k costs k+1 lookups.

    Raises:
        ScanExhaustedError: no group of that name below the scan limit.
    """
    limit = limit or session.cfg.scan_limit
    for data in _scan(session, "GetBaselineGroupInfo", GROUP_MANAGER, limit):
        if data.get("name") == name:
            group = BaselineGroup.model_validate(data)
            logger.debug("Found baseline group '%s' at key %d", name, group.key)
            return group
    raise ScanExhaustedError("baseline group", name, limit)


def list_baseline_groups(session, limit: Optional[int] = None) -> List[BaselineGroup]:
    return [BaselineGroup.model_validate(d) for d in _scan(session, "GetBaselineGroupInfo", GROUP_MANAGER, limit)]


def _check_single_upgrade(baselines: Sequence[Baseline], group_name: str) -> None:
    upgrades = [b.name for b in baselines if b.baseline_type == BaselineType.UPGRADE]
    if len(upgrades) > 1:
        raise VumPreconditionError(
            f"Baseline group '{group_name}' may contain at most one upgrade baseline, got: {', '.join(upgrades)}"
        )


def create_baseline_group(
    session,
    name: str,
    description: str = "",
    baseline_names: Sequence[str] = (),
    limit: Optional[int] = None,
) -> BaselineGroup:
    if _find_or_none(find_baseline_group, session, name, limit) is not None:
        raise VumPreconditionError(f"Baseline group '{name}' already exists")

    members = [find_baseline(session, b, limit) for b in baseline_names]
    _check_single_upgrade(members, name)

    key = session.call(
        "CreateBaselineGroup",
        GROUP_MANAGER,
        spec={
            "name": name,
            "description": description,
            "targetType": "HOST",
            "baseline": [b.key for b in members],
        },
    )
    logger.info("Created baseline group '%s' (key %s) with %d baseline(s)", name, key, len(members))
    return BaselineGroup(key=int(key), name=name, description=description, baselines=[b.key for b in members])


def remove_baseline_group(session, name: str, force: bool = False, limit: Optional[int] = None) -> GroupRemoval:
    """Delete a group; refuses while entities are assigned unless ``force`` is set."""
    group = find_baseline_group(session, name, limit)
    assigned = assigned_entities(session, group)

    if assigned and not force:
        logger.warning(
            "Baseline group '%s' is assigned to %d entit%s; use force to remove it anyway",
            name, len(assigned), "y" if len(assigned) == 1 else "ies",
        )
        return GroupRemoval(group=name, removed=False, assigned_entities=assigned)

    session.call("DeleteBaselineGroup", GROUP_MANAGER, key=group.key)
    logger.info("Removed baseline group '%s' (key %d)", name, group.key)
    return GroupRemoval(group=name, removed=True, assigned_entities=assigned)


def assigned_entities(session, group: BaselineGroup) -> List[MoRef]:
    result = session.call("QueryAssignedEntityForBaselineGroup", GROUP_MANAGER, group=group.key)
    return [e for e in as_list(result) if isinstance(e, MoRef)]


def attach_baseline(session, group_name: str, baseline_name: str, limit: Optional[int] = None) -> BaselineGroup:
    group = find_baseline_group(session, group_name, limit)
    baseline = find_baseline(session, baseline_name, limit)

    if baseline.key in group.baselines:
        logger.info("Baseline '%s' is already part of group '%s'", baseline_name, group_name)
        return group

    if baseline.baseline_type == BaselineType.UPGRADE:
        current = [b for b in (get_baseline(session, k) for k in group.baselines) if b is not None]
        _check_single_upgrade(current + [baseline], group_name)

    updated = group.model_copy(update={"baselines": group.baselines + [baseline.key]})
    session.call("SetBaselineGroupInfo", GROUP_MANAGER, info=updated)
    logger.info("Attached baseline '%s' to group '%s'", baseline_name, group_name)
    return updated


def detach_baseline(session, group_name: str, baseline_name: str, limit: Optional[int] = None) -> BaselineGroup:
    group = find_baseline_group(session, group_name, limit)
    baseline = find_baseline(session, baseline_name, limit)

    if baseline.key not in group.baselines:
        raise VumPreconditionError(f"Baseline '{baseline_name}' is not attached to group '{group_name}'")

    updated = group.model_copy(update={"baselines": [k for k in group.baselines if k != baseline.key]})
    session.call("SetBaselineGroupInfo", GROUP_MANAGER, info=updated)
    logger.info("Detached baseline '%s' from group '%s'", baseline_name, group_name)
    return updated


def assign_baseline_group(session, group_name: str, entity: MoRef, limit: Optional[int] = None) -> bool:
    """Assign a group to a host or cluster. Returns False when it was already assigned."""
    group = find_baseline_group(session, group_name, limit)
    if entity in assigned_entities(session, group):
        logger.info("Baseline group '%s' already assigned to %s", group_name, entity)
        return False
    session.call("AssignBaselineGroupToEntity", GROUP_MANAGER, entity=entity, group=group.key)
    logger.info("Assigned baseline group '%s' to %s", group_name, entity)
    return True


def unassign_baseline_group(session, group_name: str, entity: MoRef, limit: Optional[int] = None) -> None:
    group = find_baseline_group(session, group_name, limit)
    if entity not in assigned_entities(session, group):
        raise VumPreconditionError(f"Baseline group '{group_name}' is not assigned to {entity}")
    session.call("RemoveBaselineGroupFromEntity", GROUP_MANAGER, entity=entity, group=group.key)
    logger.info("Removed baseline group '%s' from %s", group_name, entity)


# --- Baselines ---


def get_baseline(session, key: int) -> Optional[Baseline]:
    data = _lookup(session, "GetBaselineInfo", BASELINE_MANAGER, key)
    return Baseline.model_validate(data) if data else None


def find_baseline(session, name: str, limit: Optional[int] = None) -> Baseline:
    limit = limit or session.cfg.scan_limit
    for data in _scan(session, "GetBaselineInfo", BASELINE_MANAGER, limit):
        if data.get("name") == name:
            return Baseline.model_validate(data)
    raise ScanExhaustedError("baseline", name, limit)


def list_baselines(session, limit: Optional[int] = None) -> List[Baseline]:
    return [Baseline.model_validate(d) for d in _scan(session, "GetBaselineInfo", BASELINE_MANAGER, limit)]


def _create_baseline(session, name: str, spec: Dict[str, Any], limit: Optional[int]) -> Baseline:
    if _find_or_none(find_baseline, session, name, limit) is not None:
        raise VumPreconditionError(f"Baseline '{name}' already exists")
    key = session.call("CreateBaseline", BASELINE_MANAGER, spec=spec)
    logger.info("Created %s baseline '%s' (key %s)", spec["baselineType"], name, key)
    return Baseline(key=int(key), name=name, description=spec["description"],
                    baseline_type=BaselineType(spec["baselineType"]))


def create_patch_baseline(
    session,
    name: str,
    patch_ids: Sequence[str],
    description: str = "",
    limit: Optional[int] = None,
) -> Baseline:
    if not patch_ids:
        raise VumPreconditionError(f"Patch baseline '{name}' needs at least one patch")
    spec = {
        "name": name,
        "description": description,
        "targetType": "HOST",
        "baselineType": BaselineType.PATCH.value,
        "patch": list(patch_ids),
    }
    return _create_baseline(session, name, spec, limit)


def create_upgrade_baseline(
    session,
    name: str,
    image_name: str,
    description: str = "",
    limit: Optional[int] = None,
) -> Baseline:
    image = find_image(session, image_name)
    spec = {
        "name": name,
        "description": description,
        "targetType": "HOST",
        "baselineType": BaselineType.UPGRADE.value,
        "upgradeProduct": image.key,
    }
    return _create_baseline(session, name, spec, limit)


def remove_baseline(session, name: str, limit: Optional[int] = None) -> Baseline:
    baseline = find_baseline(session, name, limit)
    session.call("DeleteBaseline", BASELINE_MANAGER, key=baseline.key)
    logger.info("Removed baseline '%s' (key %d)", name, baseline.key)
    return baseline
