from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import shlex
import shutil
import threading
from typing import List, Optional

from .config import VumConfig
from .errors import VumError, VumNotFoundError, VumPreconditionError
from .inventory import VsphereClient
from .models import (
    ApplianceCopyStaging,
    ApplianceDownloadStaging,
    ContentStaging,
    Image,
    MoRef,
    TaskInfo,
    WindowsShareStaging,
    as_list,
)
from .soap import VumApiError
from .tasks import ProgressCallback, wait_for_task

logger = logging.getLogger(__name__)

IMAGE_MANAGER = "upgrade_product_manager"
UPLOAD_MANAGER = "file_upload_manager"

CONTENT_TYPES = {
    ".iso": "HostUpgradeImage",
    ".zip": "OfflinePatchBundle",
}


def list_images(session) -> List[Image]:
    result = session.call("QueryUpgradeProducts", IMAGE_MANAGER)
    return [Image.model_validate(i) for i in as_list(result) if isinstance(i, dict)]


def find_image(session, name: str) -> Image:
    for image in list_images(session):
        if image.name == name:
            return image
    raise VumNotFoundError("image", name)


def content_type_for(file_name: str) -> str:
    ext = os.path.splitext(file_name)[1].lower()
    if ext not in CONTENT_TYPES:
        raise VumPreconditionError(
            f"Cannot import '{file_name}': expected one of {', '.join(sorted(CONTENT_TYPES))}"
        )
    return CONTENT_TYPES[ext]


def _require_local_file(path: str) -> None:
    if not os.path.isfile(path):
        raise VumPreconditionError(f"Local file '{path}' does not exist")


def _stage_windows_share(staging: WindowsShareStaging) -> str:
    _require_local_file(staging.local_path)
    target = os.path.join(staging.share_path, staging.file_name)
    logger.info("Copying %s to %s", staging.local_path, target)
    shutil.copyfile(staging.local_path, target)
    return ntpath.join(staging.server_path, staging.file_name)


def _stage_appliance_copy(inventory: VsphereClient, staging: ApplianceCopyStaging, cfg: VumConfig) -> str:
    _require_local_file(staging.local_path)
    guest_path = posixpath.join(cfg.appliance_stage_dir, staging.file_name)
    vm = inventory.find_vm(staging.vm_name)
    _run_in_appliance(inventory, vm, staging, cfg, "/bin/mkdir", f"-p {shlex.quote(cfg.appliance_stage_dir)}")
    inventory.upload_guest_file(vm, staging.guest_user, staging.guest_password, staging.local_path, guest_path)
    return guest_path


def _stage_appliance_download(inventory: VsphereClient, staging: ApplianceDownloadStaging, cfg: VumConfig) -> str:
    guest_path = posixpath.join(cfg.appliance_stage_dir, staging.file_name)
    vm = inventory.find_vm(staging.vm_name)
    _run_in_appliance(inventory, vm, staging, cfg, "/bin/mkdir", f"-p {shlex.quote(cfg.appliance_stage_dir)}")
    logger.info("Downloading %s into %s:%s", staging.url, staging.vm_name, guest_path)
    _run_in_appliance(
        inventory, vm, staging, cfg,
        "/usr/bin/curl", f"-k -f -s -o {shlex.quote(guest_path)} {shlex.quote(staging.url)}",
    )
    return guest_path


def _run_in_appliance(inventory: VsphereClient, vm: str, staging, cfg: VumConfig, program: str, arguments: str) -> None:
    code = inventory.run_guest_command(
        vm, staging.guest_user, staging.guest_password, program, arguments,
        poll_interval_s=cfg.guest_poll_interval_s,
        timeout_s=cfg.guest_timeout_s,
    )
    if code != 0:
        raise VumError(f"'{program} {arguments}' in {staging.vm_name} exited with code {code}")


def stage_content(inventory: VsphereClient, staging: ContentStaging, cfg: VumConfig) -> str:
    """Place the file where Update Manager can read it; returns the server-side path."""
    if isinstance(staging, WindowsShareStaging):
        return _stage_windows_share(staging)
    if isinstance(staging, ApplianceCopyStaging):
        return _stage_appliance_copy(inventory, staging, cfg)
    if isinstance(staging, ApplianceDownloadStaging):
        return _stage_appliance_download(inventory, staging, cfg)
    raise TypeError(f"Unsupported staging variant {type(staging).__name__}")


def import_content(
    session,
    inventory: VsphereClient,
    staging: ContentStaging,
    *,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> TaskInfo:
    content_type = content_type_for(staging.file_name)
    server_path = stage_content(inventory, staging, session.cfg)

    task = session.call("UploadFile_Task", UPLOAD_MANAGER, fileName=server_path, contentType=content_type)
    if not isinstance(task, MoRef):
        raise VumApiError("UploadFile_Task", f"expected a task reference, got {task!r}")
    logger.info("Importing %s as %s (task %s)", server_path, content_type, task.value)
    return wait_for_task(session, task, cancel=cancel, on_progress=on_progress)
