import pytest

from conftest import FakeInventory
from vum_mcp_pro import content
from vum_mcp_pro.config import VumConfig
from vum_mcp_pro.errors import VumError, VumNotFoundError, VumPreconditionError
from vum_mcp_pro.models import ApplianceCopyStaging, ApplianceDownloadStaging, WindowsShareStaging

CREDS = {"vm_name": "vcsa", "guest_user": "root", "guest_password": "secret"}


def test_windows_share_staging_copies_into_share(tmp_path):
    src = tmp_path / "patch-bundle.zip"
    src.write_bytes(b"PK\x03\x04")
    share = tmp_path / "share"
    share.mkdir()
    staging = WindowsShareStaging(local_path=str(src), share_path=str(share), server_path="C:\\VUM\\import")

    server_path = content.stage_content(FakeInventory(), staging, VumConfig())

    assert server_path == "C:\\VUM\\import\\patch-bundle.zip"
    assert (share / "patch-bundle.zip").read_bytes() == b"PK\x03\x04"


def test_missing_local_file_is_refused(tmp_path):
    staging = WindowsShareStaging(local_path=str(tmp_path / "nope.zip"), share_path=str(tmp_path),
                                  server_path="C:\\import")

    with pytest.raises(VumPreconditionError, match="does not exist"):
        content.stage_content(FakeInventory(), staging, VumConfig())


def test_appliance_copy_uploads_into_stage_dir(tmp_path):
    src = tmp_path / "VMware-ESXi-8.0U3.iso"
    src.write_bytes(b"iso")
    inv = FakeInventory()
    staging = ApplianceCopyStaging(local_path=str(src), **CREDS)

    path = content.stage_content(inv, staging, VumConfig(appliance_stage_dir="/storage/import"))

    assert path == "/storage/import/VMware-ESXi-8.0U3.iso"
    assert inv.uploads == [("vm-vcsa", str(src), "/storage/import/VMware-ESXi-8.0U3.iso")]
    assert inv.commands[0][1] == "/bin/mkdir"


def test_appliance_download_runs_curl():
    inv = FakeInventory()
    staging = ApplianceDownloadStaging(url="https://depot.example.test/esxi.zip", **CREDS)

    path = content.stage_content(inv, staging, VumConfig(appliance_stage_dir="/storage/import"))

    assert path == "/storage/import/esxi.zip"
    vm, program, arguments = inv.commands[-1]
    assert (vm, program) == ("vm-vcsa", "/usr/bin/curl")
    assert "-o /storage/import/esxi.zip https://depot.example.test/esxi.zip" in arguments


def test_appliance_download_failure_is_reported():
    inv = FakeInventory()
    inv.exit_code = 22
    staging = ApplianceDownloadStaging(url="https://depot.example.test/esxi.zip", **CREDS)

    with pytest.raises(VumError, match="exited with code 22"):
        content.stage_content(inv, staging, VumConfig())


def test_import_content_submits_upload_task(vum):
    inv = FakeInventory()
    vum.on("UploadFile_Task", vum.script_task("import-1", "running", "success"))
    staging = ApplianceDownloadStaging(url="https://depot.example.test/esxi.zip", **CREDS)

    info = content.import_content(vum.session, inv, staging)

    assert info.key == "import-1"
    (call,) = vum.calls_to("UploadFile_Task")
    assert call == {"fileName": "/storage/updatemgr/import/esxi.zip", "contentType": "OfflinePatchBundle"}


def test_import_rejects_unknown_extension_before_staging(vum):
    inv = FakeInventory()
    staging = ApplianceDownloadStaging(url="https://depot.example.test/esxi.tar.gz", **CREDS)

    with pytest.raises(VumPreconditionError, match="esxi.tar.gz"):
        content.import_content(vum.session, inv, staging)

    assert inv.commands == []
    assert vum.methods == []


def test_find_image(vum):
    vum.on("QueryUpgradeProducts", {"key": "img-1", "name": "ESXi-8.0U3", "version": "8.0.3"})

    assert content.find_image(vum.session, "ESXi-8.0U3").version == "8.0.3"
    with pytest.raises(VumNotFoundError, match="Image 'ESXi-7.0' not found"):
        content.find_image(vum.session, "ESXi-7.0")


def test_list_images_empty(vum):
    assert content.list_images(vum.session) == []


def test_appliance_commands_use_configured_deadline():
    inv = FakeInventory()
    staging = ApplianceDownloadStaging(url="https://depot.example.test/esxi.zip", **CREDS)

    content.stage_content(inv, staging, VumConfig(guest_timeout_s=90))

    assert inv.timeouts == [90, 90]
