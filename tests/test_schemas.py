import pytest
from pydantic import ValidationError

from prism_driver.schemas import (
    DiskSpec,
    MachineConfig,
    ResourceKind,
    ResourceReference,
)


def _config(**overrides) -> MachineConfig:
    values: dict = {"name": "m1", "cluster": "C1", "vm_network": ["N1"], "vm_image": "img"}
    values.update(overrides)
    return MachineConfig(**values)


def test_defaults():
    config = _config()
    assert config.vm_mem == 2048
    assert config.vm_cpus == 2
    assert config.vm_cores == 1
    assert config.boot_type == "legacy"
    assert config.timeout == 300
    assert config.vm_description == "VM created by prism-driver"


def test_timeout_is_raised_to_minimum():
    assert _config(timeout=60).timeout == 300
    assert _config(timeout=900).timeout == 900


def test_description_is_truncated():
    assert len(_config(vm_description="x" * 1500).vm_description) == 1000


def test_boot_type_must_be_known():
    with pytest.raises(ValidationError):
        _config(boot_type="bios")


def test_network_is_required():
    with pytest.raises(ValidationError):
        _config(vm_network=[])
    with pytest.raises(ValidationError):
        _config(vm_network=["  "])


def test_image_is_required():
    with pytest.raises(ValidationError):
        _config(vm_image="")


@pytest.mark.parametrize("name", ["../x", "../../escaped", "a/b", ".hidden", "-flag", "m 1"])
def test_unsafe_machine_name_rejected(name: str):
    with pytest.raises(ValidationError):
        _config(name=name)


def test_hostname_style_machine_names_accepted():
    assert _config(name="build-01.ci_pool").name == "build-01.ci_pool"


def test_unknown_fields_rejected():
    with pytest.raises(ValidationError):
        _config(vm_colour="blue")


@pytest.mark.parametrize("group", ["novalue", "=dev"])
def test_malformed_category_rejected(group: str):
    with pytest.raises(ValidationError, match="malformed group"):
        _config(vm_categories=[group])


def test_categories_mapping_groups_and_dedupes():
    config = _config(vm_categories=["env=dev", "env=prod", "env=dev", "team=core"])
    assert config.categories_mapping() == {"env": ["dev", "prod"], "team": ["core"]}


def test_disk_needs_exactly_one_source():
    image = ResourceReference(kind=ResourceKind.IMAGE, uuid="i1")
    container = ResourceReference(kind=ResourceKind.STORAGE_CONTAINER, uuid="sc")
    with pytest.raises(ValidationError):
        DiskSpec(image_ref=image, storage_container_ref=container, size_bytes=1)
    with pytest.raises(ValidationError):
        DiskSpec()


def test_image_disk_without_size_keeps_image_size():
    disk = DiskSpec.from_image(ResourceReference(kind=ResourceKind.IMAGE, uuid="i1"))
    assert disk.to_wire() == {"data_source_reference": {"kind": "image", "uuid": "i1"}}
