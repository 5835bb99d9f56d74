import base64
import io
import json

import pytest
from ruamel.yaml import YAML

from prism_driver.services.cloud_init import (
    CloudInitSyntaxError,
    build_cloud_init_payload,
    build_user_data,
    default_user_data,
    find_collection,
)


KEY = "ssh-rsa AAAAB3NzaC1yc2E test@host"


def _load(text: str):
    return YAML(typ="safe").load(io.StringIO(text))


def test_empty_document_uses_default_user_data():
    assert build_user_data("", KEY) == default_user_data(KEY)
    assert build_user_data(None, KEY).startswith("#cloud-config\nusers:\n  - name: root\n")


def test_public_key_is_stripped():
    assert f"- {KEY}\n" in build_user_data("", f"  {KEY}\n")


def test_document_without_header_is_rejected():
    with pytest.raises(CloudInitSyntaxError, match="#cloud-config"):
        build_user_data("packages:\n  - git\n", KEY)


def test_root_user_appended_to_existing_users():
    document = (
        "#cloud-config\n"
        "# top comment\n"
        "packages:\n"
        "  - git  # version control\n"
        "users:\n"
        "  - name: alice\n"
        "    shell: /bin/bash\n"
        "runcmd:\n"
        "  - echo hi\n"
    )
    merged = build_user_data(document, KEY)
    assert merged.startswith("#cloud-config")
    assert "# top comment" in merged
    assert "# version control" in merged

    tree = _load(merged)
    assert list(tree) == ["packages", "users", "runcmd"]
    assert tree["users"][0] == {"name": "alice", "shell": "/bin/bash"}
    assert tree["users"][1]["name"] == "root"
    assert tree["users"][1]["ssh_authorized_keys"] == [KEY]
    assert tree["runcmd"] == ["echo hi"]


def test_users_key_created_when_missing():
    merged = build_user_data("#cloud-config\npackage_update: true\n", KEY)
    tree = _load(merged)
    assert list(tree) == ["package_update", "users"]
    assert tree["users"] == [
        {"name": "root", "sudo": "ALL=(ALL) NOPASSWD:ALL", "ssh_authorized_keys": [KEY]}
    ]


def test_null_users_becomes_a_sequence():
    tree = _load(build_user_data("#cloud-config\nusers:\n", KEY))
    assert [user["name"] for user in tree["users"]] == ["root"]


def test_nested_users_collection_is_found_depth_first():
    document = (
        "#cloud-config\n"
        "groups:\n"
        "  - admins\n"
        "system:\n"
        "  users:\n"
        "    - name: bob\n"
    )
    tree = _load(build_user_data(document, KEY))
    assert "users" not in tree
    assert [user["name"] for user in tree["system"]["users"]] == ["bob", "root"]


def test_escaped_newlines_are_unescaped():
    merged = build_user_data("#cloud-config\\npackages:\\n  - git\\n", KEY)
    tree = _load(merged)
    assert tree["packages"] == ["git"]
    assert tree["users"][0]["name"] == "root"


def test_invalid_yaml_raises_syntax_error():
    with pytest.raises(CloudInitSyntaxError):
        build_user_data("#cloud-config\nusers: [\n", KEY)


def test_non_mapping_root_raises_syntax_error():
    with pytest.raises(CloudInitSyntaxError, match="mapping"):
        build_user_data("#cloud-config\n- a\n- b\n", KEY)


def test_non_sequence_users_raises_syntax_error():
    with pytest.raises(CloudInitSyntaxError, match="users must be a sequence"):
        build_user_data("#cloud-config\nusers: root\n", KEY)


def test_find_collection_returns_parent_and_value():
    tree = {"a": [{"b": {"users": [1]}}]}
    parent, value = find_collection(tree, "users")
    assert parent is tree["a"][0]["b"]
    assert value == [1]
    assert find_collection(tree, "missing") is None


def test_payload_is_base64_with_hostname_meta_data():
    payload = build_cloud_init_payload("", KEY, "m1")
    user_data = base64.b64decode(payload.user_data).decode("utf-8")
    meta_data = json.loads(base64.b64decode(payload.meta_data or "").decode("utf-8"))
    assert user_data == default_user_data(KEY)
    assert meta_data["hostname"] == "m1"
    assert meta_data["uuid"]
    assert payload.to_wire()["cloud_init"]["user_data"] == payload.user_data
