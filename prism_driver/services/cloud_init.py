import base64
import io
import json
import logging
import uuid

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError

from prism_driver.schemas import CloudInitPayload


logger = logging.getLogger(__name__)

CLOUD_CONFIG_HEADER = "#cloud-config"
ROOT_SUDO_RULE = "ALL=(ALL) NOPASSWD:ALL"


class CloudInitSyntaxError(ValueError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"cloud-init syntax error: {detail}")


def default_user_data(public_key: str) -> str:
    return (
        f"{CLOUD_CONFIG_HEADER}\n"
        "users:\n"
        "  - name: root\n"
        "    ssh_authorized_keys:\n"
        f"      - {public_key}\n"
    )


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.width = 4096
    yaml.indent(mapping=2, sequence=4, offset=2)
    return yaml


def find_collection(node, key: str):
    """Depth-first search for the first mapping entry named ``key``.

    Returns ``(parent_mapping, value)`` or ``None`` when no mapping in the
    tree carries the key.
    """
    if isinstance(node, dict):
        for name, value in node.items():
            if name == key:
                return node, value
            found = find_collection(value, key)
            if found is not None:
                return found
    elif isinstance(node, list):
        for item in node:
            found = find_collection(item, key)
            if found is not None:
                return found
    return None


def _root_user(public_key: str) -> CommentedMap:
    keys = CommentedSeq([public_key])
    entry = CommentedMap()
    entry["name"] = "root"
    entry["sudo"] = ROOT_SUDO_RULE
    entry["ssh_authorized_keys"] = keys
    return entry


def merge_root_user(document: str, public_key: str) -> str:
    yaml = _yaml()
    try:
        tree = yaml.load(document)
    except YAMLError as exc:
        raise CloudInitSyntaxError(str(exc).replace("\n", " ")) from exc

    if tree is None:
        logger.info("cloud-init document is empty, using default user data")
        return default_user_data(public_key)
    if not isinstance(tree, CommentedMap):
        raise CloudInitSyntaxError(
            f"document root must be a mapping, got {type(tree).__name__}"
        )

    found = find_collection(tree, "users")
    if found is None:
        users = CommentedSeq()
        tree["users"] = users
    else:
        parent, users = found
        if users is None:
            users = CommentedSeq()
            parent["users"] = users
        elif not isinstance(users, list):
            raise CloudInitSyntaxError("users must be a sequence")

    users.append(_root_user(public_key))

    stream = io.StringIO()
    yaml.dump(tree, stream)
    merged = stream.getvalue()
    if not merged.startswith(CLOUD_CONFIG_HEADER):
        merged = f"{CLOUD_CONFIG_HEADER}\n{merged}"
    return merged


def build_user_data(document: str | None, public_key: str) -> str:
    public_key = public_key.strip()
    if not document:
        logger.info("no cloud-init document supplied, using default user data")
        return default_user_data(public_key)

    if not document.startswith(CLOUD_CONFIG_HEADER):
        raise CloudInitSyntaxError(f"document must start with {CLOUD_CONFIG_HEADER}")

    unescaped = document.replace("\\n", "\n").replace("\\r", "\r")
    merged = merge_root_user(unescaped, public_key)
    logger.debug("cloud-init user data merged bytes=%s", len(merged))
    return merged


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def build_cloud_init_payload(
    document: str | None, public_key: str, hostname: str
) -> CloudInitPayload:
    user_data = build_user_data(document, public_key)
    meta_data = json.dumps({"hostname": hostname, "uuid": str(uuid.uuid4())})
    return CloudInitPayload(user_data=_b64(user_data), meta_data=_b64(meta_data))
