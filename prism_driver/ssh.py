import logging
import os
from pathlib import Path

import paramiko


logger = logging.getLogger(__name__)

KEY_BITS = 2048


def generate_ssh_key(key_path: str | Path, comment: str = "prism-driver") -> None:
    path = Path(key_path)
    pub_path = path.with_name(f"{path.name}.pub")
    if path.exists() and pub_path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)

    key = paramiko.RSAKey.generate(KEY_BITS)
    key.write_private_key_file(str(path))
    os.chmod(path, 0o600)
    pub_path.write_text(f"{key.get_name()} {key.get_base64()} {comment}\n", encoding="utf-8")
    logger.info("ssh key generated path=%s", path)


def read_public_key(key_path: str | Path) -> str:
    path = Path(key_path)
    pub_path = path.with_name(f"{path.name}.pub")
    return pub_path.read_text(encoding="utf-8").strip()


def ensure_public_key(key_path: str | Path, comment: str = "prism-driver") -> str:
    generate_ssh_key(key_path, comment=comment)
    return read_public_key(key_path)
