import logging
import re
from urllib.parse import quote

from prism_driver.clients.prism import PrismClient
from prism_driver.schemas import (
    GpuSpec,
    NicSpec,
    ResourceKind,
    ResourceReference,
)


logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
DISK_IMAGE = "DISK_IMAGE"
SUBNET_OVERLAY = "OVERLAY"
SUBNET_VLAN = "VLAN"
GPU_UNUSED = "UNUSED"


class ResolutionError(LookupError):
    def __init__(self, kind: str, name: str, message: str):
        self.kind = kind
        self.name = name
        super().__init__(message)


class ResourceNotFoundError(ResolutionError):
    def __init__(self, kind: str, name: str, message: str | None = None):
        super().__init__(kind, name, message or f"{kind} {name} not found")


class AmbiguousResourceError(ResolutionError):
    def __init__(self, kind: str, name: str):
        super().__init__(kind, name, f"multiple {kind}s found with name {name}")


class WrongResourceTypeError(ResolutionError):
    def __init__(self, kind: str, name: str, expected: str, actual: str | None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            kind, name, f"{kind} {name} is not a {expected} (type {actual or 'unknown'})"
        )


def is_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value))


def name_filter(name: str) -> str:
    return f"name=={quote(name)}"


def entity_name(entity: dict) -> str | None:
    for section in ("spec", "status"):
        name = (entity.get(section) or {}).get("name")
        if isinstance(name, str):
            return name
    return None


def entity_uuid(entity: dict) -> str:
    value = (entity.get("metadata") or {}).get("uuid")
    if not isinstance(value, str) or not value:
        raise ValueError(f"entity {entity_name(entity)} carries no uuid")
    return value


class ResourceResolver:
    def __init__(self, client: PrismClient):
        self.client = client

    def _exact_matches(self, kind: ResourceKind, name: str) -> list[dict]:
        entities = self.client.list_entities(kind.value, name_filter(name))
        return [entity for entity in entities if entity_name(entity) == name]

    def _single(self, kind: ResourceKind, name: str) -> dict:
        matches = self._exact_matches(kind, name)
        if not matches:
            raise ResourceNotFoundError(kind.value, name)
        if len(matches) > 1:
            raise AmbiguousResourceError(kind.value, name)
        return matches[0]

    def resolve(self, kind: ResourceKind, name: str) -> ResourceReference:
        name = name.strip()
        if is_uuid(name):
            logger.info("using %s uuid=%s", kind.value, name)
            return ResourceReference(kind=kind, uuid=name)
        logger.info("searching %s name=%s", kind.value, name)
        entity = self._single(kind, name)
        ref = ResourceReference(kind=kind, uuid=entity_uuid(entity))
        logger.info("%s found name=%s uuid=%s", kind.value, name, ref.uuid)
        return ref

    def resolve_cluster(self, name: str) -> ResourceReference:
        return self.resolve(ResourceKind.CLUSTER, name)

    def resolve_project(self, name: str) -> ResourceReference:
        return self.resolve(ResourceKind.PROJECT, name)

    def resolve_image(self, name: str) -> ResourceReference:
        name = name.strip()
        if is_uuid(name):
            return ResourceReference(kind=ResourceKind.IMAGE, uuid=name)
        logger.info("searching image name=%s", name)
        entity = self._single(ResourceKind.IMAGE, name)
        resources = (entity.get("status") or {}).get("resources") or {}
        image_type = resources.get("image_type")
        if image_type != DISK_IMAGE:
            raise WrongResourceTypeError(
                ResourceKind.IMAGE.value, name, "disk image", image_type
            )
        ref = ResourceReference(kind=ResourceKind.IMAGE, uuid=entity_uuid(entity))
        logger.info("image found name=%s uuid=%s", name, ref.uuid)
        return ref

    def resolve_subnets(
        self, names: list[str], cluster: ResourceReference
    ) -> list[NicSpec]:
        names = [name.strip() for name in names if name.strip()]
        searched = [name for name in names if not is_uuid(name)]
        candidates: list[dict] = []
        if searched:
            combined = ",".join(name_filter(name) for name in searched)
            candidates = self.client.list_entities(ResourceKind.SUBNET.value, combined)

        nics: list[NicSpec] = []
        for name in names:
            if is_uuid(name):
                nics.append(NicSpec(subnet_ref=ResourceReference(kind=ResourceKind.SUBNET, uuid=name)))
                logger.info("using subnet uuid=%s", name)
                continue
            ref = self._pick_subnet(name, candidates, cluster)
            if ref is None:
                logger.warning("subnet not usable name=%s cluster=%s", name, cluster.uuid)
                continue
            nics.append(NicSpec(subnet_ref=ref))

        if not nics:
            raise ResourceNotFoundError(
                ResourceKind.SUBNET.value,
                ", ".join(names),
                f"network {', '.join(names)} not found in cluster {cluster.uuid}",
            )
        return nics

    @staticmethod
    def _pick_subnet(
        name: str, candidates: list[dict], cluster: ResourceReference
    ) -> ResourceReference | None:
        for subnet in candidates:
            if entity_name(subnet) != name:
                continue
            spec = subnet.get("spec") or {}
            subnet_type = (spec.get("resources") or {}).get("subnet_type")
            if subnet_type == SUBNET_OVERLAY:
                logger.info("overlay subnet found name=%s uuid=%s", name, entity_uuid(subnet))
                return ResourceReference(kind=ResourceKind.SUBNET, uuid=entity_uuid(subnet))
            if subnet_type == SUBNET_VLAN:
                bound_to = (spec.get("cluster_reference") or {}).get("uuid")
                if bound_to != cluster.uuid:
                    continue
                logger.info("vlan subnet found name=%s uuid=%s", name, entity_uuid(subnet))
                return ResourceReference(kind=ResourceKind.SUBNET, uuid=entity_uuid(subnet))
        return None

    def resolve_gpus(self, names: list[str], cluster: ResourceReference) -> list[GpuSpec]:
        if not names:
            return []
        inventory: list[dict] = []
        for host in self.client.list_hosts(cluster.uuid):
            resources = (host.get("status") or {}).get("resources") or {}
            inventory.extend(gpu for gpu in resources.get("gpu_list") or [] if gpu)
        if not inventory:
            raise ResourceNotFoundError(
                "gpu",
                ", ".join(names),
                f"no available GPUs found in cluster {cluster.uuid}",
            )

        gpus: list[GpuSpec] = []
        for name in names:
            gpu = self._pick_gpu(name, inventory)
            if gpu is None:
                raise ResourceNotFoundError(
                    "gpu",
                    name,
                    f"no available GPU found in cluster {cluster.uuid} that matches required GPU name: {name}",
                )
            gpus.append(gpu)
        return gpus

    @staticmethod
    def _pick_gpu(name: str, inventory: list[dict]) -> GpuSpec | None:
        for device in inventory:
            if str(device.get("status") or "").upper() != GPU_UNUSED:
                continue
            if device.get("name") != name:
                continue
            device_id = device.get("device_id")
            if not isinstance(device_id, int):
                continue
            logger.info("gpu found name=%s device_id=%s", name, device_id)
            return GpuSpec(
                device_id=device_id,
                mode=str(device.get("mode") or ""),
                vendor=str(device.get("vendor") or ""),
            )
        return None
