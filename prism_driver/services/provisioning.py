import logging
import time

from prism_driver.clients.http import RequestFailure
from prism_driver.clients.prism import PrismClient
from prism_driver.config import Settings
from prism_driver.metrics import metrics
from prism_driver.schemas import (
    BootType,
    DiskSpec,
    MachineConfig,
    ProvisionedVM,
    VMSpecification,
)
from prism_driver.services.cloud_init import build_cloud_init_payload
from prism_driver.services.polling import (
    IPWatcher,
    PollTimeout,
    Sleep,
    TaskFailed,
    poll_budget,
    wait_for_ip,
    wait_for_task,
)
from prism_driver.services.resolver import ResourceResolver


logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    def __init__(
        self,
        *,
        vm_name: str,
        stage: str,
        detail: str,
        vm_uuid: str | None = None,
    ):
        self.vm_name = vm_name
        self.vm_uuid = vm_uuid
        self.stage = stage
        self.detail = detail
        self.rolled_back = False
        super().__init__(
            f"provisioning failed vm={vm_name} vm_uuid={vm_uuid} stage={stage}: {detail}"
        )


class TaskFailedError(ProvisioningError):
    pass


class ProvisioningTimeoutError(ProvisioningError):
    pass


class Provisioner:
    def __init__(
        self,
        client: PrismClient,
        *,
        poll_interval_sec: float = 5.0,
        ip_wait_mode: str = "blocking",
        sleep: Sleep = time.sleep,
        resolver: ResourceResolver | None = None,
    ):
        if ip_wait_mode not in {"blocking", "background"}:
            raise ValueError(f"unsupported ip_wait_mode {ip_wait_mode}")
        self.client = client
        self.resolver = resolver or ResourceResolver(client)
        self.poll_interval_sec = poll_interval_sec
        self.ip_wait_mode = ip_wait_mode
        self.sleep = sleep

    @classmethod
    def from_settings(cls, client: PrismClient, settings: Settings) -> "Provisioner":
        return cls(
            client,
            poll_interval_sec=settings.task_poll_interval_sec,
            ip_wait_mode=settings.ip_wait_mode,
        )

    def build_spec(self, config: MachineConfig, public_key: str) -> VMSpecification:
        project_ref = None
        if config.project:
            project_ref = self.resolver.resolve_project(config.project)

        cluster_ref = self.resolver.resolve_cluster(config.cluster)
        nics = self.resolver.resolve_subnets(config.vm_network, cluster_ref)
        categories = config.categories_mapping()
        for key, values in categories.items():
            logger.info("category added key=%s values=%s", key, ",".join(values))

        image_ref = self.resolver.resolve_image(config.vm_image)
        disks = [DiskSpec.from_image(image_ref, config.vm_image_size)]
        if config.storage_container and config.disk_size > 0:
            disks.append(DiskSpec.on_container(config.storage_container, config.disk_size))
            logger.info(
                "extra disk added size_gib=%s storage_container=%s",
                config.disk_size,
                config.storage_container,
            )

        gpus = self.resolver.resolve_gpus(config.vm_gpu, cluster_ref)
        guest = build_cloud_init_payload(config.cloud_init, public_key, config.name)

        return VMSpecification(
            name=config.name,
            description=config.vm_description,
            memory_mib=config.vm_mem,
            vcpu_sockets=config.vm_cpus,
            cores_per_socket=config.vm_cores,
            cpu_passthrough=config.vm_cpu_passthrough,
            serial_port=config.vm_serial_port,
            boot_type=BootType(config.boot_type.upper()),
            disk_list=disks,
            nic_list=nics,
            gpu_list=gpus,
            guest_customization=guest,
            categories=categories,
            cluster_ref=cluster_ref,
            project_ref=project_ref,
        )

    def provision(self, config: MachineConfig, public_key: str) -> ProvisionedVM:
        name = config.name
        try:
            spec = self.build_spec(config, public_key)
        except RequestFailure as exc:
            raise ProvisioningError(vm_name=name, stage="resolve", detail=str(exc)) from exc

        logger.info("launching vm creation name=%s cluster=%s", name, spec.cluster_ref.uuid)
        try:
            ref = self.client.create_vm(spec.to_intent())
        except (RequestFailure, ValueError) as exc:
            raise ProvisioningError(vm_name=name, stage="submit", detail=str(exc)) from exc
        metrics.inc("vm_create_submitted_total")

        vm_uuid = ref.entity_uuid or ""
        attempts = poll_budget(config.timeout, self.poll_interval_sec)
        logger.info(
            "waiting for vm to create name=%s uuid=%s task=%s", name, vm_uuid, ref.task_uuid
        )
        try:
            wait_for_task(
                self.client,
                ref.task_uuid,
                attempts=attempts,
                interval_sec=self.poll_interval_sec,
                sleep=self.sleep,
                waiting_for=f"vm {name} creation",
            )
        except TaskFailed as exc:
            logger.error("vm creation failed name=%s uuid=%s: %s", name, vm_uuid, exc.detail)
            error = TaskFailedError(
                vm_name=name, vm_uuid=vm_uuid, stage="wait_task", detail=exc.detail
            )
            error.rolled_back = self._rollback(name, vm_uuid)
            raise error from exc
        except PollTimeout as exc:
            logger.error("timeout waiting for vm to create name=%s uuid=%s", name, vm_uuid)
            error = ProvisioningTimeoutError(
                vm_name=name, vm_uuid=vm_uuid, stage="wait_task", detail=str(exc)
            )
            error.rolled_back = self._rollback(name, vm_uuid)
            raise error from exc
        except RequestFailure as exc:
            raise ProvisioningError(
                vm_name=name, vm_uuid=vm_uuid, stage="wait_task", detail=str(exc)
            ) from exc

        logger.info("vm created name=%s uuid=%s", name, vm_uuid)
        try:
            vm = self._wait_for_ip(vm_uuid, config.timeout, attempts)
        except PollTimeout as exc:
            logger.error("timeout waiting for vm ip address name=%s uuid=%s", name, vm_uuid)
            error = ProvisioningTimeoutError(
                vm_name=name, vm_uuid=vm_uuid, stage="wait_ip", detail=str(exc)
            )
            error.rolled_back = self._rollback(name, vm_uuid)
            raise error from exc
        except RequestFailure as exc:
            raise ProvisioningError(
                vm_name=name, vm_uuid=vm_uuid, stage="wait_ip", detail=str(exc)
            ) from exc

        metrics.inc("vm_create_succeeded_total")
        logger.info("vm configured name=%s uuid=%s ip=%s", name, vm_uuid, vm.ip_address)
        return vm

    def _wait_for_ip(self, vm_uuid: str, timeout_sec: float, attempts: int) -> ProvisionedVM:
        if self.ip_wait_mode == "background":
            watcher = IPWatcher(self.client, vm_uuid, self.poll_interval_sec).start()
            return watcher.wait(timeout_sec)
        return wait_for_ip(
            self.client,
            vm_uuid,
            attempts=attempts,
            interval_sec=self.poll_interval_sec,
            sleep=self.sleep,
        )

    def _rollback(self, name: str, vm_uuid: str) -> bool:
        if not vm_uuid:
            return False
        logger.info("deleting vm name=%s uuid=%s", name, vm_uuid)
        metrics.inc("vm_rollbacks_total")
        try:
            self.client.delete_vm(vm_uuid)
        except Exception:  # noqa: BLE001
            logger.exception("failed to delete vm name=%s uuid=%s", name, vm_uuid)
            return False
        return True
