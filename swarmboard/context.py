import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .backends import get_backend_ops
from .categories import CategoryStore
from .config import get_data_path, normalize_client_config
from .errors import ConfigurationError
from .manager import ConnectionManager
from .registry import ClientRegistry

log = logging.getLogger(__name__)


class AppContext:
    """
    Everything one running instance owns: the scheduler, the registry of
    connection managers, the category store and the optional history sink.
    """

    def __init__(self, config, scheduler=None, history=None, category_store=None):
        self.config = config
        self.scheduler = scheduler or AsyncIOScheduler()
        self.history = history
        self.registry = ClientRegistry()
        self.categories = category_store or CategoryStore(
            get_data_path(config) / "categories.json", registry=self.registry,
        )
        if self.categories.registry is None:
            self.categories.registry = self.registry

    def build_managers(self, ops_overrides=None) -> list:
        """
        Creates one manager per configured client record. ops_overrides maps a
        client type to extra BackendOps constructor arguments.
        """
        ops_overrides = ops_overrides or {}
        tracker_interval = int(self.config.get("TRACKER_REFRESH_SECONDS") or 10)
        managers = []
        for record in self.config.get("CLIENTS") or []:
            try:
                client_config = normalize_client_config(record, self.config)
            except ConfigurationError as e:
                log.error(f"Skipping client record: {e}")
                continue
            ops = get_backend_ops(client_config["type"], **ops_overrides.get(client_config["type"], {}))
            manager = ConnectionManager(
                client_config["id"], ops, client_config, self.scheduler,
                category_store=self.categories, history=self.history,
                tracker_interval=tracker_interval,
            )
            self.registry.register(manager)
            managers.append(manager)
        log.info(f"Configured {len(managers)} client(s)")
        return managers

    def get_manager(self, instance_id):
        return self.registry.get(instance_id)

    async def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            log.debug("AsyncIOScheduler started")
        await self.categories.load()

        for manager in self.registry.get_all():
            manager.on_connect(lambda m: m.on_connect_sync(self.categories))

        enabled = self.registry.get_enabled()
        await asyncio.gather(*(m.start_connection() for m in enabled))
        connected = [m.instance_id for m in enabled if m.is_connected()]
        log.info(f"Connected to {len(connected)}/{len(enabled)} client(s)")

    async def shutdown(self) -> None:
        await asyncio.gather(*(m.shutdown() for m in self.registry.get_all()))
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            log.info("AsyncIOScheduler shutdown")
