import logging

from .errors import ConfigurationError

log = logging.getLogger(__name__)


class ClientRegistry:
    """Connection managers by instance id, in registration order."""

    def __init__(self):
        self._managers = {}

    def register(self, manager) -> None:
        if manager.instance_id in self._managers:
            raise ConfigurationError(f"Duplicate client instance id: {manager.instance_id}")
        self._managers[manager.instance_id] = manager
        log.debug(f"Registered {manager.instance_id}")

    def unregister(self, instance_id):
        return self._managers.pop(instance_id, None)

    def get(self, instance_id):
        return self._managers.get(instance_id)

    def get_by_type(self, client_type) -> list:
        return [m for m in self._managers.values() if m.client_type == client_type]

    def get_all(self) -> list:
        return list(self._managers.values())

    def get_connected(self) -> list:
        return [m for m in self._managers.values() if m.is_connected()]

    def get_enabled(self) -> list:
        return [m for m in self._managers.values() if m.is_enabled()]

    def __len__(self):
        return len(self._managers)

    def __contains__(self, instance_id):
        return instance_id in self._managers
