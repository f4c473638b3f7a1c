"""Registry of lock controllers keyed by stable identifier.

One :class:`LockRegistry` per process replaces any ambient/global
map of accessories.  :meth:`LockRegistry.discover` reconciles the
configured locks with existing controllers and the host's cached
devices; :meth:`LockRegistry.shutdown` tears every controller down.

Cached devices that no longer appear in the configuration are left
registered with the host and are not reconciled.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from powerlock._controller import LockController, LockServices
from powerlock._host import stable_id_for
from powerlock._settings import LockConfig

logger = logging.getLogger(__name__)


class LockRegistry:
    """Owns every :class:`LockController` of the process."""

    def __init__(self, services: LockServices) -> None:
        self._services = services
        self._controllers: dict[str, LockController] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and stable_id_for(name) in self._controllers

    def __iter__(self) -> Iterator[LockController]:
        return iter(list(self._controllers.values()))

    @property
    def controllers(self) -> dict[str, LockController]:
        """Snapshot of the controllers keyed by stable id."""
        return dict(self._controllers)

    def get(self, name: str) -> LockController | None:
        """Return the controller for lock *name*, if registered."""
        return self._controllers.get(stable_id_for(name))

    async def discover(self, configs: Iterable[LockConfig]) -> None:
        """Run one discovery pass over *configs*.

        Existing controllers are reconfigured in place; new locks get
        a controller around a fresh or cached host device.  A failure
        for one lock is logged and does not affect the others.
        """
        host = self._services.host
        configured: set[str] = set()
        for config in configs:
            stable_id = stable_id_for(config.name)
            configured.add(stable_id)
            try:
                controller = self._controllers.get(stable_id)
                if controller is not None:
                    await controller.configure(config)
                    continue
                device = host.get_or_create_device(config.name, stable_id)
                controller = LockController(config, device, self._services)
                self._controllers[stable_id] = controller
                host.on_target_state_write_requested(
                    device, controller.request_target_state
                )
                await controller.start()
            except Exception:
                logger.exception('Failed to set up lock "%s"', config.name)

        for device in host.devices():
            if device.stable_id not in configured:
                logger.debug(
                    'Cached lock "%s" is not configured, leaving it as is',
                    device.name,
                )

    async def shutdown(self) -> None:
        """Clean up every controller, tolerating individual failures."""
        for stable_id, controller in list(self._controllers.items()):
            try:
                await controller.cleanup()
            except Exception:
                logger.exception(
                    'Error cleaning up lock "%s" (%s)', controller.name, stable_id
                )
        logger.debug("Shut down %d lock(s)", len(self._controllers))
