"""
NetworkStatus - online/offline signal and connection quality.

The status is driven from outside (a connectivity probe, OS hooks, tests):
resources only read it and subscribe to changes.
"""

from datetime import datetime

from loguru import logger

from querycache.reactive import Cell

SLOW_CONNECTION_TYPES = ("slow-2g", "2g")


class NetworkStatus:
    """
    Usage:
        network = NetworkStatus()
        network.online.subscribe(lambda up: print("online" if up else "offline"))
        network.set_online(False)
    """

    def __init__(
        self,
        online: bool = True,
        effective_type: str | None = None,
        save_data: bool = False,
    ):
        self.online: Cell[bool] = Cell(online)
        self.since: Cell[datetime] = Cell(datetime.now())
        self.effective_type = effective_type
        self.save_data = save_data

    @property
    def is_online(self) -> bool:
        return self.online.get()

    def set_online(self, online: bool) -> None:
        if online == self.online.get():
            return
        self.since.set(datetime.now())
        self.online.set(online)
        logger.info(f"Network is now {'online' if online else 'offline'}")

    def set_connection(self, effective_type: str | None, save_data: bool = False) -> None:
        self.effective_type = effective_type
        self.save_data = save_data

    def has_slow_connection(self) -> bool:
        """True on 2g-class links or when the user asked to save data."""
        if self.save_data:
            return True
        return self.effective_type in SLOW_CONNECTION_TYPES
