"""
BroadcastChannel - name-addressed message bus between cache instances.

Every channel opened under the same name on a hub receives the messages
posted by the others (never its own). Messages are JSON encoded on post and
decoded per receiver, so receivers never share objects with the sender.
Delivery is deferred to the event loop when one is running.
"""

import asyncio
import json
from collections import defaultdict
from typing import Any, Callable

from loguru import logger

MessageHandler = Callable[[Any], None]


class BroadcastHub:
    """Routes messages between channels that share a name."""

    def __init__(self) -> None:
        self._channels: dict[str, list["BroadcastChannel"]] = defaultdict(list)

    def open(self, name: str) -> "BroadcastChannel":
        return BroadcastChannel(name, hub=self)

    def _register(self, channel: "BroadcastChannel") -> None:
        self._channels[channel.name].append(channel)

    def _unregister(self, channel: "BroadcastChannel") -> None:
        channels = self._channels.get(channel.name)
        if channels and channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.name, None)

    def _publish(self, sender: "BroadcastChannel", data: str) -> None:
        receivers = [c for c in self._channels.get(sender.name, []) if c is not sender]
        if not receivers:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for receiver in receivers:
            if loop is not None:
                loop.call_soon(receiver._receive, data)
            else:
                receiver._receive(data)

    def channel_count(self, name: str) -> int:
        return len(self._channels.get(name, []))


default_hub = BroadcastHub()


class BroadcastChannel:
    """
    One endpoint on a named channel.

    Usage:
        channel = BroadcastChannel("query-cache-sync")
        channel.on_message = lambda msg: print(msg)
        channel.post_message({"action": "invalidate"})
        channel.close()
    """

    def __init__(self, name: str, hub: BroadcastHub | None = None):
        self.name = name
        self.on_message: MessageHandler | None = None
        self._hub = hub or default_hub
        self._closed = False
        self._hub._register(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def post_message(self, message: Any) -> None:
        if self._closed:
            raise RuntimeError(f"Broadcast channel '{self.name}' is closed")
        self._hub._publish(self, json.dumps(message, default=str))

    def _receive(self, data: str) -> None:
        if self._closed or self.on_message is None:
            return
        try:
            message = json.loads(data)
        except ValueError:
            logger.debug(f"[BroadcastChannel] dropped undecodable message on '{self.name}'")
            return
        self.on_message(message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub._unregister(self)
