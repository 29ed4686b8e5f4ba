from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from .schemas import Envelope
from .session import Outbound
from .transport import Channel, TransportError

logger = logging.getLogger(__name__)


class Broadcaster:
    """Fans outbound envelopes out to the open participant channels."""

    def __init__(self) -> None:
        self.channels: Dict[str, Channel] = {}

    def register(self, channel: Channel) -> None:
        self.channels[channel.peer_id] = channel

    def unregister(self, peer_id: str) -> Optional[Channel]:
        return self.channels.pop(peer_id, None)

    async def send_to(self, peer_id: str, envelope: Envelope) -> bool:
        channel = self.channels.get(peer_id)
        if channel is None:
            return False
        try:
            await channel.send(envelope.to_wire())
        except TransportError as exc:
            logger.warning("Dropping %s after failed send: %s", peer_id, exc)
            return False
        return True

    async def deliver(self, outbound: Iterable[Outbound], roster: Iterable[str]) -> List[str]:
        """Send every queued envelope; return the peers whose channel failed.

        Broadcasts (``recipient is None``) only reach ``roster``, so channels
        that have not joined yet never see session traffic.
        """

        admitted = list(roster)
        dead: List[str] = []
        for item in outbound:
            targets = admitted if item.recipient is None else [item.recipient]
            logger.debug("Sending %s to %d peer(s)", item.envelope.type.value, len(targets))
            for peer_id in targets:
                if peer_id in dead:
                    continue
                if not await self.send_to(peer_id, item.envelope):
                    dead.append(peer_id)
        return dead
