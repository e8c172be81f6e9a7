"""Port interface for delivering control panel renders to the chat platform."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from discord_music_streamer.domain.shared.types import DiscordSnowflake

if TYPE_CHECKING:
    from ..services.control_panel import PanelSnapshot


class PanelMessageRef(BaseModel):
    """Where a control panel message lives and who may operate it."""

    model_config = ConfigDict(frozen=True)

    channel_id: DiscordSnowflake
    message_id: DiscordSnowflake
    owner_id: DiscordSnowflake | None = None


class PanelGateway(ABC):
    @abstractmethod
    async def push(self, context_id: int, ref: PanelMessageRef, snapshot: PanelSnapshot) -> None:
        """Edit the panel message.

        Raises ``PanelRateLimitedError`` when the platform rejects the edit for
        rate limiting; other failures raise ``SyncError``.
        """
        ...
