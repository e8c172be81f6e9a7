"""Control panel buttons: pause, resume, stop and volume."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from discord_music_streamer.domain.music.value_objects import PanelAction
from discord_music_streamer.domain.shared.messages import LogTemplates
from discord_music_streamer.infrastructure.discord.views.base_view import BaseInteractiveView

if TYPE_CHECKING:
    from ....application.services.control_panel import ControlPanelSynchronizer

logger = logging.getLogger(__name__)

BUTTONS: tuple[tuple[PanelAction, str, discord.ButtonStyle], ...] = (
    (PanelAction.PAUSE, "⏸️ Pause", discord.ButtonStyle.secondary),
    (PanelAction.RESUME, "▶️ Resume", discord.ButtonStyle.success),
    (PanelAction.STOP, "⏹️ Stop", discord.ButtonStyle.danger),
    (PanelAction.VOLUME_DOWN, "\U0001f509 Vol -", discord.ButtonStyle.secondary),
    (PanelAction.VOLUME_UP, "\U0001f50a Vol +", discord.ButtonStyle.secondary),
)


def panel_custom_id(action: PanelAction, owner_id: int, guild_id: int) -> str:
    return f"music:{action.value}:{owner_id}:{guild_id}"


class ControlPanelButton(discord.ui.Button["ControlPanelView"]):
    def __init__(self, action: PanelAction, label: str, style: discord.ButtonStyle, *, custom_id: str) -> None:
        super().__init__(label=label, style=style, custom_id=custom_id)
        self.action = action

    async def callback(self, interaction: discord.Interaction) -> None:
        assert self.view is not None
        await self.view.dispatch(interaction, self.action)


class ControlPanelView(BaseInteractiveView):
    """Buttons bound to one guild's session; presses are routed to the synchronizer."""

    def __init__(
        self,
        *,
        guild_id: int,
        owner_id: int,
        control_panel: ControlPanelSynchronizer,
    ) -> None:
        super().__init__(timeout=None)
        self.guild_id = guild_id
        self.owner_id = owner_id
        self._control_panel = control_panel

        for action, label, style in BUTTONS:
            self.add_item(
                ControlPanelButton(
                    action, label, style, custom_id=panel_custom_id(action, owner_id, guild_id)
                )
            )

    async def dispatch(self, interaction: discord.Interaction, action: PanelAction) -> None:
        notice = await self._control_panel.handle_action(
            self.guild_id, action, interaction.user.id, owner_id=self.owner_id
        )
        logger.debug(LogTemplates.PANEL_ACTION, action.value, self.guild_id)
        await interaction.response.send_message(notice, ephemeral=True)
