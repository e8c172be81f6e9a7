"""Discord UI views and components."""

from __future__ import annotations

from discord_music_streamer.infrastructure.discord.views.base_view import BaseInteractiveView
from discord_music_streamer.infrastructure.discord.views.control_panel_view import (
    ControlPanelView,
)

__all__ = [
    "BaseInteractiveView",
    "ControlPanelView",
]
