"""
Shared Domain Tests

Tests for the event bus, domain events, UTC helpers, constrained types
and the domain error hierarchy.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import BaseModel, ValidationError

from discord_music_streamer.domain.shared.datetime_utils import UtcDateTime, utcnow
from discord_music_streamer.domain.shared.events import (
    DomainEvent,
    EventBus,
    SessionClosed,
    SessionStateChanged,
    TrackEnqueued,
    get_event_bus,
    reset_event_bus,
)
from discord_music_streamer.domain.shared.exceptions import (
    AuthExpiredError,
    DeviceNotFoundError,
    DomainError,
    FallbackFailedError,
    PipelineError,
    PremiumRequiredError,
    ProviderError,
    ProviderUnavailableError,
)
from discord_music_streamer.domain.shared.types import DiscordSnowflake, UtcDatetimeField

GUILD = 123


def enqueued(title: str = "Song") -> TrackEnqueued:
    return TrackEnqueued(context_id=GUILD, track_title=title)


# =============================================================================
# Domain Events
# =============================================================================


class TestDomainEvent:
    """Tests for DomainEvent basics."""

    def test_domain_event_has_unique_id(self):
        """Should generate unique event IDs."""
        assert DomainEvent().event_id != DomainEvent().event_id

    def test_domain_event_has_utc_timestamp(self):
        """Should stamp events with an aware UTC datetime."""
        assert DomainEvent().occurred_at.tzinfo is not None

    def test_events_are_frozen(self):
        """Should not allow mutation after publishing."""
        event = SessionClosed(context_id=GUILD, reason="idle")

        with pytest.raises(ValidationError):
            event.reason = "other"

    def test_state_snapshot_validates_context(self):
        """Should reject non-positive context IDs."""
        with pytest.raises(ValidationError):
            SessionStateChanged(context_id=0, revision=1, state="playing")


class TestEventBus:
    """Tests for EventBus subscription and delivery."""

    @pytest.mark.asyncio
    async def test_publish_with_no_handlers(self):
        """Should handle publishing an event with no subscribers."""
        await EventBus().publish(enqueued())

    @pytest.mark.asyncio
    async def test_unsubscribe_handler(self):
        """Should stop delivering to an unsubscribed handler."""
        bus = EventBus()
        received = []

        async def handler(event: TrackEnqueued):
            received.append(event)

        bus.subscribe(TrackEnqueued, handler)
        bus.unsubscribe(TrackEnqueued, handler)
        bus.unsubscribe(TrackEnqueued, handler)
        await bus.publish(enqueued())

        assert received == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        """Should run every handler even when one raises."""
        bus = EventBus()
        received = []

        async def failing(event: TrackEnqueued):
            raise RuntimeError("Handler error")

        async def working(event: TrackEnqueued):
            received.append(event)

        bus.subscribe(TrackEnqueued, failing)
        bus.subscribe(TrackEnqueued, working)
        await bus.publish(enqueued())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_handlers_only_receive_their_event_type(self):
        """Should dispatch on the exact event type."""
        bus = EventBus()
        enqueued_events = []
        closed_events = []

        async def on_enqueued(event):
            enqueued_events.append(event)

        async def on_closed(event):
            closed_events.append(event)

        bus.subscribe(TrackEnqueued, on_enqueued)
        bus.subscribe(SessionClosed, on_closed)
        await bus.publish(enqueued("a"))
        await bus.publish(enqueued("b"))

        assert [e.track_title for e in enqueued_events] == ["a", "b"]
        assert closed_events == []

    @pytest.mark.asyncio
    async def test_clear_removes_all_handlers(self):
        """Should remove all event handlers."""
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(TrackEnqueued, handler)
        bus.clear()
        await bus.publish(enqueued())

        assert received == []


class TestGlobalEventBus:
    """Tests for global event bus functions."""

    def test_get_event_bus_returns_same_instance(self):
        """Should return the same instance on multiple calls."""
        reset_event_bus()

        assert get_event_bus() is get_event_bus()

    def test_reset_event_bus_clears_handlers(self):
        """Should clear handlers and replace the instance."""
        bus = get_event_bus()

        async def handler(event):
            pass

        bus.subscribe(SessionClosed, handler)
        reset_event_bus()
        reset_event_bus()

        new_bus = get_event_bus()
        assert new_bus is not bus
        assert len(new_bus._handlers) == 0


# =============================================================================
# Date/time helpers and constrained types
# =============================================================================


class TestUtcDateTime:
    """Tests for UtcDateTime."""

    def test_naive_datetime_raises(self):
        """Should raise ValueError when datetime has no timezone."""
        with pytest.raises(ValueError, match="timezone-aware"):
            UtcDateTime(datetime.now())

    def test_other_timezone_is_converted(self):
        """Should convert non-UTC timezones to UTC."""
        eastern = timezone(timedelta(hours=-5))

        utc_dt = UtcDateTime(datetime(2024, 1, 15, 12, 0, 0, tzinfo=eastern))

        assert utc_dt.dt.hour == 17
        assert utc_dt.dt.tzinfo == UTC

    def test_file_stamp(self):
        """Should produce a compact stamp usable in file names."""
        stamp = UtcDateTime(datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)).file_stamp

        assert stamp == "20240102T030405Z"

    def test_utcnow_is_aware(self):
        """Should return an aware UTC datetime."""
        assert utcnow().tzinfo == UTC


class _Probe(BaseModel):
    snowflake: DiscordSnowflake | None = None
    at: UtcDatetimeField | None = None


class TestConstrainedTypes:
    @pytest.mark.parametrize("value", [0, -1, 2**64])
    def test_snowflake_bounds(self, value):
        """Should reject values outside the snowflake range."""
        with pytest.raises(ValidationError):
            _Probe(snowflake=value)

    def test_naive_datetime_rejected(self):
        """Should reject naive datetimes."""
        with pytest.raises(ValidationError, match="timezone-aware"):
            _Probe(at=datetime(2024, 1, 1))

    def test_aware_datetime_normalised(self):
        """Should normalise aware datetimes to UTC."""
        probe = _Probe(at=datetime(2024, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=1))))

        assert probe.at == datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
        assert probe.at.tzinfo == UTC


# =============================================================================
# Domain errors
# =============================================================================


class TestDomainErrors:
    """Tests for the error hierarchy surfaced to users."""

    def test_code_defaults_to_class_name(self):
        """Should use the class name when no code is given."""
        error = DomainError("boom")

        assert error.code == "DomainError"
        assert str(error) == "boom"
        assert error.hint is None

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (DeviceNotFoundError("Librespot-Wrapper", 20.0), "DEVICE_NOT_FOUND"),
            (AuthExpiredError(), "AUTH_EXPIRED"),
            (PremiumRequiredError(), "PREMIUM_REQUIRED"),
            (ProviderUnavailableError("streaming_service"), "PROVIDER_UNAVAILABLE"),
        ],
    )
    def test_provider_errors_carry_codes_and_hints(self, error, code):
        """Should give every provider failure a stable code and a user hint."""
        assert isinstance(error, ProviderError)
        assert error.code == code
        assert error.hint

    def test_device_not_found_names_device(self):
        """Should mention the device being waited for."""
        error = DeviceNotFoundError("Librespot-Wrapper", 20.0)

        assert error.device_name == "Librespot-Wrapper"
        assert "Librespot-Wrapper" in error.message

    def test_fallback_failed_keeps_both_causes(self):
        """Should expose the primary and fallback failures."""
        primary = PremiumRequiredError()
        fallback = PipelineError("yt-dlp exited", code="STAGE_CRASHED")

        error = FallbackFailedError(primary, fallback)

        assert error.primary is primary
        assert error.fallback is fallback
        assert error.code == "FALLBACK_FAILED"
