"""
Recovery from page-lifecycle quirks.

Backgrounded tabs, pages restored from the browser cache and frantic clicking
can leave in-memory flags behind that block the user (a check that will never
finish, a dead socket, an overlay nobody dismisses). ``reduce`` decides which
of those to repair for a given signal; ``RecoverySupervisor`` applies the
decision to the live verifier.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .config import settings
from .timer import Clock, utcnow
from .verifier import ConfirmationVerifier

logger = logging.getLogger(__name__)

RAPID_CLICK_GAP_MS = 300
RAPID_CLICK_COUNT = 5


class LifecycleSignal(str, Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"
    PAGE_RESTORED = "page_restored"
    FOCUS = "focus"
    RAPID_CLICKS = "rapid_clicks"


@dataclass(frozen=True)
class UiState:
    hidden_since: Optional[datetime] = None
    check_in_flight: bool = False
    check_started_at: Optional[datetime] = None
    channel_alive: bool = True
    overlay_visible: bool = False
    pending_operation: bool = False


@dataclass(frozen=True)
class RecoveryPlan:
    state: UiState
    reset_check: bool = False
    revive_channel: bool = False
    clear_overlay: bool = False

    @property
    def acted(self) -> bool:
        return self.reset_check or self.revive_channel or self.clear_overlay


def reduce(state: UiState, signal: LifecycleSignal, now: datetime, stale_after: float) -> RecoveryPlan:
    if signal is LifecycleSignal.HIDDEN:
        return RecoveryPlan(replace(state, hidden_since=state.hidden_since or now))

    reset_check = False
    if state.check_in_flight:
        if signal is LifecycleSignal.PAGE_RESTORED or state.check_started_at is None:
            reset_check = True
        else:
            reset_check = (now - state.check_started_at).total_seconds() >= stale_after

    if signal is LifecycleSignal.RAPID_CLICKS:
        # the user is hammering something that does not respond
        clear_overlay = state.overlay_visible
    else:
        clear_overlay = state.overlay_visible and not state.pending_operation

    revive_channel = not state.channel_alive

    new_state = replace(
        state,
        hidden_since=None,
        check_in_flight=state.check_in_flight and not reset_check,
        check_started_at=None if reset_check else state.check_started_at,
        channel_alive=True if revive_channel else state.channel_alive,
        overlay_visible=state.overlay_visible and not clear_overlay,
        pending_operation=state.pending_operation and not (clear_overlay and signal is LifecycleSignal.RAPID_CLICKS),
    )
    return RecoveryPlan(new_state, reset_check=reset_check, revive_channel=revive_channel, clear_overlay=clear_overlay)


class ClickTracker:
    """Flags RAPID_CLICK_COUNT clicks that each follow the previous within the gap."""

    def __init__(self, gap_ms: int = RAPID_CLICK_GAP_MS, count: int = RAPID_CLICK_COUNT):
        self.gap_ms = gap_ms
        self.count = count
        self._clicks = 0
        self._last_ms: Optional[float] = None

    def record(self, at_ms: float) -> bool:
        if self._last_ms is not None and at_ms - self._last_ms < self.gap_ms:
            self._clicks += 1
        else:
            self._clicks = 1
        self._last_ms = at_ms
        if self._clicks >= self.count:
            self._clicks = 0
            return True
        return False


class RecoverySupervisor:
    def __init__(self,
                 verifier: Optional[ConfirmationVerifier] = None,
                 stale_after: Optional[float] = None,
                 clock: Clock = utcnow,
                 ):
        self.verifier = verifier
        self.stale_after = stale_after if stale_after is not None else settings.stale_check_seconds
        self.clock = clock
        self.clicks = ClickTracker()
        self.ui = UiState()

    def set_overlay(self, visible: bool, pending_operation: bool = False):
        self.ui = replace(self.ui, overlay_visible=visible, pending_operation=pending_operation)

    def _snapshot(self) -> UiState:
        verifier = self.verifier
        if verifier is None:
            return self.ui
        wants_channel = bool(verifier.channels) and not verifier.terminal and not verifier.closed
        channel_alive = not wants_channel or (verifier.channel is not None and verifier.channel.alive)
        return replace(
            self.ui,
            check_in_flight=verifier.session.in_flight,
            check_started_at=verifier.session.check_started_at,
            channel_alive=channel_alive,
        )

    async def handle(self, signal: LifecycleSignal) -> RecoveryPlan:
        plan = reduce(self._snapshot(), signal, self.clock(), self.stale_after)
        self.ui = plan.state
        if self.verifier is not None:
            if plan.reset_check:
                self.verifier.reset_stale_check(max_age=0, force=True)
            if plan.revive_channel:
                await self.verifier.revive_channel()
        if plan.acted:
            logger.info("Recovered after %s: reset_check=%s revive_channel=%s clear_overlay=%s",
                        signal.value, plan.reset_check, plan.revive_channel, plan.clear_overlay)
        return plan

    async def click(self, at_ms: float) -> Optional[RecoveryPlan]:
        if self.clicks.record(at_ms):
            return await self.handle(LifecycleSignal.RAPID_CLICKS)
        return None
