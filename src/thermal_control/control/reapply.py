"""
Reapplication of actuator targets that firmware may drift away from.

Set-and-forget loses against firmware adjustments, and reasserting every tick
fights them into oscillation. ``ReapplicationController`` only reissues a
command once the observed value has settled away from the target and the
previous command is old enough. ``IntervalReapplier`` covers write-only
channels that cannot be observed: apply on change, then on a fixed period.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Hashable, Optional

from ..hardware import HardwareError

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    SETTLED = "settled"
    REAPPLYING = "reapplying"


@dataclass(frozen=True)
class ReapplyPolicy:
    tolerance: float = 1.0  # Allowed |observed - target| without action
    quiet_window: float = 10.0  # Seconds observed must stay stable
    cooldown: float = 30.0  # Minimum seconds between commands


@dataclass(frozen=True)
class EffectiveActuationState:
    """Control-loop memory of one channel. Never shared outside the controller."""

    last_commanded_value: Optional[float] = None
    last_observed_value: Optional[float] = None
    last_command_time: Optional[float] = None
    quiet_since: Optional[float] = None


class ReapplicationController:
    """Patient reapplication loop for a single actuation channel."""

    def __init__(
        self,
        name: str,
        apply: Callable[[float], None],
        policy: Optional[ReapplyPolicy] = None,
    ):
        self.name = name
        self.apply = apply
        self.policy = policy or ReapplyPolicy()
        self.state = EffectiveActuationState()
        self.phase = Phase.IDLE

    def _track(self, observed: float, now: float, policy: ReapplyPolicy) -> EffectiveActuationState:
        """Advance the quiet-window timer with a new observation."""
        prev = self.state.last_observed_value
        if prev is None or abs(observed - prev) > policy.tolerance:
            quiet_since = None  # Still moving
        elif self.state.quiet_since is None:
            quiet_since = now
        else:
            quiet_since = self.state.quiet_since
        return replace(self.state, last_observed_value=observed, quiet_since=quiet_since)

    @staticmethod
    def _settled(state: EffectiveActuationState, now: float, policy: ReapplyPolicy) -> bool:
        if state.quiet_since is None or now - state.quiet_since < policy.quiet_window:
            return False
        if state.last_command_time is not None and now - state.last_command_time < policy.cooldown:
            return False
        return True

    def poll(
        self,
        target: Optional[float],
        observed: Optional[float],
        now: float,
        policy: Optional[ReapplyPolicy] = None,
    ) -> bool:
        """
        Run one poll/decide/act cycle.

        Args:
            target: Declared target, None when the channel is disabled
            observed: Currently effective value, None if the read failed
            now: Monotonic time in seconds
            policy: Policy for this tick (defaults to the constructor's)

        Returns:
            True if a command was issued successfully
        """
        policy = policy or self.policy

        if target is None:
            self.phase = Phase.IDLE
            return False

        if observed is None:
            # No observation: the quiet window neither advances nor resets
            logger.debug(f"{self.name}: no observation this tick")
            return False

        state = self._track(observed, now, policy)

        if abs(observed - target) <= policy.tolerance:
            self.state = state
            self.phase = Phase.IDLE
            return False

        if not self._settled(state, now, policy):
            self.state = state
            self.phase = Phase.OBSERVING
            logger.debug(
                f"{self.name}: observed={observed:g} target={target:g}, "
                f"waiting (quiet_since={state.quiet_since})"
            )
            return False

        self.phase = Phase.REAPPLYING
        logger.info(f"{self.name}: reapplying {target:g} (observed {observed:g})")
        try:
            self.apply(target)
        except HardwareError as e:
            # Treated as no observation: previous state kept as-is
            logger.warning(f"{self.name}: apply failed: {e}")
            self.phase = Phase.SETTLED
            return False

        self.state = replace(
            state,
            last_commanded_value=target,
            last_command_time=now,
            quiet_since=None,
        )
        self.phase = Phase.IDLE
        return True


class IntervalReapplier:
    """Apply a desired value when it changes, and again every ``interval`` seconds."""

    def __init__(self, name: str, apply: Callable[[Hashable], None]):
        self.name = name
        self.apply = apply
        self.last_value: Optional[Hashable] = None
        self.last_apply_at: Optional[float] = None

    def poll(self, desired: Optional[Hashable], now: float, interval: float) -> bool:
        if desired is None:
            return False

        changed = self.last_value != desired
        due = self.last_apply_at is None or now - self.last_apply_at >= interval
        if not (changed or due):
            return False

        logger.debug(f"{self.name}: applying {desired}")
        try:
            self.apply(desired)
        except HardwareError as e:
            logger.warning(f"{self.name}: apply failed: {e}")
            return False

        self.last_value = desired
        self.last_apply_at = now
        return True
