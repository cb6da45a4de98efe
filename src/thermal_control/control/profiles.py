"""AC / battery profile selection from observed power-source presence."""

import logging
from typing import Dict, Optional, Tuple

from ..data import AC, BATTERY, Profile, TelemetrySample

logger = logging.getLogger(__name__)


class ProfileSelector:
    """
    Tracks which power source is active.

    The active source is a single reference swapped in one assignment, so a
    domain tick that reads it once sees either the old or the new profile,
    never a mix. An unknown presence keeps the previous source.
    """

    def __init__(self, initial: Optional[str] = None):
        self._source = initial

    @property
    def source(self) -> Optional[str]:
        return self._source

    def observe(self, ac_present: Optional[bool]) -> Optional[str]:
        """Record a power-source observation; returns the active source."""
        if ac_present is None:
            return self._source

        source = AC if ac_present else BATTERY
        if source != self._source:
            logger.info(f"Power source: {self._source or 'unknown'} -> {source}")
            self._source = source
        return source

    def on_sample(self, sample: TelemetrySample) -> None:
        """Sampler listener."""
        if sample.battery is not None:
            self.observe(sample.battery.ac_present)

    def active(
        self, profiles: Dict[str, Profile]
    ) -> Tuple[Optional[str], Optional[Profile]]:
        """Active (source, profile) for this tick; (None, None) until the source is known."""
        source = self._source
        if source is None:
            return None, None
        return source, profiles.get(source)
