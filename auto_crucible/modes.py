"""Operating modes and their parameter overrides.

Modes only ever adjust thresholds, budgets and verbosity; they never change an
algorithmic step. The controller is a pure lookup table. ``ModeState`` holds
the process-wide current mode, which callers read once per request.
"""

import logging
import threading
from typing import Dict, Optional

from auto_crucible.models import Mode, ModeParameters, Tier, Verbosity

logger = logging.getLogger(__name__)


def _mode_table(base_pass_bar: float) -> Dict[Mode, ModeParameters]:
    return {
        Mode.SILENT: ModeParameters(
            pass_bar=base_pass_bar, max_iterations_multiplier=1.0,
            tier_threshold_shift=0.0, verbosity=Verbosity.SILENT,
        ),
        Mode.TRANSPARENT: ModeParameters(
            pass_bar=base_pass_bar, max_iterations_multiplier=1.0,
            tier_threshold_shift=0.0, verbosity=Verbosity.VERBOSE,
        ),
        Mode.COLLABORATIVE: ModeParameters(
            pass_bar=base_pass_bar, max_iterations_multiplier=1.0,
            tier_threshold_shift=0.0, verbosity=Verbosity.VERBOSE,
        ),
        # RAW never reaches the validation loop
        Mode.RAW: ModeParameters(
            pass_bar=base_pass_bar, max_iterations_multiplier=0.0,
            tier_threshold_shift=0.0, verbosity=Verbosity.SILENT,
        ),
        Mode.AGGRESSIVE: ModeParameters(
            pass_bar=min(base_pass_bar + 1.0, 10.0), max_iterations_multiplier=1.4,
            tier_threshold_shift=1.0, verbosity=Verbosity.NORMAL,
        ),
        Mode.PERMISSIVE: ModeParameters(
            pass_bar=max(base_pass_bar - 2.0, 0.0), max_iterations_multiplier=0.6,
            tier_threshold_shift=-1.0, verbosity=Verbosity.NORMAL,
        ),
    }


class ModeController:
    """Maps a mode to its parameter overrides."""

    def __init__(self, base_pass_bar: float = 8.0, base_iterations: Optional[Dict[Tier, int]] = None):
        self._table = _mode_table(base_pass_bar)
        self._base_iterations = base_iterations or {Tier.LIGHT: 1, Tier.FULL: 3, Tier.DEEP: 5}

    def get_parameters(self, mode: Mode) -> ModeParameters:
        return self._table[Mode(mode)]

    def pass_bar(self, tier: Tier, mode: Mode) -> float:
        # Same bar for every tier; the tier only changes the budget
        return self.get_parameters(mode).pass_bar

    def max_iterations(self, tier: Tier, mode: Mode) -> int:
        """Iteration budget for a tier under a mode.

        LIGHT is always a single scoring pass. SKIP has no budget at all.
        """
        if tier == Tier.SKIP:
            return 0
        if tier == Tier.LIGHT:
            return 1
        base = self._base_iterations[tier]
        multiplier = self.get_parameters(mode).max_iterations_multiplier
        return max(1, int(base * multiplier + 0.5))


class ModeState:
    """Process-wide mode slot. Readers snapshot it once at request entry."""

    def __init__(self, initial: Mode = Mode.SILENT):
        self._mode = Mode(initial)
        self._lock = threading.Lock()

    def get(self) -> Mode:
        return self._mode

    def set(self, mode: Mode) -> Mode:
        """Swap in a new mode and return the previous one."""
        new_mode = Mode(mode)
        with self._lock:
            previous, self._mode = self._mode, new_mode
        if previous != new_mode:
            logger.info(f"Mode changed: {previous.value} -> {new_mode.value}")
        return previous
