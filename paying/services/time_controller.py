"""Ledger clock with time manipulation and fast-forwarding.

Responsibilities:
- Provide "now" in Unix milliseconds (real time plus an offset, or frozen)
- Advance time (days, hours, minutes)
- Run the periodic checks of an attached engine after each jump
"""

import threading
import time
from typing import TYPE_CHECKING, Any, Optional

from paying.logging_config import get_logger
from paying.utils.durations import MILLIS_PER_DAY, MILLIS_PER_HOUR, MILLIS_PER_MINUTE

if TYPE_CHECKING:
    from paying.services.paying import Paying

logger = get_logger(__name__)


def _real_time_millis() -> int:
    return int(time.time() * 1000)


class TimeController:
    """Ledger clock.

    Without a start time the clock follows real time, shifted by however
    far it has been advanced. With ``start_time_millis`` it is frozen and
    only moves when advanced or set, which keeps tests deterministic.

    Args:
        start_time_millis: Freeze the clock at this time
        paying: Engine whose checks run after the clock jumps
    """

    def __init__(
        self,
        start_time_millis: Optional[int] = None,
        paying: Optional["Paying"] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._frozen_time_millis = start_time_millis
        self._time_offset_millis = 0
        self._paying = paying

        logger.debug(
            "time_controller_initialized",
            frozen=start_time_millis is not None,
            current_time_millis=self.get_current_time_millis(),
        )

    def attach(self, paying: "Paying") -> None:
        """Run ``paying.run_checks()`` whenever time jumps forward."""
        self._paying = paying

    @property
    def is_frozen(self) -> bool:
        return self._frozen_time_millis is not None

    @property
    def offset_millis(self) -> int:
        with self._lock:
            return self._time_offset_millis

    def get_current_time_millis(self) -> int:
        """Get the current time as a Unix timestamp in milliseconds."""
        with self._lock:
            if self._frozen_time_millis is not None:
                return self._frozen_time_millis
            return _real_time_millis() + self._time_offset_millis

    def advance_time(
        self,
        days: int = 0,
        hours: int = 0,
        minutes: int = 0,
    ) -> dict[str, Any]:
        """Advance time and run the periodic checks.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance

        Returns:
            Dictionary with:
                - old_time_millis: time before advancement
                - new_time_millis: time after advancement
                - time_advanced_millis: amount of time advanced
                - checks: per-service ids processed by the checks

        Raises:
            ValueError: if time values are negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        millis_to_advance = (
            days * MILLIS_PER_DAY + hours * MILLIS_PER_HOUR + minutes * MILLIS_PER_MINUTE
        )

        if millis_to_advance == 0:
            current_time = self.get_current_time_millis()
            return {
                "old_time_millis": current_time,
                "new_time_millis": current_time,
                "time_advanced_millis": 0,
                "checks": {},
            }

        with self._lock:
            old_time = self.get_current_time_millis()
            self._shift(millis_to_advance)
            new_time = self.get_current_time_millis()

        logger.info(
            "time_advanced",
            old_time_millis=old_time,
            new_time_millis=new_time,
            days=days,
            hours=hours,
            minutes=minutes,
        )

        return {
            "old_time_millis": old_time,
            "new_time_millis": new_time,
            "time_advanced_millis": millis_to_advance,
            "checks": self._run_checks(),
        }

    def set_time(self, timestamp_millis: int) -> dict[str, Any]:
        """Jump to a specific timestamp and run the periodic checks.

        Raises:
            ValueError: If timestamp is before the current time
        """
        with self._lock:
            old_time = self.get_current_time_millis()
            if timestamp_millis < old_time:
                raise ValueError(
                    f"cannot set time backwards, current: {old_time}, requested: {timestamp_millis}"
                )
            self._shift(timestamp_millis - old_time)

        logger.info(
            "time_set",
            old_time_millis=old_time,
            new_time_millis=timestamp_millis,
        )

        return {
            "old_time_millis": old_time,
            "new_time_millis": timestamp_millis,
            "checks": self._run_checks(),
        }

    def reset_time(self) -> dict[str, Any]:
        """Drop the offset and unfreeze, following real time again."""
        with self._lock:
            old_time = self.get_current_time_millis()
            self._frozen_time_millis = None
            self._time_offset_millis = 0
            new_time = self.get_current_time_millis()

        logger.info("time_reset", old_time_millis=old_time, new_time_millis=new_time)
        return {"old_time_millis": old_time, "new_time_millis": new_time}

    def _shift(self, millis: int) -> None:
        if self._frozen_time_millis is not None:
            self._frozen_time_millis += millis
        self._time_offset_millis += millis

    def _run_checks(self) -> dict[str, dict[str, list[str]]]:
        if self._paying is None:
            return {}
        return self._paying.run_checks()
