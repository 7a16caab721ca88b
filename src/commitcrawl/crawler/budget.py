"""Per-execution API call budget."""

import logging

logger = logging.getLogger(__name__)


class RateBudget:
    """Call-count ceiling for one execution.

    Initialised from the platform's reported remaining-call count and
    decremented once per external call. A reserved floor is never spent so
    bookkeeping calls after the main loop still have headroom.
    """

    def __init__(self, remaining: int, floor: int = 1):
        if floor < 0:
            raise ValueError("floor must not be negative")
        self._remaining = max(0, int(remaining))
        self.floor = floor
        self.initial = self._remaining
        self.spent = 0

    def remaining(self) -> int:
        return self._remaining

    def can_spend(self, n: int = 1) -> bool:
        """Whether ``n`` more calls fit above the floor."""
        return self._remaining - n >= self.floor

    def charge(self, n: int = 1) -> bool:
        """Spend ``n`` calls, or refuse and leave the counter untouched."""
        if n < 0:
            raise ValueError("cannot charge a negative amount")
        if not self.can_spend(n):
            logger.debug(
                "Budget refused %d call(s): %d remaining, floor %d",
                n, self._remaining, self.floor,
            )
            return False
        self._remaining -= n
        self.spent += n
        return True

    def __repr__(self) -> str:
        return f"RateBudget(remaining={self._remaining}, floor={self.floor}, spent={self.spent})"
