"""
Ledger Floor Tracker

Derives the lowest ledger version that is safe to query from the retained
range the node reports in server_info ("complete_ledgers").

The node's retained window can shrink at any moment (online deletion), so
the floor is the midpoint of the last reported range rather than its start.
"""

import logging
from typing import List, Optional, Tuple, Union

from ..errors import FloorParseError
from ..types import ServerInfo
from .address_registry import MIN_LEDGER_VERSION


def parse_complete_ledgers(text: str) -> List[Tuple[int, int]]:
    """
    Parse a retained range string such as "32570-40000,40002-62000000".

    A single version ("12345") is a one-ledger range.

    Raises:
        FloorParseError: empty, non-numeric, or inverted ranges
    """
    if not isinstance(text, str) or not text.strip():
        raise FloorParseError(f"No retained ledger range: {text!r}", data=text)

    ranges = []
    for chunk in text.strip().split(','):
        bounds = chunk.strip().split('-')
        if len(bounds) not in (1, 2):
            raise FloorParseError(f"Malformed ledger range {chunk!r} in {text!r}", data=text)
        try:
            start = int(bounds[0])
            end = int(bounds[-1])
        except ValueError:
            raise FloorParseError(f"Malformed ledger range {chunk!r} in {text!r}", data=text)
        if start < MIN_LEDGER_VERSION or end < start:
            raise FloorParseError(f"Invalid ledger range {chunk!r} in {text!r}", data=text)
        ranges.append((start, end))
    return ranges


class LedgerFloorTracker:
    """
    Holds the last computed ledger floor.

    Fail-soft: a malformed range leaves the previous floor in place.
    """

    def __init__(self):
        self._logger = logging.getLogger("LedgerFloorTracker")
        self._floor: Optional[int] = None
        self._complete_ledgers: Optional[str] = None

    def update_from_server_info(self, info: Union[ServerInfo, str]) -> int:
        """
        Recompute the floor from server info (or a raw range string).

        Returns:
            The new floor

        Raises:
            FloorParseError: the range string is malformed; floor unchanged
        """
        text = info.complete_ledgers if isinstance(info, ServerInfo) else info
        ranges = parse_complete_ledgers(text)

        start, end = ranges[-1]
        self._floor = (start + end + 1) // 2
        self._complete_ledgers = text
        self._logger.info(f"Ledger floor {self._floor} from complete_ledgers {text}")
        return self._floor

    def current_floor(self) -> int:
        """Last computed floor, or the minimum ledger version if never computed."""
        if self._floor is None:
            return MIN_LEDGER_VERSION
        return self._floor

    @property
    def complete_ledgers(self) -> Optional[str]:
        return self._complete_ledgers
