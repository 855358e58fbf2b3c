"""Passive interaction telemetry for one widget session.

The embedding application forwards raw pointer/keyboard/scroll events; the
collector keeps bounded rolling buffers of them. Appends are O(1): full
buffers evict their oldest entry.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, NamedTuple, Optional

from config.constants import (CLICK_PATTERN_CAPACITY, KEY_TIMINGS_CAPACITY,
                              MOUSE_POSITIONS_CAPACITY, MOUSE_SAMPLE_EVERY)


class PointerSample(NamedTuple):
    x: float
    y: float
    t: float  # ms since session start


def _positions_buffer() -> Deque[PointerSample]:
    return deque(maxlen=MOUSE_POSITIONS_CAPACITY)


def _clicks_buffer() -> Deque[PointerSample]:
    return deque(maxlen=CLICK_PATTERN_CAPACITY)


def _keys_buffer() -> Deque[float]:
    return deque(maxlen=KEY_TIMINGS_CAPACITY)


@dataclass
class BehaviorSample:
    mouse_move_count: int = 0
    mouse_positions: Deque[PointerSample] = field(default_factory=_positions_buffer)
    click_pattern: Deque[PointerSample] = field(default_factory=_clicks_buffer)
    key_press_timings: Deque[float] = field(default_factory=_keys_buffer)
    scroll_event_count: int = 0
    session_start: float = field(default_factory=time.time)

    @property
    def total_samples(self) -> int:
        return len(self.mouse_positions) + len(self.click_pattern) + len(self.key_press_timings)

    @property
    def has_pointer_data(self) -> bool:
        return bool(self.mouse_move_count or self.mouse_positions or self.click_pattern)

    @property
    def elapsed_ms(self) -> float:
        """Offset of the most recent recorded event."""
        latest = [buf[-1].t for buf in (self.mouse_positions, self.click_pattern) if buf]
        if self.key_press_timings:
            latest.append(self.key_press_timings[-1])
        return max(latest) if latest else 0.0

    def copy(self) -> "BehaviorSample":
        return BehaviorSample(
            mouse_move_count=self.mouse_move_count,
            mouse_positions=deque(self.mouse_positions, maxlen=MOUSE_POSITIONS_CAPACITY),
            click_pattern=deque(self.click_pattern, maxlen=CLICK_PATTERN_CAPACITY),
            key_press_timings=deque(self.key_press_timings, maxlen=KEY_TIMINGS_CAPACITY),
            scroll_event_count=self.scroll_event_count,
            session_start=self.session_start,
        )

    def to_payload(self, risk_score: Optional[float] = None) -> Dict[str, Any]:
        """Wire form used for invisible verification."""
        payload = {
            "mouseMoveCount": self.mouse_move_count,
            "mousePositions": [p._asdict() for p in self.mouse_positions],
            "clickPattern": [p._asdict() for p in self.click_pattern],
            "keyPressTimings": list(self.key_press_timings),
            "scrollEventCount": self.scroll_event_count,
            "sessionStart": self.session_start,
        }
        if risk_score is not None:
            payload["riskScore"] = risk_score
        return payload

    @classmethod
    def from_payload(cls, payload) -> "BehaviorSample":
        """Build a sample from a validated ``schemas.BehaviorPayload``."""
        return cls(
            mouse_move_count=payload.mouseMoveCount,
            mouse_positions=deque((PointerSample(p.x, p.y, p.t) for p in payload.mousePositions),
                                  maxlen=MOUSE_POSITIONS_CAPACITY),
            click_pattern=deque((PointerSample(p.x, p.y, p.t) for p in payload.clickPattern),
                                maxlen=CLICK_PATTERN_CAPACITY),
            key_press_timings=deque(payload.keyPressTimings, maxlen=KEY_TIMINGS_CAPACITY),
            scroll_event_count=payload.scrollEventCount,
            session_start=payload.sessionStart if payload.sessionStart is not None else 0.0,
        )


class TelemetryCollector:
    """Maintains the BehaviorSample of one widget session.

    Args:
        clock: Monotonic clock in seconds, used for event offsets.
        wall_clock: Wall clock in seconds, recorded as ``session_start``.
        sample_every: Keep one mouse position per this many move events.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time,
                 sample_every: int = MOUSE_SAMPLE_EVERY):
        self._clock = clock
        self._wall_clock = wall_clock
        self.sample_every = max(1, int(sample_every))
        self.reset()

    def reset(self) -> None:
        self._start = self._clock()
        self._last_offset = 0.0
        self.sample = BehaviorSample(session_start=self._wall_clock())

    def _offset_ms(self) -> float:
        # Offsets never go backwards, even with a misbehaving clock
        offset = max((self._clock() - self._start) * 1000.0, self._last_offset)
        self._last_offset = offset
        return offset

    def on_mouse_move(self, x: float, y: float) -> None:
        self.sample.mouse_move_count += 1
        if self.sample.mouse_move_count % self.sample_every == 0:
            self.sample.mouse_positions.append(PointerSample(float(x), float(y), self._offset_ms()))

    def on_click(self, x: float, y: float) -> None:
        self.sample.click_pattern.append(PointerSample(float(x), float(y), self._offset_ms()))

    def on_key_down(self) -> None:
        # Timing only; key identities are never recorded
        self.sample.key_press_timings.append(self._offset_ms())

    def on_scroll(self) -> None:
        self.sample.scroll_event_count += 1

    def snapshot(self) -> BehaviorSample:
        return self.sample.copy()
