import logging
import random
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum

FULL_TURN = 360.0
MIN_EXTRA_ROTATION = 1800.0  # at least five full revolutions per spin
MIN_EXTRA_TURNS = 4
JITTER_SPAN_RATIO = 0.4      # max offset from segment center, as a fraction of the span
DEFAULT_SPIN_DURATION_SECONDS = 5.0


class InvalidSegmentSet(Exception):
    """Raised when a wheel cannot be spun (no segments, or no positive weight)"""


class SegmentKind(str, Enum):
    PRIZE = 'prize'
    NO_PRIZE = 'no-prize'


@dataclass(frozen=True)
class Segment:
    id: str
    title: str
    kind: SegmentKind
    weight: float
    order: int
    color: str = '#8b5cf6'

    @property
    def is_prize(self):
        return self.kind == SegmentKind.PRIZE

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'type': self.kind.value,
            'probability': self.weight,
            'order': self.order,
            'color': self.color,
        }


class SegmentSet:
    """
    Immutable, ordered collection of wheel segments.
    Segments are kept sorted by their wheel slot; slot numbers are contiguous from 0.
    """

    def __init__(self, segments=()):
        ordered = sorted(segments, key=lambda s: s.order)
        for index, segment in enumerate(ordered):
            if segment.order != index:
                raise InvalidSegmentSet(
                    f"Segment '{segment.title}' has order {segment.order}, expected {index}"
                )
        self._segments = tuple(ordered)

    @classmethod
    def from_records(cls, records):
        """Build a set from stored segment dicts, re-numbering their order from 0"""
        ordered = sorted(records, key=lambda r: r.get('order', 0))
        segments = []
        for index, record in enumerate(ordered):
            segments.append(Segment(
                id=str(record.get('id', index)),
                title=record.get('title', ''),
                kind=SegmentKind(record.get('type', SegmentKind.NO_PRIZE.value)),
                weight=float(record.get('probability', 0)),
                order=index,
                color=record.get('color', '#8b5cf6'),
            ))
        return cls(segments)

    def __len__(self):
        return len(self._segments)

    def __iter__(self):
        return iter(self._segments)

    def __getitem__(self, index):
        return self._segments[index]

    @property
    def total_weight(self):
        return sum(s.weight for s in self._segments)

    def validate(self):
        if not self._segments:
            raise InvalidSegmentSet("Wheel has no segments")
        negative = [s.title for s in self._segments if s.weight < 0]
        if negative:
            raise InvalidSegmentSet(f"Negative weight on segments: {', '.join(negative)}")
        if self.total_weight <= 0:
            raise InvalidSegmentSet("Total segment weight must be greater than zero")

    def to_list(self):
        return [s.to_dict() for s in self._segments]


@dataclass(frozen=True)
class SpinOutcome:
    segment: Segment
    final_rotation: float

    @property
    def is_winner(self):
        return self.segment.is_prize

    def to_dict(self):
        return {
            'segment': self.segment.to_dict(),
            'final_rotation': self.final_rotation,
            'is_winner': self.is_winner,
        }


def select_segment(segments, random_unit):
    """
    Pick one segment with probability weight / total_weight.

    Segments are walked in wheel order; the first one whose running weight
    total reaches r = random_unit() * total wins. Zero-weight segments are
    never picked. If rounding leaves r above the final total, the last
    weighted segment is returned.
    """
    segments.validate()
    weighted = [s for s in segments if s.weight > 0]
    total = sum(s.weight for s in weighted)
    r = random_unit() * total

    cumulative = 0.0
    for segment in weighted:
        cumulative += segment.weight
        if cumulative >= r:
            logging.debug(f"Segment selection: {r:.3f}/{total:.3f} -> '{segment.title}'")
            return segment

    logging.debug("Segment selection fell back to last weighted segment")
    return weighted[-1]


def plan_rotation(current_rotation, selected_index, segment_count, jitter=0.0):
    """
    Absolute rotation (degrees) that brings the center of segment
    `selected_index` under the pointer at 12 o'clock.

    The returned angle is at least MIN_EXTRA_ROTATION ahead of
    `current_rotation`. `jitter` in [-1, 1] moves the landing point off the
    center while staying inside the segment.
    """
    if segment_count < 1:
        raise ValueError("segment_count must be at least 1")
    if not 0 <= selected_index < segment_count:
        raise ValueError(f"selected_index {selected_index} out of range for {segment_count} segments")

    span = FULL_TURN / segment_count
    target = FULL_TURN - (selected_index * span + span / 2)
    jitter = max(-1.0, min(1.0, jitter))
    target += jitter * span * JITTER_SPAN_RATIO

    to_next_turn = FULL_TURN - (current_rotation % FULL_TURN)
    turns = MIN_EXTRA_TURNS
    while to_next_turn + FULL_TURN * turns + target < MIN_EXTRA_ROTATION:
        turns += 1
    return current_rotation + to_next_turn + FULL_TURN * turns + target


class TimerScheduler:
    """Runs delayed callbacks on threading.Timer threads"""

    def schedule(self, delay_seconds, callback):
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer


class SpinState(str, Enum):
    IDLE = 'idle'
    SPINNING = 'spinning'


class SpinController:
    """
    Runs spins for a single wheel instance.

    The winner is picked when the spin starts; the animation delay only
    decides when the outcome is released. Only one spin may be in flight.
    """

    def __init__(self, segments, scheduler=None, duration_seconds=DEFAULT_SPIN_DURATION_SECONDS,
                 random_unit=random.random, use_jitter=False, name='wheel'):
        self.segments = segments
        self.scheduler = scheduler or TimerScheduler()
        self.duration_seconds = duration_seconds
        self.random_unit = random_unit
        self.use_jitter = use_jitter
        self.name = name

        self.state = SpinState.IDLE
        self.rotation = 0.0
        self.total_spins = 0
        self.current_outcome = None
        self._future = None
        self._handle = None
        self._lock = threading.RLock()

    @property
    def is_spinning(self):
        return self.state == SpinState.SPINNING

    def spin(self):
        """
        Start a spin. Returns a Future resolving to the SpinOutcome once the
        animation delay has elapsed, or None if a spin is already in flight.
        """
        with self._lock:
            if self.state == SpinState.SPINNING:
                logging.warning(f"🔒 Spin on {self.name} blocked - already spinning")
                return None

            segment = select_segment(self.segments, self.random_unit)
            jitter = (self.random_unit() * 2 - 1) if self.use_jitter else 0.0
            final_rotation = plan_rotation(
                self.rotation, segment.order, len(self.segments), jitter
            )

            outcome = SpinOutcome(segment=segment, final_rotation=final_rotation)
            future = Future()
            previous = (self.rotation, self.current_outcome)

            self.rotation = final_rotation
            self.current_outcome = outcome
            self.total_spins += 1
            self.state = SpinState.SPINNING
            self._future = future

            logging.info(f"🎲 {self.name} spin #{self.total_spins} STARTED -> '{segment.title}' "
                         f"({final_rotation:.1f}°, {self.duration_seconds}s)")

            try:
                self._handle = self.scheduler.schedule(
                    self.duration_seconds, lambda: self._complete(future, outcome)
                )
            except Exception as e:
                # Nothing will ever complete this spin, so it never happened
                logging.error(f"💥 {self.name} spin #{self.total_spins} could not be scheduled: {e}")
                self.rotation, self.current_outcome = previous
                self.total_spins -= 1
                self.state = SpinState.IDLE
                self._future = None
                self._handle = None
                raise
            return future

    def _complete(self, future, outcome):
        with self._lock:
            if future is not self._future or future.done():
                return
            self.state = SpinState.IDLE
            self._future = None
            self._handle = None
        logging.info(f"✅ {self.name} spin #{self.total_spins} COMPLETED: '{outcome.segment.title}'")
        future.set_result(outcome)

    def cancel(self):
        """Dispose of the in-flight spin, if any. Returns True if one was cancelled."""
        with self._lock:
            future, handle = self._future, self._handle
            if future is None:
                return False
            self.state = SpinState.IDLE
            self._future = None
            self._handle = None
        if handle is not None:
            handle.cancel()
        future.cancel()
        logging.info(f"🛑 {self.name} spin #{self.total_spins} cancelled")
        return True

    def get_status(self):
        return {
            'name': self.name,
            'state': self.state.value,
            'rotation': self.rotation,
            'total_spins': self.total_spins,
        }
