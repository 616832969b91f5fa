import os
import tempfile

import pytest

# app.py reads these at import time
_RUNTIME_DIR = tempfile.mkdtemp(prefix='review-wheel-tests-')
os.environ.setdefault('REVIEW_WHEEL_DATA_DIR', os.path.join(_RUNTIME_DIR, 'data'))
os.environ.setdefault('REVIEW_WHEEL_CONFIG', os.path.join(_RUNTIME_DIR, 'config.json'))
os.environ.setdefault('REVIEW_WHEEL_UPLOAD_DIR', os.path.join(_RUNTIME_DIR, 'logos'))
os.environ.setdefault('REVIEW_WHEEL_LOG_FILE', os.path.join(_RUNTIME_DIR, 'review_wheel.log'))

from prize_wheel import Segment, SegmentKind, SegmentSet  # noqa: E402


class ScheduledCall:
    def __init__(self, delay_seconds, callback):
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.cancelled = False
        self.ran = False

    def cancel(self):
        self.cancelled = True

    def run(self):
        self.ran = True
        self.callback()


class ManualScheduler:
    """Holds delayed callbacks until the test releases them"""

    def __init__(self):
        self.calls = []

    def schedule(self, delay_seconds, callback):
        call = ScheduledCall(delay_seconds, callback)
        self.calls.append(call)
        return call

    @property
    def pending(self):
        return [c for c in self.calls if not c.cancelled and not c.ran]

    def run_all(self):
        for call in self.pending:
            call.run()


@pytest.fixture
def manual_scheduler():
    return ManualScheduler()


def make_segments(*rows):
    """make_segments(('Dessert', 'prize', 20), ('Thanks', 'no-prize', 80))"""
    return SegmentSet([
        Segment(id=str(i + 1), title=title, kind=SegmentKind(kind), weight=weight, order=i)
        for i, (title, kind, weight) in enumerate(rows)
    ])


@pytest.fixture
def dessert_wheel():
    return make_segments(('Dessert', 'prize', 20), ('Thanks', 'no-prize', 80))
