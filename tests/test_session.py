import threading
import time

import pytest

from facegate.config import ScannerConfig
from facegate.errors import MemberNotFoundError
from facegate.recognition.embedder import EmbeddingGenerator
from facegate.recognition.gallery import GalleryCache
from facegate.session.scanner import ScanSession
from facegate.testing import (
    InMemoryGalleryStore,
    ListFrameSource,
    ScriptedDetector,
    StaticDetector,
    blank_frame,
    frontal_face,
    gallery_entry,
    hand_detection,
    random_embedding,
)
from facegate.types import FaceBox, FrameEventKind, MemberStatus

ORG = "org-1"


class RecordingObserver:
    def __init__(self):
        self.events = []

    def on_frame(self, event):
        self.events.append(event)


class RecordingSink:
    def __init__(self, error=None):
        self.calls = []
        self.error = error
        self.done = threading.Event()

    def record_match(self, member_id, confidence):
        self.calls.append((member_id, confidence))
        self.done.set()
        if self.error is not None:
            raise self.error


class SlowDetector:
    keypoint_count = 6

    def __init__(self, delay):
        self.delay = delay

    def detect(self, frame):
        time.sleep(self.delay)
        return [frontal_face()]


class BrokenDetector:
    keypoint_count = 6

    def detect(self, frame):
        raise RuntimeError("model crashed")


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _member_gallery():
    embedding = EmbeddingGenerator().generate(frontal_face())
    return [gallery_entry("m1", embedding, name="Ada", status=MemberStatus.VIP)]


@pytest.fixture
def make_session():
    created = []

    def factory(detector, entries=None, config=None, **kwargs):
        store = InMemoryGalleryStore({ORG: entries if entries is not None else _member_gallery()})
        cache = GalleryCache(store)
        session = ScanSession(ORG, detector, cache, config=config, **kwargs)
        created.append((session, cache))
        return session, cache, store

    yield factory
    for session, cache in created:
        session.close()
        cache.close()


def _fast_config(**session_values):
    values = dict(scan_interval=0.0, low_quality_delay=0.0, dwell_delay=0.0, post_match_delay=0.0)
    values.update(session_values)
    return ScannerConfig().with_overrides("session", **values)


def test_no_face_event(make_session):
    observer = RecordingObserver()
    session, _, _ = make_session(StaticDetector([]), observer=observer)
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.NO_FACE
    assert event.kind.value == "noFace"
    assert observer.events == [event]


def test_rejected_detection_counts_as_no_face(make_session):
    session, _, _ = make_session(StaticDetector([hand_detection()]))
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.NO_FACE
    assert "linear" in event.reason


def test_low_quality_event(make_session):
    session, _, _ = make_session(StaticDetector([frontal_face(dx=180.0)]))
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.LOW_QUALITY
    assert event.quality_score == 0.0
    assert "position" in event.reason
    assert event.match is None


def test_matched_event_records_attendance(make_session):
    sink = RecordingSink()
    session, _, _ = make_session(StaticDetector([frontal_face()]), attendance=sink)
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.MATCHED
    assert event.match.member_id == "m1"
    assert event.match.status is MemberStatus.VIP
    assert event.match.confidence == pytest.approx(1.0, abs=1e-5)
    assert event.capture_status == "captured"
    assert sink.done.wait(timeout=2)
    assert sink.calls[0][0] == "m1"


def test_repeat_match_does_not_record_attendance_twice(make_session):
    sink = RecordingSink()
    session, _, _ = make_session(StaticDetector([frontal_face()]), attendance=sink)
    session.process_frame(blank_frame(), now=0.0)
    assert sink.done.wait(timeout=2)
    event = session.process_frame(blank_frame(), now=1.0)
    assert event.kind is FrameEventKind.MATCHED
    assert event.reason == "repeat"
    time.sleep(0.05)
    assert len(sink.calls) == 1


def test_unmatched_event_carries_probe(make_session):
    sink = RecordingSink()
    entries = [gallery_entry("stranger", random_embedding(140, seed=1))]
    session, _, _ = make_session(StaticDetector([frontal_face()]), entries=entries, attendance=sink)
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.UNMATCHED
    assert event.reason == "below_threshold"
    assert event.probe_embedding is not None and event.probe_embedding.size == 140
    assert not event.match.matched
    assert sink.calls == []


def test_capture_must_pass_strict_check_before_matching(make_session):
    sink = RecordingSink()
    # aspect 1.4 is fine for tracking but too wide for a final accept
    wide = frontal_face(box=FaceBox(180.0, 140.0, 280.0, 200.0))
    session, _, _ = make_session(StaticDetector([wide]), attendance=sink)
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.LOW_QUALITY
    assert event.reason.startswith("final check: aspect ratio")
    assert event.quality_score == pytest.approx(0.97)
    assert event.match is None
    assert event.capture_status == "tracking"
    assert session.capture.state.stable_frame_count == 0
    time.sleep(0.05)
    assert sink.calls == []


def test_detector_timeout_yields_no_face(make_session):
    config = ScannerConfig().with_overrides("session", detector_timeout=0.05)
    session, _, _ = make_session(SlowDetector(delay=0.3), config=config)
    first = session.process_frame(blank_frame(), now=0.0)
    assert first.kind is FrameEventKind.NO_FACE
    assert session.detector.timeouts == 1
    # the slow call is still running, so the next frame is skipped rather than queued
    second = session.process_frame(blank_frame(), now=0.1)
    assert second.kind is FrameEventKind.NO_FACE
    assert session.detector.timeouts == 1


def test_detector_errors_yield_no_face(make_session):
    session, _, _ = make_session(BrokenDetector())
    assert session.process_frame(blank_frame(), now=0.0).kind is FrameEventKind.NO_FACE


def test_missing_member_invalidates_gallery(make_session):
    sink = RecordingSink(error=MemberNotFoundError("m1"))
    session, cache, store = make_session(StaticDetector([frontal_face()]), attendance=sink)
    session.process_frame(blank_frame(), now=0.0)
    assert _wait_for(lambda: cache.stats(ORG)["stale"])

    session.process_frame(blank_frame(), now=10.0)
    cache.wait(ORG, timeout=2)
    assert store.loads == 2


def test_observer_failure_does_not_stop_processing(make_session):
    class FailingObserver:
        def on_frame(self, event):
            raise RuntimeError("ui went away")

    session, _, _ = make_session(StaticDetector([]), observer=FailingObserver())
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.NO_FACE
    assert session.last_event is event


def test_run_stops_at_max_frames(make_session):
    source = ListFrameSource([blank_frame() for _ in range(5)])
    session, _, _ = make_session(StaticDetector([]), config=_fast_config(), frame_source=source)
    session.run(max_frames=2)
    assert session.frames_processed == 2


def test_background_loop_drains_source_and_releases_it(make_session):
    observer = RecordingObserver()
    source = ListFrameSource([blank_frame() for _ in range(3)])
    session, _, _ = make_session(
        StaticDetector([frontal_face()]), config=_fast_config(), observer=observer, frame_source=source
    )
    session.start()
    assert _wait_for(lambda: not session.running)
    session.stop()
    assert source.released
    assert session.frames_processed == 3
    assert [event.kind for event in observer.events] == [FrameEventKind.MATCHED] * 3


def test_subject_walking_through_frame(make_session):
    detector = ScriptedDetector([[], [frontal_face(dx=180.0)], [frontal_face()], []])
    session, _, _ = make_session(detector)
    kinds = [session.process_frame(blank_frame(), now=idx * 0.5).kind for idx in range(4)]
    assert kinds == [
        FrameEventKind.NO_FACE,
        FrameEventKind.LOW_QUALITY,
        FrameEventKind.MATCHED,
        FrameEventKind.NO_FACE,
    ]
    assert session.capture.state.last_match is None


def test_stopped_session_cannot_be_restarted(make_session):
    source = ListFrameSource([blank_frame() for _ in range(2)])
    session, _, _ = make_session(StaticDetector([]), config=_fast_config(), frame_source=source)
    session.start()
    assert _wait_for(lambda: not session.running)
    session.stop()
    with pytest.raises(RuntimeError, match="restarted"):
        session.start()


def test_match_after_stop_drops_attendance(make_session):
    sink = RecordingSink()
    session, _, _ = make_session(StaticDetector([frontal_face()]), attendance=sink)
    session.stop()
    event = session.process_frame(blank_frame(), now=0.0)
    assert event.kind is FrameEventKind.MATCHED
    time.sleep(0.05)
    assert sink.calls == []
