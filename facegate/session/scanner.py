"""Camera scanning session: one cooperative frame loop per organization camera."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Callable, List, Optional, Protocol, Tuple

import numpy as np

from facegate.capture.state_machine import CaptureAction, CaptureDecision, CaptureStateMachine
from facegate.config import ScannerConfig, ValidatorConfig
from facegate.detectors.base import BoundedDetector, FaceDetector
from facegate.errors import MemberNotFoundError
from facegate.quality.scorer import QualityScorer
from facegate.quality.validator import FaceValidator
from facegate.recognition.embedder import EmbeddingGenerator
from facegate.recognition.gallery import GalleryCache
from facegate.recognition.matcher import MatchDecider
from facegate.recognition.similarity import SimilarityEngine
from facegate.session.attendance import AttendanceSink
from facegate.types import DetectedFace, FrameEvent, FrameEventKind, MatchResult

LOGGER = logging.getLogger("facegate.session.scanner")


class MatchObserver(Protocol):
    def on_frame(self, event: FrameEvent) -> None:
        ...


class FrameSource(Protocol):
    """Anything shaped like cv2.VideoCapture."""

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        ...

    def release(self) -> None:
        ...


class ScanSession:
    """Detect -> validate -> score -> capture -> match, one frame at a time.

    Frames are never queued: the next frame is read only after the previous one
    has been fully processed and the state-dependent delay has elapsed. Capture
    state is mutated only by the thread running the loop.
    Sessions are single-use: `stop()` releases the frame source, so a new
    session is built for each camera run.
    """

    def __init__(
        self,
        organization_id: str,
        detector: FaceDetector,
        gallery: GalleryCache,
        config: Optional[ScannerConfig] = None,
        observer: Optional[MatchObserver] = None,
        attendance: Optional[AttendanceSink] = None,
        frame_source: Optional[FrameSource] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.organization_id = organization_id
        self.config = config or ScannerConfig()
        cfg = self.config
        if isinstance(detector, BoundedDetector):
            self.detector = detector
        else:
            self.detector = BoundedDetector(detector, timeout=cfg.session.detector_timeout)
        self.gallery = gallery
        self.observer = observer
        self.attendance = attendance
        self.frame_source = frame_source
        self.clock = clock

        self.validator = FaceValidator(cfg.validator)
        # captures must also pass the strict rules before they are matched
        self.final_validator = FaceValidator(ValidatorConfig.strict_for(self.detector.keypoint_count))
        self.scorer = QualityScorer(cfg.quality)
        self.embedder = EmbeddingGenerator(cfg.embedding)
        self.engine = SimilarityEngine(cfg.similarity)
        self.matcher = MatchDecider(cfg.match, self.engine)
        self.capture = CaptureStateMachine(cfg.capture, cfg.quality, self.engine)

        self.stop_event = threading.Event()
        self._member_removed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stopped = False
        self._attendance_pool = ThreadPoolExecutor(
            max_workers=cfg.session.attendance_workers, thread_name_prefix="attendance"
        )
        self._last_action: Optional[CaptureAction] = None
        self.last_event: Optional[FrameEvent] = None
        self.frames_processed = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Load the gallery and start the frame loop on a background thread.

        Raises GalleryLoadError when no gallery snapshot can be obtained.
        """
        if self.running:
            return
        if self._stopped:
            raise RuntimeError("ScanSession cannot be restarted after stop(); create a new session")
        if self.frame_source is None:
            raise ValueError("ScanSession.start requires a frame_source")
        self.gallery.get(self.organization_id)
        self.capture.reset()
        self.stop_event.clear()
        self._thread = threading.Thread(target=self.run, name=f"scan-{self.organization_id}", daemon=True)
        self._thread.start()
        LOGGER.info("Scan session started for %s", self.organization_id)

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop and release its resources. A stopped session cannot be started again."""
        self._stopped = True
        self.stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        if self.frame_source is not None:
            self.frame_source.release()
        self._attendance_pool.shutdown(wait=False)
        LOGGER.info("Scan session stopped for %s after %d frames", self.organization_id, self.frames_processed)

    def run(self, max_frames: Optional[int] = None) -> None:
        """Process frames until stopped, the source runs dry or `max_frames` is reached."""
        if self.frame_source is None:
            raise ValueError("ScanSession.run requires a frame_source")
        processed = 0
        while not self.stop_event.is_set():
            ok, frame = self.frame_source.read()
            if not ok or frame is None:
                LOGGER.info("Frame source exhausted for %s", self.organization_id)
                break
            self.process_frame(frame)
            processed += 1
            if max_frames is not None and processed >= max_frames:
                break
            if self.stop_event.wait(self._next_delay()):
                break

    def process_frame(self, frame: np.ndarray, now: Optional[float] = None) -> FrameEvent:
        now = self.clock() if now is None else now
        self.frames_processed += 1
        if self._member_removed.is_set():
            self._member_removed.clear()
            self.capture.clear_last_match()

        height, width = frame.shape[:2]
        faces = self.detector.detect(frame)
        face, reason = self._select_face(faces, width, height)
        if face is None:
            decision = self.capture.observe(None, None, now)
            return self._emit_decision(decision, now, reason)

        assessment = self.scorer.score(face, width, height)
        embedding = None
        if self.scorer.is_high_quality(assessment):
            embedding = self.embedder.generate(face)
        decision = self.capture.observe(assessment, embedding, now)
        if not decision.should_match:
            return self._emit_decision(decision, now, decision.reason)
        verdict = self.final_validator.validate(face, width, height)
        if not verdict.is_valid:
            LOGGER.debug("Capture rejected by final check: %s", verdict.reason)
            decision = self.capture.reject_capture(decision, f"final check: {verdict.reason}")
            return self._emit_decision(decision, now, decision.reason)

        snapshot = self.gallery.get(self.organization_id)
        result = self.matcher.match(decision.embedding, snapshot.entries)
        repeat = result.matched and self.capture.recently_matched(result.member_id, now)
        self.capture.record_match(result, now)
        self._last_action = decision.action
        if result.matched:
            if repeat:
                LOGGER.debug("Suppressing repeat attendance for %s", result.member_id)
            else:
                self._dispatch_attendance(result)
            return self._emit(
                FrameEvent(
                    kind=FrameEventKind.MATCHED,
                    timestamp=now,
                    quality_score=decision.quality_score,
                    match=result,
                    capture_status=decision.status.value,
                    reason="repeat" if repeat else result.reason,
                )
            )
        return self._emit(
            FrameEvent(
                kind=FrameEventKind.UNMATCHED,
                timestamp=now,
                quality_score=decision.quality_score,
                match=result,
                probe_embedding=decision.embedding,
                capture_status=decision.status.value,
                reason=result.reason,
            )
        )

    def close(self) -> None:
        self.stop()
        self.detector.close()

    def _select_face(self, faces: List[DetectedFace], width: int, height: int) -> Tuple[Optional[DetectedFace], str]:
        if not faces:
            return None, "no face detected"
        reason = ""
        for face in faces:
            result = self.validator.validate(face, width, height)
            if result.is_valid:
                return face, "ok"
            reason = result.reason
        return None, reason

    def _emit_decision(self, decision: CaptureDecision, now: float, reason: str) -> FrameEvent:
        self._last_action = decision.action
        kind = FrameEventKind.NO_FACE if decision.action is CaptureAction.NO_FACE else FrameEventKind.LOW_QUALITY
        return self._emit(
            FrameEvent(
                kind=kind,
                timestamp=now,
                quality_score=decision.quality_score,
                capture_status=decision.status.value,
                reason=reason,
            )
        )

    def _emit(self, event: FrameEvent) -> FrameEvent:
        self.last_event = event
        if self.observer is not None:
            try:
                self.observer.on_frame(event)
            except Exception:
                LOGGER.exception("Match observer failed on %s event", event.kind.value)
        return event

    def _next_delay(self) -> float:
        cfg = self.config.session
        action = self._last_action
        if action is CaptureAction.CAPTURE:
            return cfg.post_match_delay
        if action is CaptureAction.HANDOFF_WAIT:
            return cfg.dwell_delay
        if action is CaptureAction.LOW_QUALITY:
            return cfg.low_quality_delay
        return cfg.scan_interval

    def _dispatch_attendance(self, result: MatchResult) -> None:
        if self.attendance is None or result.member_id is None:
            return
        if self._stopped:
            LOGGER.warning("Session stopped; dropping attendance for %s", result.member_id)
            return
        future = self._attendance_pool.submit(self.attendance.record_match, result.member_id, result.confidence)
        future.add_done_callback(partial(self._on_attendance_done, result.member_id))

    def _on_attendance_done(self, member_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is None:
            return
        if isinstance(exc, MemberNotFoundError):
            LOGGER.warning(
                "Member %s no longer exists; invalidating gallery for %s", member_id, self.organization_id
            )
            self.gallery.invalidate(self.organization_id)
            self._member_removed.set()
            return
        LOGGER.warning("Attendance sink failed for %s: %s", member_id, exc)
