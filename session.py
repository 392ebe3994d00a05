"""
session.py - Scanning session pipeline.

One ScanPipeline per scanning session. It owns the session state and runs at
most one processing pass at a time:

    frame -> OCR -> group_fragments -> match (per candidate) -> merge

State machine:
    idle -> scanning -> (processing <-> scanning) -> stopped

Rules:
- Frames arriving sooner than `throttle_interval_s` after the last pass began
  are dropped. Otherwise the in-flight pass is cancelled and a new one starts.
- A pass re-checks that it is still current after every await. A superseded,
  cancelled or stopped pass never touches session state.
- Merging happens on the event loop only. A match is new when no session entry
  shares its (wine id, vintage); existing entries are never overwritten.
- Autosave writes a deep copy of the session from a worker thread. A copy
  older than the one already written is skipped.
- Camera problems stop the session with an explicit ScannerFault. OCR and
  remote failures only cost the frame they happened in.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Optional

from config import DEFAULT_SETTINGS, ScannerSettings
from grouping import group_fragments
from logging_config import get_logger
from match import WineMatcher
from models import Frame, RecognizedWine, ScannerFault, ScannerState, ScanSession, TextFragment
from normalize import extract_price
from session_store import SessionStore

logger = get_logger(__name__)

MatchesListener = Callable[[list[RecognizedWine]], None]
StateListener = Callable[[ScannerState, Optional[ScannerFault]], None]


class CameraUnavailableError(Exception):
    """The camera exists but could not be configured or started."""


class ScanPipeline:
    """Throttled, cancellable OCR -> group -> match pipeline for one session."""

    def __init__(
        self,
        ocr: Any,
        matcher: WineMatcher,
        settings: Optional[ScannerSettings] = None,
        store: Optional[SessionStore] = None,
        clock: Callable[[], float] = time.monotonic,
        session: Optional[ScanSession] = None,
    ) -> None:
        self.ocr = ocr
        self.matcher = matcher
        self.settings = settings or DEFAULT_SETTINGS
        self.store = store
        self._clock = clock

        if session is None and store is not None:
            session = store.load_current()
        self.session = session or ScanSession()

        self.state = ScannerState.IDLE
        self.fault: Optional[ScannerFault] = None
        self.frame_results: list[RecognizedWine] = []

        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._last_pass_started: Optional[float] = None
        self._ocr_degraded_reported = False
        self._listeners: list[MatchesListener] = []
        self._state_listeners: list[StateListener] = []
        self._save_lock = threading.Lock()
        self._save_revision = 0
        self._written_revision = 0

    # -- Observers --

    def subscribe(self, callback: MatchesListener) -> Callable[[], None]:
        """Call `callback(snapshot)` whenever the session's match set grows."""
        return self._register(self._listeners, callback)

    def subscribe_state(self, callback: StateListener) -> Callable[[], None]:
        """Call `callback(state, fault)` on every state or fault change."""
        return self._register(self._state_listeners, callback)

    @staticmethod
    def _register(listeners: list, callback: Callable[..., None]) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _notify(self, listeners: list[Callable[..., None]], *args: Any) -> None:
        for callback in list(listeners):
            try:
                callback(*args)
            except Exception:
                logger.exception("pipeline_listener_error | callback=%r", callback)

    def _set_state(self, state: ScannerState) -> None:
        if state is self.state:
            return
        logger.debug("scanner_state | from=%s | to=%s", self.state.value, state.value)
        self.state = state
        self._notify(self._state_listeners, self.state, self.fault)

    def _set_fault(self, fault: Optional[ScannerFault]) -> None:
        if fault is self.fault:
            return
        self.fault = fault
        self._notify(self._state_listeners, self.state, self.fault)

    @property
    def ocr_degraded(self) -> bool:
        return bool(getattr(self.ocr, "degraded", False))

    @property
    def is_active(self) -> bool:
        return self.state in (ScannerState.SCANNING, ScannerState.PROCESSING)

    def current_matches(self) -> list[RecognizedWine]:
        """Read-only snapshot of the deduplicated session matches."""
        return [wine.model_copy(deep=True) for wine in self.session.wines]

    # -- Lifecycle --

    def start(self, camera_check: Optional[Callable[[], bool]] = None) -> bool:
        """Authorize the camera and begin accepting frames.

        `camera_check` returning False or raising PermissionError means access
        was denied; CameraUnavailableError or any other OSError means the device
        failed. Both leave the pipeline stopped with `fault` set.
        """
        if self.is_active:
            return True

        fault: Optional[ScannerFault] = None
        if camera_check is not None:
            try:
                authorized = camera_check()
            except PermissionError:
                fault = ScannerFault.CAMERA_NOT_AUTHORIZED
            except (CameraUnavailableError, OSError) as exc:
                logger.error("camera_unavailable | error_type=%s | error=%s", type(exc).__name__, exc)
                fault = ScannerFault.CAMERA_UNAVAILABLE
            else:
                if not authorized:
                    fault = ScannerFault.CAMERA_NOT_AUTHORIZED

        if fault is not None:
            logger.warning("scanner_fault | fault=%s", fault.value)
            self.fault = fault
            self.state = ScannerState.STOPPED
            self._notify(self._state_listeners, self.state, self.fault)
            return False

        self._set_fault(None)
        self._last_pass_started = None
        self._set_state(ScannerState.SCANNING)
        logger.info("scanning_started | session_id=%s | wines=%d", self.session.id, len(self.session.wines))
        return True

    def _cancel_in_flight(self) -> None:
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def stop(self) -> None:
        """Cancel the in-flight pass and refuse further frames. Session data stays."""
        self._cancel_in_flight()
        self._set_state(ScannerState.STOPPED)
        logger.info("scanning_stopped | session_id=%s | wines=%d", self.session.id, len(self.session.wines))

    async def close(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def clear_session(self) -> None:
        """Discard all matches and start an empty session."""
        self._cancel_in_flight()
        if self.state is ScannerState.PROCESSING:
            self._set_state(ScannerState.SCANNING)
        self.session = ScanSession()
        self.frame_results = []
        if self.store is not None:
            self._discard_current()
        logger.info("session_cleared | session_id=%s", self.session.id)

    def update_location(self, location: Optional[str]) -> None:
        self.session.location = (location or "").strip() or None
        self._autosave()

    def save_session(self, location: Optional[str] = None) -> ScanSession:
        """Move the session into history and continue with a fresh one."""
        if location is not None:
            self.session.location = location.strip() or None
        if self.store is None:
            raise RuntimeError("save_session requires a SessionStore")
        saved = self.store.save_to_history(self.session)
        self._discard_current()
        self.session = ScanSession()
        self.frame_results = []
        return saved

    # -- Frame processing --

    def submit_frame(self, frame: Frame) -> Optional[asyncio.Task]:
        """Start a processing pass for `frame`, or drop it.

        Must be called from the event loop that owns the session.
        """
        if not self.is_active:
            return None

        now = self._clock()
        if self._last_pass_started is not None and now - self._last_pass_started < self.settings.throttle_interval_s:
            logger.debug("frame_dropped | reason=throttle | since_last=%.3f", now - self._last_pass_started)
            return None

        self._last_pass_started = now
        self._cancel_in_flight()
        generation = self._generation
        self._set_state(ScannerState.PROCESSING)
        self._task = asyncio.get_running_loop().create_task(self._run_pass(frame, generation))
        return self._task

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation or not self.is_active

    async def _recognize(self, frame: Frame) -> list[TextFragment]:
        try:
            return await self.ocr.recognize_frame(frame)
        except Exception as exc:
            logger.warning(
                "ocr_frame_failed | error_type=%s | error=%s | fallback=[]",
                type(exc).__name__,
                exc,
            )
            return []

    def _check_ocr_health(self) -> None:
        if self.ocr_degraded and not self._ocr_degraded_reported:
            self._ocr_degraded_reported = True
            logger.warning("ocr_degraded_mode | session_id=%s", self.session.id)
            self._notify(self._state_listeners, self.state, self.fault)

        faulted = bool(getattr(self.ocr, "faulted", False))
        if faulted and self.fault is None:
            self._set_fault(ScannerFault.OCR_UNAVAILABLE)
        elif not faulted and self.fault is ScannerFault.OCR_UNAVAILABLE:
            self._set_fault(None)

    async def _run_pass(self, frame: Frame, generation: int) -> None:
        try:
            if self._is_stale(generation):
                return
            fragments = await self._recognize(frame)
            if self._is_stale(generation):
                return
            self._check_ocr_health()

            candidates = group_fragments(fragments, self.settings)
            results: list[RecognizedWine] = []
            for candidate in candidates:
                if self._is_stale(generation):
                    return
                match = await self.matcher.match(candidate)
                if self._is_stale(generation):
                    return
                results.append(
                    RecognizedWine.from_candidate(candidate, match, extract_price(candidate.full_text))
                )

            if self._merge(results):
                await self._autosave_in_thread()
            logger.debug(
                "pass_complete | generation=%d | fragments=%d | candidates=%d | matched=%d",
                generation,
                len(fragments),
                len(candidates),
                sum(1 for result in results if result.is_matched),
            )
        except asyncio.CancelledError:
            logger.debug("pass_cancelled | generation=%d", generation)
            raise
        finally:
            if generation == self._generation and self.state is ScannerState.PROCESSING:
                self._set_state(ScannerState.SCANNING)

    def _merge_frame_results(self, results: list[RecognizedWine]) -> None:
        merged = list(self.frame_results)
        for result in results:
            for index, existing in enumerate(merged):
                overlap = existing.bounding_box.overlap_ratio(result.bounding_box)
                if overlap > self.settings.overlay_overlap_threshold:
                    if result.match_confidence > existing.match_confidence:
                        merged[index] = result
                    break
            else:
                merged.append(result)
        self.frame_results = merged

    def _merge(self, results: list[RecognizedWine]) -> bool:
        """Fold one pass into the session. True when new wines were added."""
        self._merge_frame_results(results)

        keys = self.session.keys()
        added: list[RecognizedWine] = []
        for result in results:
            key = result.dedup_key
            if key is None or key in keys:
                continue
            self.session.wines.append(result)
            keys.add(key)
            added.append(result)

        if not added:
            return False

        logger.info(
            "session_grew | session_id=%s | added=%d | total=%d | wines=%s",
            self.session.id,
            len(added),
            len(self.session.wines),
            [wine.matched_wine.id for wine in added if wine.matched_wine],
        )
        self._notify(self._listeners, self.current_matches())
        return True

    # -- Persistence --

    def _snapshot(self) -> tuple[ScanSession, int]:
        self._save_revision += 1
        return self.session.model_copy(deep=True), self._save_revision

    def _write_current(self, snapshot: ScanSession, revision: int) -> None:
        """Persist `snapshot` unless a newer revision already reached the store."""
        with self._save_lock:
            if revision <= self._written_revision:
                logger.debug("session_autosave_skipped | session_id=%s | revision=%d", snapshot.id, revision)
                return
            try:
                self.store.save_current(snapshot)
            except OSError as exc:
                logger.warning(
                    "session_autosave_warning | session_id=%s | error_type=%s | error=%s",
                    snapshot.id,
                    type(exc).__name__,
                    exc,
                )
                return
            self._written_revision = revision

    def _autosave(self) -> None:
        if self.store is not None:
            self._write_current(*self._snapshot())

    async def _autosave_in_thread(self) -> None:
        if self.store is not None:
            await asyncio.to_thread(self._write_current, *self._snapshot())

    def _discard_current(self) -> None:
        # Autosaves still queued in worker threads must not bring the file back.
        with self._save_lock:
            self._written_revision = self._save_revision
            self.store.clear_current()
