from __future__ import annotations
from bisect import bisect_left, insort
from dataclasses import dataclass, field
from typing import Any, Dict, List
import asyncio
import logging
import uuid

from proctor.config import FusionConfig
from proctor.errors import EscalationFailure
from proctor.types import IntegrityEvent, MODALITY_PRIORITY, Modality, Signal
from .collaborators import AnalysisClient, PersistenceClient
from .severity import SeverityTable

log = logging.getLogger("proctor.fusion")


@dataclass
class SessionFusionState:
    events: List[IntegrityEvent] = field(default_factory=list)  # ordered by (timestamp, modality priority)
    accepted_ts: Dict[Modality, List[float]] = field(default_factory=dict)
    suppressed: Dict[str, int] = field(default_factory=dict)
    score: float = 0.0
    score_ts: float | None = None
    unsaved: List[IntegrityEvent] = field(default_factory=list)
    escalations: int = 0
    analyzed_count: int = 0
    consecutive_failures: int = 0
    failures: int = 0
    persist_failures: int = 0
    last_error: str | None = None
    last_report: Dict[str, Any] | None = None
    degraded: bool = False


# Mailbox control messages
@dataclass
class _Escalated:
    count: int
    report: Dict[str, Any] | None = None
    error: EscalationFailure | None = None


@dataclass
class _PersistFailed:
    error: EscalationFailure


@dataclass
class _Finalize:
    done: asyncio.Future


_STOP = object()


def _signal_key(s: Signal) -> tuple[float, int]:
    return (s.timestamp, MODALITY_PRIORITY[s.modality])


class EventAggregator:
    """Single-writer fusion actor for one session.

    Detectors call submit(); one mailbox task applies signals in batches, sorted by
    (timestamp, modality priority phone > multi_face > speech > tab > face), and is
    the only code that touches SessionFusionState. Analysis and persistence calls run
    as separate tasks and report back through the mailbox, so intake never waits on them.
    """

    def __init__(
        self,
        session_id: str,
        analysis: AnalysisClient,
        store: PersistenceClient,
        cfg: FusionConfig | None = None,
    ):
        self.session_id = session_id
        self.cfg = cfg or FusionConfig()
        self.analysis = analysis
        self.store = store
        self.severity = SeverityTable(self.cfg.severity_overrides, self.cfg.silent_required)
        self.state = SessionFusionState()
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._runner: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._persist_tasks: set[asyncio.Task] = set()
        self._closing = False

    # ---------- intake ----------
    def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.get_running_loop().create_task(self._run(), name=f"fusion-{self.session_id}")

    @property
    def closing(self) -> bool:
        return self._closing

    def submit(self, signal: Signal) -> bool:
        if self._closing:
            log.debug("session=%s dropped %s signal after teardown", self.session_id, signal.modality.value)
            return False
        self._mailbox.put_nowait(signal)
        return True

    async def drain(self) -> None:
        """Wait until everything submitted so far has been applied."""
        await self._mailbox.join()

    async def settle(self) -> None:
        """drain() plus waiting for an in-flight escalation to report back."""
        await self._mailbox.join()
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})
        await self._mailbox.join()

    # ---------- actor ----------
    async def _run(self) -> None:
        while True:
            batch = [await self._mailbox.get()]
            while not self._mailbox.empty():
                batch.append(self._mailbox.get_nowait())
            stop = False
            try:
                signals = sorted((m for m in batch if isinstance(m, Signal)), key=_signal_key)
                for s in signals:
                    try:
                        self._apply(s)
                    except Exception:
                        log.exception("session=%s failed to apply %s signal", self.session_id, s.modality.value)
                for m in batch:
                    if m is _STOP:
                        stop = True
                    elif not isinstance(m, Signal):
                        try:
                            self._control(m)
                        except Exception:
                            log.exception("session=%s failed to handle %s", self.session_id, type(m).__name__)
                if signals and not self._closing:
                    self._maybe_escalate()
                if len(self.state.unsaved) >= self.cfg.persist_batch_size:
                    self._flush_events()
            finally:
                for _ in batch:
                    self._mailbox.task_done()
            if stop:
                return

    def _within_cooldown(self, modality: Modality, ts: float) -> bool:
        window = float(self.cfg.cooldown_s.get(modality.value, 0.0))
        stamps = self.state.accepted_ts.get(modality)
        if window <= 0 or not stamps:
            return False
        i = bisect_left(stamps, ts)
        # nearest accepted neighbours on either side
        for j in (i - 1, i):
            if 0 <= j < len(stamps) and abs(ts - stamps[j]) < window:
                return True
        return False

    def _decay_to(self, ts: float) -> None:
        st = self.state
        if st.score_ts is None:
            st.score_ts = ts
            return
        if ts > st.score_ts:
            half_life = self.cfg.score_half_life_s
            if half_life > 0:
                st.score *= 0.5 ** ((ts - st.score_ts) / half_life)
            st.score_ts = ts

    def _apply(self, signal: Signal) -> IntegrityEvent | None:
        st = self.state
        mod = signal.modality
        if self._within_cooldown(mod, signal.timestamp):
            st.suppressed[mod.value] = st.suppressed.get(mod.value, 0) + 1
            log.debug("session=%s suppressed %s at %.3f (cooldown)", self.session_id, mod.value, signal.timestamp)
            return None

        severity = self.severity.assign(signal)
        event = IntegrityEvent(
            id=uuid.uuid4().hex,
            modality=mod,
            severity=severity,
            timestamp=float(signal.timestamp),
            metadata=dict(signal.metadata),
        )
        insort(st.events, event, key=lambda e: e.sort_key)
        insort(st.accepted_ts.setdefault(mod, []), event.timestamp)
        st.unsaved.append(event)

        self._decay_to(event.timestamp)
        st.score += float(self.cfg.severity_weights.get(severity.value, 0.0))
        log.info("session=%s event %s/%s ts=%.3f score=%.2f", self.session_id, mod.value, severity.value,
                 event.timestamp, st.score)
        return event

    def _control(self, msg) -> None:
        st = self.state
        if isinstance(msg, _Escalated):
            if msg.error is None:
                st.analyzed_count = max(st.analyzed_count, msg.count)
                st.last_report = msg.report
                st.consecutive_failures = 0
            else:
                self._record_failure(msg.error)
        elif isinstance(msg, _PersistFailed):
            st.persist_failures += 1
            st.last_error = str(msg.error)
        elif isinstance(msg, _Finalize):
            task = None
            if len(st.events) > st.analyzed_count and not self._escalation_running():
                task = self._start_escalation("session_end")
            self._flush_events()
            if not msg.done.done():
                msg.done.set_result(task)

    def _record_failure(self, err: EscalationFailure) -> None:
        st = self.state
        st.failures += 1
        st.consecutive_failures += 1
        st.last_error = str(err)
        log.warning("session=%s escalation failure (%d in a row): %s", self.session_id, st.consecutive_failures, err)
        if st.consecutive_failures >= self.cfg.max_consecutive_failures and not st.degraded:
            st.degraded = True
            log.error("session=%s analysis unavailable after %d attempts; events are still being recorded",
                      self.session_id, st.consecutive_failures)

    # ---------- escalation ----------
    def _escalation_running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _maybe_escalate(self) -> bool:
        if self._escalation_running():
            return False
        if self.state.score < self.cfg.escalation_threshold:
            return False
        self._start_escalation("score")
        return True

    def _start_escalation(self, reason: str) -> asyncio.Task:
        st = self.state
        self._flush_events()
        snapshot = [e.to_dict() for e in st.events]
        st.score = 0.0
        st.escalations += 1
        log.info("session=%s escalating %d events (reason=%s)", self.session_id, len(snapshot), reason)
        self._inflight = asyncio.get_running_loop().create_task(self._escalate(snapshot))
        return self._inflight

    async def _escalate(self, events: List[Dict[str, Any]]) -> None:
        try:
            report = await self.analysis.analyze(self.session_id, events)
        except Exception as e:
            self._mailbox.put_nowait(_Escalated(len(events), error=EscalationFailure("analyze", e)))
            return
        try:
            await self.store.save_report(self.session_id, report)
        except Exception as e:
            log.warning("session=%s save_report failed: %r", self.session_id, e)
            self._mailbox.put_nowait(_PersistFailed(EscalationFailure("save_report", e)))
        self._mailbox.put_nowait(_Escalated(len(events), report=report))

    # ---------- persistence ----------
    def _flush_events(self) -> None:
        st = self.state
        if not st.unsaved:
            return
        batch = [e.to_dict() for e in st.unsaved]
        st.unsaved = []
        task = asyncio.get_running_loop().create_task(self._save_events(batch))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _save_events(self, batch: List[Dict[str, Any]]) -> None:
        try:
            await self.store.save_events(self.session_id, batch)
        except Exception as e:
            log.warning("session=%s save_events failed for %d events: %r", self.session_id, len(batch), e)
            self._mailbox.put_nowait(_PersistFailed(EscalationFailure("save_events", e)))

    # ---------- teardown ----------
    async def _await_task(self, task: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.cfg.close_timeout_s)
        except asyncio.TimeoutError:
            task.cancel()
            log.warning("session=%s escalation did not finish within %.1fs; cancelled",
                        self.session_id, self.cfg.close_timeout_s)
            self._mailbox.put_nowait(_Escalated(0, error=EscalationFailure("analyze", TimeoutError())))

    async def close(self) -> None:
        """Stop intake, flush the in-flight escalation, run the session-end escalation, flush persistence."""
        if self._closing:
            return
        self._closing = True
        self.start()
        await self._mailbox.join()
        if self._inflight is not None:
            await self._await_task(self._inflight)
            await self._mailbox.join()

        done = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait(_Finalize(done))
        final = await done
        if final is not None:
            await self._await_task(final)
        await self._mailbox.join()

        if self._persist_tasks:
            await asyncio.wait(list(self._persist_tasks), timeout=self.cfg.close_timeout_s)
        self._mailbox.put_nowait(_STOP)
        await self._runner

    # ---------- queries ----------
    @property
    def events(self) -> List[IntegrityEvent]:
        return list(self.state.events)

    def score_at(self, ts: float) -> float:
        st = self.state
        if st.score_ts is None or ts <= st.score_ts or self.cfg.score_half_life_s <= 0:
            return st.score
        return st.score * 0.5 ** ((ts - st.score_ts) / self.cfg.score_half_life_s)

    def snapshot(self) -> Dict[str, Any]:
        st = self.state
        return {
            "event_count": len(st.events),
            "score": round(st.score, 3),
            "score_ts": st.score_ts,
            "suppressed": dict(st.suppressed),
            "escalations": st.escalations,
            "escalation_in_flight": self._escalation_running(),
            "analyzed_count": st.analyzed_count,
            "failures": st.failures,
            "persist_failures": st.persist_failures,
            "degraded": st.degraded,
            "last_error": st.last_error,
            "last_report": st.last_report,
            "closing": self._closing,
        }
