import asyncio
import json
import unittest

import httpx

from proctor.config import FusionConfig
from proctor.fusion.aggregator import EventAggregator
from proctor.fusion.collaborators import HttpAnalysisClient, HttpPersistenceClient, InMemoryStore
from proctor.fusion.severity import SeverityTable
from proctor.types import Modality, Severity, Signal


class FakeAnalysis:
    """Records every analyze call; optionally blocks on a gate or raises."""

    def __init__(self, gate: asyncio.Event | None = None, fail: bool = False):
        self.calls = []
        self.gate = gate
        self.fail = fail

    async def analyze(self, session_id, events):
        self.calls.append(list(events))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("analysis down")
        return {"session_id": session_id, "event_count": len(events)}


class FailingStore(InMemoryStore):
    async def save_events(self, session_id, events):
        raise ConnectionError("store down")


def sig(modality: Modality, ts: float, **meta) -> Signal:
    return Signal(modality, ts, meta)


class AggregatorTestCase(unittest.IsolatedAsyncioTestCase):
    def make(self, analysis=None, store=None, **kw) -> EventAggregator:
        self.analysis = analysis or FakeAnalysis()
        self.store = store or InMemoryStore()
        agg = EventAggregator("S1", self.analysis, self.store, FusionConfig(**kw))
        agg.start()
        return agg


class TestCooldownAndOrdering(AggregatorTestCase):
    async def test_tab_flicker_is_one_event(self):
        agg = self.make(escalation_threshold=1000.0)
        self.assertTrue(agg.submit(sig(Modality.TAB, 10.0, transition="hidden")))
        self.assertTrue(agg.submit(sig(Modality.TAB, 10.01, transition="visible")))
        await agg.drain()
        self.assertEqual(len(agg.events), 1)
        self.assertEqual(agg.state.suppressed, {"tab": 1})
        await agg.close()

    async def test_cooldown_checks_late_arrivals(self):
        agg = self.make(escalation_threshold=1000.0)
        agg.submit(sig(Modality.TAB, 10.0))
        await agg.drain()
        agg.submit(sig(Modality.TAB, 9.5))  # earlier, but within 1 s of an accepted event
        agg.submit(sig(Modality.TAB, 8.0))
        await agg.drain()
        self.assertEqual([e.timestamp for e in agg.events], [8.0, 10.0])
        await agg.close()

    async def test_cooldown_is_per_modality(self):
        agg = self.make(escalation_threshold=1000.0)
        agg.submit(sig(Modality.TAB, 1.0))
        agg.submit(sig(Modality.FACE, 1.0))
        agg.submit(sig(Modality.SPEECH, 1.1, sustained=False))
        await agg.drain()
        self.assertEqual(len(agg.events), 3)
        await agg.close()

    async def test_same_timestamp_priority(self):
        agg = self.make(escalation_threshold=1000.0)
        for m in (Modality.FACE, Modality.TAB, Modality.SPEECH, Modality.MULTI_FACE, Modality.PHONE):
            agg.submit(sig(m, 5.0, sustained=True))
        await agg.drain()
        self.assertEqual(
            [e.modality for e in agg.events],
            [Modality.PHONE, Modality.MULTI_FACE, Modality.SPEECH, Modality.TAB, Modality.FACE],
        )
        await agg.close()

    async def test_log_sorted_across_batches(self):
        agg = self.make(escalation_threshold=1000.0)
        agg.submit(sig(Modality.PHONE, 20.0))
        await agg.drain()
        agg.submit(sig(Modality.TAB, 10.0))
        await agg.drain()
        self.assertEqual([e.modality for e in agg.events], [Modality.TAB, Modality.PHONE])
        self.assertEqual(len({e.id for e in agg.events}), 2)
        await agg.close()

    async def test_severity_assignment(self):
        agg = self.make(escalation_threshold=1000.0)
        agg.submit(sig(Modality.SPEECH, 1.0, sustained=True))
        agg.submit(sig(Modality.SPEECH, 10.0, sustained=False))
        agg.submit(sig(Modality.MULTI_FACE, 1.0, face_count=2))
        await agg.drain()
        sev = {(e.modality, e.timestamp): e.severity for e in agg.events}
        self.assertEqual(sev[(Modality.SPEECH, 1.0)], Severity.MEDIUM)
        self.assertEqual(sev[(Modality.SPEECH, 10.0)], Severity.LOW)
        self.assertEqual(sev[(Modality.MULTI_FACE, 1.0)], Severity.HIGH)
        await agg.close()


class TestSeverityTable(unittest.TestCase):
    def test_overrides(self):
        t = SeverityTable({"tab": "high"}, silent_required=False)
        self.assertEqual(t.assign(sig(Modality.TAB, 0.0)), Severity.HIGH)
        # Without a silence requirement even sustained speech is low
        self.assertEqual(t.assign(sig(Modality.SPEECH, 0.0, sustained=True)), Severity.LOW)
        with self.assertRaises(ValueError):
            SeverityTable({"keyboard": "high"})
        with self.assertRaises(ValueError):
            SeverityTable({"tab": "critical"})


class TestScore(AggregatorTestCase):
    async def test_decay(self):
        agg = self.make(escalation_threshold=1000.0, score_half_life_s=10.0)
        agg.submit(sig(Modality.PHONE, 0.0))
        await agg.drain()
        self.assertAlmostEqual(agg.state.score, 6.0)
        self.assertAlmostEqual(agg.score_at(10.0), 3.0)
        agg.submit(sig(Modality.TAB, 10.0))
        await agg.drain()
        self.assertAlmostEqual(agg.state.score, 6.0)
        await agg.close()


class TestEscalation(AggregatorTestCase):
    async def test_escalates_once(self):
        agg = self.make()
        agg.submit(sig(Modality.PHONE, 0.0))
        await agg.settle()
        self.assertEqual(len(self.analysis.calls), 1)
        self.assertEqual(agg.state.analyzed_count, 1)
        self.assertEqual(agg.state.score, 0.0)
        self.assertEqual(len(self.store.reports["S1"]), 1)
        await agg.close()
        # nothing new since the last analysis, so no session-end call
        self.assertEqual(len(self.analysis.calls), 1)

    async def test_one_escalation_in_flight(self):
        gate = asyncio.Event()
        agg = self.make(analysis=FakeAnalysis(gate=gate))
        agg.submit(sig(Modality.PHONE, 0.0))
        await agg.drain()
        agg.submit(sig(Modality.PHONE, 10.0))
        await agg.drain()
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertTrue(agg.snapshot()["escalation_in_flight"])
        self.assertEqual(len(self.analysis.calls), 1)
        self.assertEqual(agg.state.escalations, 1)

        gate.set()
        await agg.settle()
        await agg.close()
        self.assertEqual(len(self.analysis.calls), 2)
        self.assertEqual(len(self.analysis.calls[1]), 2)

    async def test_intake_continues_while_analysis_blocks(self):
        gate = asyncio.Event()
        agg = self.make(analysis=FakeAnalysis(gate=gate))
        agg.submit(sig(Modality.PHONE, 0.0))
        await agg.drain()
        for i in range(5):
            agg.submit(sig(Modality.TAB, 100.0 + 5 * i))
        await agg.drain()
        self.assertEqual(len(agg.events), 6)
        gate.set()
        await agg.close()

    async def test_failures_mark_degraded(self):
        agg = self.make(analysis=FakeAnalysis(fail=True), max_consecutive_failures=2)
        for ts in (0.0, 10.0, 20.0):
            agg.submit(sig(Modality.PHONE, ts))
            await agg.settle()
        self.assertEqual(len(agg.events), 3)
        self.assertGreaterEqual(agg.state.failures, 3)
        self.assertTrue(agg.state.degraded)
        self.assertIn("analyze failed", agg.state.last_error)
        self.assertEqual(agg.state.analyzed_count, 0)
        await agg.close()
        self.assertTrue(agg.snapshot()["closing"])

    async def test_recovery_resets_consecutive_failures(self):
        analysis = FakeAnalysis(fail=True)
        agg = self.make(analysis=analysis)
        agg.submit(sig(Modality.PHONE, 0.0))
        await agg.settle()
        self.assertEqual(agg.state.consecutive_failures, 1)
        analysis.fail = False
        agg.submit(sig(Modality.PHONE, 10.0))
        await agg.settle()
        self.assertEqual(agg.state.consecutive_failures, 0)
        self.assertEqual(agg.state.analyzed_count, 2)
        await agg.close()


class TestTeardown(AggregatorTestCase):
    async def test_final_escalation_and_no_late_events(self):
        agg = self.make(escalation_threshold=1000.0)
        agg.submit(sig(Modality.TAB, 1.0))
        await agg.close()
        self.assertEqual(len(self.analysis.calls), 1)
        self.assertEqual(len(self.store.events["S1"]), 1)
        self.assertFalse(agg.submit(sig(Modality.PHONE, 2.0)))
        self.assertEqual(len(agg.events), 1)

    async def test_close_without_events(self):
        agg = self.make()
        await agg.close()
        await agg.close()
        self.assertEqual(self.analysis.calls, [])

    async def test_persist_in_batches(self):
        agg = self.make(escalation_threshold=1000.0, persist_batch_size=2)
        for ts in (0.0, 5.0, 10.0):
            agg.submit(sig(Modality.TAB, ts))
        await agg.drain()
        await asyncio.sleep(0)
        self.assertEqual(len(self.store.events["S1"]), 3)
        self.assertEqual(agg.state.unsaved, [])
        await agg.close()
        ids = [e["id"] for e in self.store.events["S1"]]
        self.assertEqual(len(ids), len(set(ids)))

    async def test_persist_failure_is_counted(self):
        agg = self.make(store=FailingStore(), escalation_threshold=1000.0)
        agg.submit(sig(Modality.TAB, 0.0))
        await agg.close()
        self.assertEqual(agg.state.persist_failures, 1)
        self.assertEqual(len(agg.events), 1)
        self.assertEqual(len(self.analysis.calls), 1)


class TestHttpClients(unittest.IsolatedAsyncioTestCase):
    async def test_analysis_post(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"risk_level": "low"})

        client = HttpAnalysisClient("http://analysis.local/", token="t0k", transport=httpx.MockTransport(handler))
        report = await client.analyze("S1", [{"modality": "tab"}])
        self.assertEqual(report, {"risk_level": "low"})
        self.assertEqual(seen["path"], "/analyze")
        self.assertEqual(seen["auth"], "Bearer t0k")
        self.assertEqual(seen["body"]["session_id"], "S1")

    async def test_persistence_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"detail": "nope"})

        client = HttpPersistenceClient("http://store.local", transport=httpx.MockTransport(handler))
        with self.assertRaises(httpx.HTTPStatusError):
            await client.save_events("S1", [])

    async def test_persistence_paths(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(204)

        client = HttpPersistenceClient("http://store.local", transport=httpx.MockTransport(handler))
        await client.save_events("S1", [{"id": "a"}])
        await client.save_report("S1", {"risk_level": "low"})
        self.assertEqual(paths, ["/sessions/S1/events", "/sessions/S1/report"])


if __name__ == "__main__":
    unittest.main()
