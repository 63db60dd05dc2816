import asyncio
import math
import threading
import unittest

import numpy as np

from proctor.config import EngineConfig, HeadPoseConfig, IngestConfig
from proctor.errors import InvalidInput, TransientDetectionError
from proctor.fusion.collaborators import InMemoryStore
from proctor.session import ExamSession
from proctor.types import FrameObservation, GazeDirection, Modality, Severity

from test_algorithms import pose_matrix


class CountingAnalysis:
    def __init__(self):
        self.calls = []

    async def analyze(self, session_id, events):
        self.calls.append(list(events))
        return {"session_id": session_id, "event_count": len(events)}


class BlockingVision:
    """Stands in for the landmarker: observe() parks in a worker thread until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.closed = False

    def observe(self, rgb, ts):
        self.entered.set()
        self.release.wait(5.0)
        return FrameObservation(timestamp=ts, face_count=1, matrix=pose_matrix(pitch=2.0))

    def close(self):
        self.closed = True


def frame(ts: float, pitch: float = 0.0, faces: int = 1, **kw) -> FrameObservation:
    matrix = pose_matrix(pitch=pitch) if faces else None
    return FrameObservation(timestamp=ts, face_count=faces, matrix=matrix, **kw)


def voiced_audio(seconds: float, sr: int = 16000) -> np.ndarray:
    t = np.arange(int(seconds * sr)) / float(sr)
    return 0.2 * np.sin(2 * math.pi * 900.0 * t)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.analysis = CountingAnalysis()
        self.store = InMemoryStore()
        self.sess = ExamSession("EXM_TEST", cfg=EngineConfig(), analysis=self.analysis, store=self.store)
        await self.sess.start()

    async def asyncTearDown(self):
        await self.sess.close()


class TestPhoneScenario(SessionTestCase):
    async def test_looking_down_raises_one_phone_event(self):
        # ~3 s of frames at 0.6 s spacing, mostly looking down, silent audio and visible tab
        await self.sess.submit_audio(np.zeros(16000 * 3), 0.0)
        results = []
        for i, pitch in enumerate([22.0, 23.0, 21.0, 24.0, 25.0, 19.0]):
            results.append(await self.sess.submit_observation(frame(i * 0.6, pitch)))
        await self.sess.settle()

        self.assertEqual([r.phone_detected for r in results], [False, False, True, False, False, False])
        self.assertEqual(results[0].gaze_direction, GazeDirection.DOWN)
        self.assertEqual(results[5].gaze_direction, GazeDirection.CENTER)
        events = self.sess.aggregator.events
        self.assertEqual([(e.modality, e.severity) for e in events], [(Modality.PHONE, Severity.HIGH)])
        self.assertAlmostEqual(events[0].timestamp, 1.2)
        self.assertEqual(len(self.analysis.calls), 1)

        await self.sess.close()
        # the escalation already covered every event
        self.assertEqual(len(self.analysis.calls), 1)
        self.assertEqual(len(self.store.events["EXM_TEST"]), 1)

    async def test_absent_face_counts_slower(self):
        out = [await self.sess.submit_observation(frame(i * 0.2, faces=0)) for i in range(7)]
        self.assertEqual([r.phone_detected for r in out], [False] * 6 + [True])
        self.assertTrue(all(r.gaze_direction is GazeDirection.UNDETECTED for r in out))
        await self.sess.settle()
        mods = sorted(e.modality.value for e in self.sess.aggregator.events)
        self.assertEqual(mods, ["face", "phone"])


class TestBadFrames(SessionTestCase):
    async def test_short_matrix_rejected_without_side_effects(self):
        await self.sess.submit_observation(frame(0.0, 30.0))
        await self.sess.submit_observation(frame(0.1, 30.0))
        self.assertEqual(self.sess.phone.state.counter, 4)

        bad = FrameObservation(timestamp=0.2, face_count=1, matrix=[0.0] * 12)
        res = await self.sess.submit_observation(bad)
        self.assertEqual(res.error, "invalid_input")
        self.assertIsNone(res.head_pose)
        self.assertEqual(res.gaze_direction, GazeDirection.UNDETECTED)
        self.assertFalse(res.phone_detected)
        self.assertEqual(self.sess.phone.state.counter, 4)
        self.assertEqual(self.sess.stats.invalid_frames, 1)

    async def test_vision_error_is_not_an_empty_frame(self):
        await self.sess.submit_observation(frame(0.0, 30.0))
        for i in range(10):
            res = await self.sess.submit_observation(
                FrameObservation(timestamp=0.1 * (i + 1), status="error", error="graph failed"))
            self.assertEqual(res.error, "vision_error")
            self.assertEqual(res.gaze_direction, GazeDirection.UNDETECTED)
        self.assertEqual(self.sess.phone.state.counter, 2)
        await self.sess.settle()
        # no "face missing" event either
        self.assertEqual(self.sess.aggregator.events, [])
        self.assertEqual(self.sess.stats.frame_errors, 10)

    async def test_multiple_faces(self):
        res = await self.sess.submit_observation(frame(0.0, faces=2))
        self.assertTrue(res.multiple_faces)
        await self.sess.settle()
        self.assertEqual([e.modality for e in self.sess.aggregator.events], [Modality.MULTI_FACE])


class TestAudioAndFocus(SessionTestCase):
    async def test_sustained_speech_is_one_medium_event(self):
        for k in range(5):
            await self.sess.submit_audio(voiced_audio(0.5), k * 0.5)
        await self.sess.submit_audio(np.zeros(1600), 2.5)
        await self.sess.settle()
        speech = [e for e in self.sess.aggregator.events if e.modality is Modality.SPEECH]
        self.assertEqual(len(speech), 1)
        self.assertEqual(speech[0].severity, Severity.MEDIUM)
        self.assertTrue(speech[0].metadata["sustained"])
        self.assertEqual(self.sess.stats.audio_evicted, 0)

    async def test_tab_switch(self):
        self.assertIsNone(self.sess.on_visibility_change(True, 1.0))
        self.assertIsNotNone(self.sess.on_visibility_change(False, 2.0))
        self.assertIsNotNone(self.sess.on_visibility_change(True, 6.0))
        await self.sess.settle()
        tabs = [e for e in self.sess.aggregator.events if e.modality is Modality.TAB]
        self.assertEqual([e.metadata["transition"] for e in tabs], ["hidden", "visible"])

    async def test_bad_audio_rejected(self):
        with self.assertRaises(InvalidInput):
            await self.sess.submit_audio([], 0.0)
        with self.assertRaises(InvalidInput):
            await self.sess.submit_audio(np.zeros((2, 512)), 0.0)


class TestConcurrency(unittest.IsolatedAsyncioTestCase):
    async def test_audio_overflow_evicts_oldest(self):
        cfg = EngineConfig(ingest=IngestConfig(audio_queue_size=2, audio_overflow="evict_oldest"))
        sess = ExamSession("EXM_Q", cfg=cfg, analysis=CountingAnalysis())
        # no consumer running, so the queue can only fill up
        queued = await sess.submit_audio(np.zeros(512 + 256 * 4), 0.0)
        self.assertEqual(queued, 5)
        self.assertEqual(sess.stats.audio_evicted, 3)
        self.assertEqual(sess._audio_q.qsize(), 2)
        kept = [sess._audio_q.get_nowait().timestamp for _ in range(2)]
        self.assertAlmostEqual(kept[0], 3 * 256 / 16000)
        await sess.close()

    async def test_audio_block_waits_for_room(self):
        cfg = EngineConfig(ingest=IngestConfig(audio_queue_size=1, audio_overflow="block", put_timeout_s=1.0))
        sess = ExamSession("EXM_B1", cfg=cfg, analysis=CountingAnalysis())
        taken = []

        async def slow_consumer():
            for _ in range(2):
                await asyncio.sleep(0.01)
                taken.append((await sess._audio_q.get()).timestamp)
                sess._audio_q.task_done()

        consumer = asyncio.ensure_future(slow_consumer())
        queued = await sess.submit_audio(np.zeros(512 + 256), 0.0)
        await consumer
        self.assertEqual(queued, 2)
        self.assertEqual(sess.stats.audio_evicted, 0)
        self.assertEqual(len(taken), 2)
        self.assertAlmostEqual(taken[1], 256 / 16000)
        await sess.close()

    async def test_audio_block_evicts_after_timeout(self):
        cfg = EngineConfig(ingest=IngestConfig(audio_queue_size=1, audio_overflow="block", put_timeout_s=0.01))
        sess = ExamSession("EXM_B2", cfg=cfg, analysis=CountingAnalysis())
        # nobody consumes, so the second window waits out the timeout and replaces the first
        queued = await sess.submit_audio(np.zeros(512 + 256), 0.0)
        self.assertEqual(queued, 2)
        self.assertEqual(sess.stats.audio_evicted, 1)
        self.assertEqual(sess._audio_q.qsize(), 1)
        self.assertAlmostEqual(sess._audio_q.get_nowait().timestamp, 256 / 16000)
        await sess.close()

    async def test_head_pose_order_from_config(self):
        sess = ExamSession("EXM_O", cfg=EngineConfig(head_pose=HeadPoseConfig(euler_order="XYZ")),
                           analysis=CountingAnalysis())
        self.assertEqual(sess.head_pose.euler_order, "XYZ")
        await sess.start()
        res = await sess.submit_observation(frame(0.0, 25.0))
        self.assertAlmostEqual(res.head_pose.pitch, 25.0, places=4)
        self.assertEqual(res.gaze_direction, GazeDirection.DOWN)
        await sess.close()

    async def test_frame_dropped_while_busy(self):
        vision = BlockingVision()
        sess = ExamSession("EXM_V", analysis=CountingAnalysis(), vision=vision)
        await sess.start()
        img = np.zeros((4, 4, 3), dtype=np.uint8)
        first = asyncio.ensure_future(sess.submit_image(img, 1.0))
        self.assertTrue(await asyncio.to_thread(vision.entered.wait, 5.0))
        self.assertIsNone(await sess.submit_image(img, 1.1))
        self.assertIsNone(await sess.submit_observation(frame(1.1)))
        self.assertEqual(sess.stats.frames_dropped, 2)
        vision.release.set()
        res = await first
        self.assertTrue(res.face_detected)
        await sess.close()
        self.assertTrue(vision.closed)

    async def test_nothing_after_close(self):
        analysis = CountingAnalysis()
        sess = ExamSession(analysis=analysis)
        self.assertTrue(sess.id.startswith("EXM_"))
        await sess.start()
        sess.on_visibility_change(False, 1.0)
        final = await sess.close()
        self.assertTrue(final["closed"])
        self.assertEqual(final["fusion"]["event_count"], 1)
        self.assertEqual(len(analysis.calls), 1)

        self.assertIsNone(await sess.submit_observation(frame(2.0, 30.0)))
        self.assertIsNone(sess.on_visibility_change(True, 3.0))
        self.assertEqual(await sess.submit_audio(np.zeros(1024), 3.0), 0)
        with self.assertRaises(TransientDetectionError):
            sess.process_frame(frame(2.0))
        self.assertEqual(len(sess.events()), 1)
        self.assertEqual(len(analysis.calls), 1)

    async def test_sessions_are_isolated(self):
        a = ExamSession("A", analysis=CountingAnalysis())
        b = ExamSession("B", analysis=CountingAnalysis())
        await a.start()
        await b.start()
        for i in range(3):
            await a.submit_observation(frame(i * 0.1, 30.0))
        self.assertEqual(b.phone.state.counter, 0)
        await a.settle()
        self.assertEqual(len(a.events()), 1)
        self.assertEqual(b.events(), [])
        await a.close()
        await b.close()


if __name__ == "__main__":
    unittest.main()
