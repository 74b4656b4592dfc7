"""
Frame Sampler Tests
===================

Tests for forwarding policy, id ordering, keep-alive and statistics.
"""

import asyncio

import pytest

from chrome_stream.errors import SyncConfigError
from chrome_stream.stream.delta import DeltaDetector, DeltaResult
from chrome_stream.stream.sampler import FrameSampler
from chrome_stream.stream.source import CaptureError, RawFrame

from conftest import FakeFrameSource, make_png


class ScriptedDetector(DeltaDetector):
    """Detector with per-image latency, to force out-of-order completion."""

    def __init__(self, delays: dict) -> None:
        super().__init__()
        self.delays = delays

    async def compare_async(self, previous, current):
        await asyncio.sleep(self.delays.get(current, 0))
        return DeltaResult(changed=True, delta_percent=50.0)


@pytest.fixture
def detector():
    detector = DeltaDetector(delta_threshold=2.0)
    yield detector
    detector.shutdown()


class TestForwardingPolicy:
    """Tests for forward/drop decisions on the capture path."""

    @pytest.mark.asyncio
    async def test_first_frame_is_full_change(self, detector, white_png):
        """The first capture has no baseline and is always forwarded."""
        sampler = FrameSampler(detector)

        frame = await sampler.process(RawFrame(image_b64=white_png))

        assert frame is not None
        assert frame.frame_id == 1
        assert frame.changed is True
        assert frame.delta_percent == 100.0
        assert frame.keep_alive is False

    @pytest.mark.asyncio
    async def test_identical_frame_is_dropped(self, detector, white_png):
        sampler = FrameSampler(detector)
        await sampler.process(RawFrame(image_b64=white_png))

        frame = await sampler.process(RawFrame(image_b64=white_png))

        assert frame is None
        assert sampler.metrics.dropped_count == 1
        assert sampler.metrics.forwarded_count == 1

    @pytest.mark.asyncio
    async def test_changed_frame_is_forwarded(self, detector, white_png, black_png):
        sampler = FrameSampler(detector)
        await sampler.process(RawFrame(image_b64=white_png))

        frame = await sampler.process(RawFrame(image_b64=black_png))

        assert frame is not None
        assert frame.frame_id == 2
        assert frame.changed is True

    @pytest.mark.asyncio
    async def test_dropped_frames_still_consume_ids(self, detector, white_png, black_png):
        """Ids count captures, so they stay unique and increasing."""
        sampler = FrameSampler(detector)
        await sampler.process(RawFrame(image_b64=white_png))
        await sampler.process(RawFrame(image_b64=white_png))

        frame = await sampler.process(RawFrame(image_b64=black_png))

        assert frame.frame_id == 3
        assert sampler.current_frame_id == 3

    @pytest.mark.asyncio
    async def test_unchanged_frame_forwarded_after_keep_alive(self, detector, white_png):
        """An unchanged capture is forced through once the stream went idle."""
        sampler = FrameSampler(detector, keep_alive_ms=100)
        await sampler.process(RawFrame(image_b64=white_png))
        await asyncio.sleep(0.15)

        frame = await sampler.process(RawFrame(image_b64=white_png))

        assert frame is not None
        assert frame.changed is True
        assert frame.keep_alive is True
        assert frame.delta_percent == 0.0

    @pytest.mark.asyncio
    async def test_metadata_is_carried_through(self, detector, white_png):
        from chrome_stream.stream.frame import FrameMetadata

        sampler = FrameSampler(detector)
        metadata = FrameMetadata(device_scale_factor=2.0, scroll_offset_y=120.0)

        frame = await sampler.process(RawFrame(image_b64=white_png, metadata=metadata))

        assert frame.metadata == metadata


class TestOrdering:
    """Tests for id-ordered release."""

    @pytest.mark.asyncio
    async def test_release_order_follows_ids(self):
        """Frames reach the sink in id order even if diffs finish out of order."""
        slow, fast, medium = make_png(color=(1, 1, 1)), make_png(color=(2, 2, 2)), make_png(color=(3, 3, 3))
        detector = ScriptedDetector({slow: 0.05, fast: 0.0, medium: 0.02})
        received = []
        sampler = FrameSampler(detector, sink=lambda f: received.append(f.frame_id))

        futures = [sampler.ingest(RawFrame(image_b64=img)) for img in (slow, fast, medium)]
        frames = await asyncio.gather(*futures)

        assert received == [1, 2, 3]
        assert [f.frame_id for f in frames] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stall_release(self, white_png, black_png):
        """A sink error on one frame leaves later frames flowing."""
        detector = DeltaDetector()
        received = []

        def flaky_sink(frame):
            if frame.frame_id == 1:
                raise RuntimeError("sink unavailable")
            received.append(frame.frame_id)

        sampler = FrameSampler(detector, sink=flaky_sink)
        try:
            first = await asyncio.wait_for(sampler.process(RawFrame(image_b64=white_png)), 1)
            second = await asyncio.wait_for(sampler.process(RawFrame(image_b64=black_png)), 1)
        finally:
            detector.shutdown()

        assert first.frame_id == 1
        assert second.frame_id == 2
        assert received == [2]
        assert sampler.metrics.forwarded_count == 2

    @pytest.mark.asyncio
    async def test_frame_ingested_during_stop_is_abandoned(self):
        """Captures arriving while stop() drains are cancelled, not left pending."""
        first, second, third = make_png(color=(1, 1, 1)), make_png(color=(2, 2, 2)), make_png(color=(3, 3, 3))
        detector = ScriptedDetector({first: 0.1, second: 0.05})
        sampler = FrameSampler(detector)

        first_future = sampler.ingest(RawFrame(image_b64=first))
        stopping = asyncio.create_task(sampler.stop())
        await asyncio.sleep(0)
        second_future = sampler.ingest(RawFrame(image_b64=second))
        await stopping

        assert first_future.cancelled()
        assert second_future.cancelled()

        frame = await asyncio.wait_for(sampler.process(RawFrame(image_b64=third)), 1)
        detector.shutdown()

        assert frame.frame_id == 3


class TestKeepAlive:
    """Tests for the keep-alive timer."""

    @pytest.mark.asyncio
    async def test_keep_alive_forwards_idle_stream(self, detector, white_png):
        """With no changes, keep-alive frames keep arriving."""
        received = []
        sampler = FrameSampler(detector, keep_alive_ms=200, sink=received.append)
        sampler.start()
        try:
            await sampler.process(RawFrame(image_b64=white_png))
            await asyncio.sleep(0.75)
        finally:
            await sampler.stop()

        keep_alives = [f for f in received if f.keep_alive]
        assert len(keep_alives) >= 2
        assert all(f.changed for f in keep_alives)
        assert sampler.metrics.keep_alive_count == len(keep_alives)

    @pytest.mark.asyncio
    async def test_keep_alive_idle_without_baseline(self, detector):
        """Nothing is forced before the first capture."""
        received = []
        sampler = FrameSampler(detector, keep_alive_ms=100, sink=received.append)
        sampler.start()
        await asyncio.sleep(0.25)
        await sampler.stop()

        assert received == []

    @pytest.mark.asyncio
    async def test_keep_alive_does_not_replace_baseline(self, detector, white_png, black_png):
        """A keep-alive capture is compared, but the baseline stays put."""
        source = FakeFrameSource(capture_image=black_png)
        sampler = FrameSampler(detector, keep_alive_ms=2000, source=source)
        await sampler.process(RawFrame(image_b64=white_png))

        keep_alive = await sampler._emit_keep_alive()

        assert keep_alive.keep_alive is True
        assert keep_alive.delta_percent == 100.0

        # Still compared against the white baseline
        frame = await sampler.process(RawFrame(image_b64=white_png))
        assert frame is None

    @pytest.mark.asyncio
    async def test_stop_cancels_timer(self, detector):
        sampler = FrameSampler(detector)
        sampler.start()
        assert sampler.running

        await sampler.stop()

        assert not sampler.running

    @pytest.mark.asyncio
    async def test_continuous_identical_captures_keep_ids_ordered(self, detector, white_png):
        """A steady stream of identical captures yields periodic keep-alive frames."""
        received = []
        sampler = FrameSampler(detector, keep_alive_ms=200, sink=received.append)
        sampler.start()
        try:
            await sampler.process(RawFrame(image_b64=white_png))
            deadline = asyncio.get_running_loop().time() + 0.7
            while asyncio.get_running_loop().time() < deadline:
                sampler.ingest(RawFrame(image_b64=white_png))
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
        finally:
            await sampler.stop()

        ids = [f.frame_id for f in received]
        assert len([f for f in received if f.keep_alive]) >= 2
        assert ids == sorted(set(ids))
        assert sampler.metrics.dropped_count > 0

    @pytest.mark.asyncio
    async def test_pause_keeps_baseline(self, detector, white_png):
        sampler = FrameSampler(detector, keep_alive_ms=2000)
        sampler.start()
        try:
            await sampler.process(RawFrame(image_b64=white_png))

            await sampler.pause()

            assert not sampler.running
            assert await sampler.process(RawFrame(image_b64=white_png)) is None

            sampler.start()
            assert sampler.running
        finally:
            await sampler.stop()


class TestOnDemandCapture:

    @pytest.mark.asyncio
    async def test_capture_without_source_raises(self, detector):
        sampler = FrameSampler(detector)

        with pytest.raises(CaptureError):
            await sampler.capture_frame()

    @pytest.mark.asyncio
    async def test_capture_is_forced_and_becomes_baseline(self, detector, fake_source, white_png):
        sampler = FrameSampler(detector, source=fake_source)
        await sampler.process(RawFrame(image_b64=white_png))

        frame = await sampler.capture_frame()

        assert frame.changed is True
        assert frame.delta_percent == 100.0
        assert fake_source.capture_calls == 1
        assert await sampler.process(RawFrame(image_b64=white_png)) is None


class TestSubscribers:

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, detector, white_png, black_png):
        sampler = FrameSampler(detector)
        received = []
        unsubscribe = sampler.subscribe(received.append)

        await sampler.process(RawFrame(image_b64=white_png))
        unsubscribe()
        await sampler.process(RawFrame(image_b64=black_png))

        assert [f.frame_id for f in received] == [1]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_pipeline(self, detector, white_png):
        sampler = FrameSampler(detector)
        received = []

        def broken(frame):
            raise RuntimeError("boom")

        sampler.subscribe(broken)
        sampler.subscribe(received.append)

        frame = await sampler.process(RawFrame(image_b64=white_png))

        assert frame is not None
        assert received == [frame]


class TestStatsAndConfig:

    @pytest.mark.asyncio
    async def test_metrics(self, detector, white_png, black_png):
        sampler = FrameSampler(detector)
        await sampler.process(RawFrame(image_b64=white_png))
        await sampler.process(RawFrame(image_b64=white_png))
        await asyncio.sleep(0.01)
        await sampler.process(RawFrame(image_b64=black_png))

        stats = sampler.metrics.to_dict()
        assert stats["captured_count"] == 3
        assert stats["forwarded_count"] == 2
        assert stats["dropped_count"] == 1
        assert stats["current_frame_id"] == 3
        assert stats["avg_forward_interval_ms"] > 0

    @pytest.mark.asyncio
    async def test_reset_baseline_forces_full_change(self, detector, white_png):
        sampler = FrameSampler(detector)
        await sampler.process(RawFrame(image_b64=white_png))

        sampler.reset_baseline()
        frame = await sampler.process(RawFrame(image_b64=white_png))

        assert frame.frame_id == 2
        assert frame.delta_percent == 100.0

    @pytest.mark.asyncio
    async def test_update_config(self, detector):
        sampler = FrameSampler(detector, keep_alive_ms=2000)
        sampler.start()
        try:
            sampler.update_config(delta_threshold=5.0, keep_alive_ms=500)

            assert detector.delta_threshold == 5.0
            assert sampler.keep_alive_ms == 500
            assert sampler.running
        finally:
            await sampler.stop()

    def test_update_config_rejects_invalid_keep_alive(self, detector):
        sampler = FrameSampler(detector)

        with pytest.raises(SyncConfigError):
            sampler.update_config(keep_alive_ms=0)

    def test_rejects_invalid_keep_alive(self, detector):
        with pytest.raises(SyncConfigError):
            FrameSampler(detector, keep_alive_ms=0)
