import asyncio
import logging

from serenata.modules.engine.scheduler import SequenceEngine
from serenata.services import build_services, missing_funnel_media
from tests.conftest import FakeGenerator, FakeMusicClient, lyrics_job, make_lead, music_job


class CountingStage:
    def __init__(self, name, result=0, error=None):
        self.name = name
        self.result = result
        self.error = error
        self.ticks = 0

    async def tick(self):
        self.ticks += 1
        if self.error:
            raise self.error
        return self.result


class TestSequenceEngine:

    async def test_run_once_runs_every_stage(self, settings):
        stages = [CountingStage("a", 2), CountingStage("b", 0)]
        engine = SequenceEngine(settings, stages)

        assert await engine.run_once() == {"a": 2, "b": 0}
        assert [s.ticks for s in stages] == [1, 1]

    async def test_failing_stage_does_not_stop_the_others(self, settings):
        stages = [CountingStage("broken", error=RuntimeError("db down")), CountingStage("ok", 1)]
        engine = SequenceEngine(settings, stages)

        assert await engine.run_once() == {"broken": 0, "ok": 1}

    async def test_start_and_stop(self, settings):
        settings.tick_interval_seconds = 0.01
        stages = [CountingStage("a"), CountingStage("b", error=RuntimeError("flaky"))]
        engine = SequenceEngine(settings, stages)

        engine.start()
        assert engine.running
        await asyncio.sleep(0.05)
        await engine.stop()

        assert not engine.running
        assert all(s.ticks >= 2 for s in stages)


class TestWiredEngine:

    async def test_stage_order_and_names(self, settings, store, provider, storage, transcoder, clock):
        services = build_services(
            settings, store, provider=provider, generator=FakeGenerator(), music_client=FakeMusicClient(),
            storage=storage, transcoder=transcoder, clock=clock,
        )

        results = await services.engine.run_once()

        assert list(results) == [
            "sequences",
            "lyrics-generate",
            "lyrics-send",
            "music-lyrics",
            "music-style",
            "music-submit",
            "music-finalize",
            "music-send",
        ]

    async def test_one_pass_advances_independent_pipelines(self, settings, store, provider, storage, transcoder, clock):
        generator = FakeGenerator("letra de Carlos", "letra de Rosa")
        services = build_services(
            settings, store, provider=provider, generator=generator, music_client=FakeMusicClient(),
            storage=storage, transcoder=transcoder, clock=clock,
        )
        lead_id = make_lead(store)
        lyrics_id = store.add_job("lyrics", lyrics_job(lead_id=lead_id))
        music_id = store.add_job("music", music_job(lead_id=lead_id))

        await services.engine.run_once()

        assert store.job("lyrics", lyrics_id).status == "pending_send"
        assert store.job("music", music_id).status == "pending_prompt"


class TestFunnelMediaCheck:

    def test_warns_about_missing_intro_media(self, settings, caplog):
        settings.intro_video_url = ""

        with caplog.at_level(logging.WARNING, logger="serenata.services"):
            assert missing_funnel_media(settings) == ["intro_video_url"]

        assert "INTRO_VIDEO_URL is not set" in caplog.text

    def test_configured_media_is_silent(self, settings, caplog):
        with caplog.at_level(logging.WARNING, logger="serenata.services"):
            assert missing_funnel_media(settings) == []

        assert caplog.records == []
