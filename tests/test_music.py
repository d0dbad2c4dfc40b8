from datetime import timedelta

import pytest

from serenata.errors import GenerationError
from serenata.models.jobs import MUSIC_FLOW, MusicStatus, is_forward_transition
from serenata.modules.music.client import parse_callback
from serenata.modules.music.pipeline import (
    FinalizeTrackStage,
    MusicDeliveryStage,
    MusicLyricsStage,
    StylePromptStage,
    SubmissionStage,
)
from tests.conftest import FakeGenerator, FakeMusicClient, FakeStorage, T0, make_lead, music_job

LYRICS = "Rosa, tus boleros llenan la cocina..."
STYLE = "romantic bolero, 1990s latin pop, lush strings, warm male baritone, slow tempo"


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def music_client():
    return FakeMusicClient()


@pytest.fixture
def finalizer(settings, store, storage, transcoder, clock):
    return FinalizeTrackStage(settings, store, storage, transcoder, clock)


def _complete_callback(task_id="task-123", audio_url="https://cdn.provider/task-123.mp3"):
    return {
        "code": 200,
        "msg": "All generated successfully.",
        "data": {
            "callbackType": "complete",
            "task_id": task_id,
            "data": [{"id": "a1", "audio_url": audio_url, "duration": 198.4}],
        },
    }


class TestMusicLyricsStage:

    async def test_moves_to_pending_prompt(self, settings, store, generator, clock):
        generator.replies = [LYRICS]
        job_id = store.add_job("music", music_job())

        await MusicLyricsStage(settings, store, generator, clock).tick()

        job = store.job("music", job_id)
        assert job.status == MusicStatus.PENDING_PROMPT.value
        assert job.lyrics == LYRICS

    async def test_respects_batch_size(self, settings, store, generator, clock):
        settings.batch_size = 1
        generator.replies = [LYRICS, LYRICS]
        first = store.add_job("music", music_job())
        second = store.add_job("music", music_job(created_at=T0 + timedelta(seconds=1)))

        await MusicLyricsStage(settings, store, generator, clock).tick()

        assert store.job("music", first).status == MusicStatus.PENDING_PROMPT.value
        assert store.job("music", second).status == MusicStatus.PENDING_LYRICS.value


class TestStylePromptStage:

    async def test_two_pass_style_prompt(self, settings, store, generator, clock):
        generator.replies = ["Un bolero romántico de los noventa con cuerdas...", STYLE]
        job_id = store.add_job("music", music_job(status=MusicStatus.PENDING_PROMPT.value, lyrics=LYRICS))

        await StylePromptStage(settings, store, generator, clock).tick()

        job = store.job("music", job_id)
        assert job.status == MusicStatus.PENDING_GENERATION.value
        assert job.style_prompt == STYLE
        assert len(generator.calls) == 2
        draft_prompt = generator.calls[0][1]
        assert "Luis Miguel" in draft_prompt
        assert "derechos de autor" in draft_prompt
        assert "120" in generator.calls[1][1]

    async def test_style_prompt_is_capped_at_120_chars(self, settings, store, generator, clock):
        long_style = ", ".join(["very long descriptive style term number %d" % i for i in range(10)])
        generator.replies = ["borrador", long_style]
        job_id = store.add_job("music", music_job(status=MusicStatus.PENDING_PROMPT.value, lyrics=LYRICS))

        await StylePromptStage(settings, store, generator, clock).tick()

        style = store.job("music", job_id).style_prompt
        assert 0 < len(style) <= 120
        assert style.startswith("very long descriptive style term number 0")

    async def test_empty_draft_is_retried(self, settings, store, generator, clock):
        generator.replies = [""]
        job_id = store.add_job("music", music_job(status=MusicStatus.PENDING_PROMPT.value, lyrics=LYRICS))

        await StylePromptStage(settings, store, generator, clock).tick()

        job = store.job("music", job_id)
        assert job.status == MusicStatus.PENDING_PROMPT.value
        assert job.attempts == 1


class TestSubmissionStage:

    def _job(self, store, **kwargs):
        return store.add_job("music", music_job(
            status=MusicStatus.PENDING_GENERATION.value, lyrics=LYRICS, style_prompt=STYLE, **kwargs,
        ))

    async def test_submits_and_stores_task_id(self, settings, store, music_client, clock):
        job_id = self._job(store)

        await SubmissionStage(settings, store, music_client, clock).tick()

        job = store.job("music", job_id)
        assert job.status == MusicStatus.GENERATING.value
        assert job.task_id == "task-123"
        submission = music_client.submissions[0]
        assert submission["title"] == "cumpleaños de mi mamá"
        assert len(submission["title"]) <= 30
        assert submission["callback_url"] == settings.music_callback_url
        assert submission["lyrics"] == LYRICS

    async def test_title_is_truncated(self, settings, store, music_client, clock):
        self._job(store, purpose="serenata para el aniversario número veinticinco de mis papás")

        await SubmissionStage(settings, store, music_client, clock).tick()

        assert len(music_client.submissions[0]["title"]) <= 30

    async def test_job_is_generating_while_submit_runs(self, settings, store, clock):
        job_id = self._job(store)
        seen = {}

        class PeekingClient(FakeMusicClient):
            async def submit(inner, *args, **kwargs):
                seen["status"] = store.job("music", job_id).status
                return "task-9"

        await SubmissionStage(settings, store, PeekingClient(), clock).tick()

        assert seen["status"] == MusicStatus.GENERATING.value

    async def test_submit_failure_is_terminal(self, settings, store, clock):
        client = FakeMusicClient(error=GenerationError("Music API error: insufficient credits"))
        stage = SubmissionStage(settings, store, client, clock)
        job_id = self._job(store)

        await stage.tick()

        job = store.job("music", job_id)
        assert job.status == MusicStatus.ERROR.value
        assert job.error_message == "Music API error: insufficient credits"

        clock.advance(days=1)
        await stage.tick()
        assert len(client.submissions) == 1


class TestFinalizeTrack:

    def _generating(self, store, **kwargs):
        return store.add_job("music", music_job(
            status=MusicStatus.GENERATING.value, lyrics=LYRICS, style_prompt=STYLE, task_id="task-123", **kwargs,
        ))

    async def test_callback_produces_full_track_and_watermarked_preview(self, finalizer, store, storage, transcoder, settings):
        job_id = self._generating(store)
        task_id, audio_url, error = parse_callback(_complete_callback())

        assert await finalizer.handle_callback(task_id, audio_url, error)

        job = store.job("music", job_id)
        assert job.status == MusicStatus.PENDING_SEND.value
        assert job.full_track_url == f"https://cdn.test/songs/{job_id}/full.mp3"
        assert job.clip_url == f"https://cdn.test/songs/{job_id}/preview.mp3"
        assert storage.uploads[f"songs/{job_id}/preview.mp3"] == b"preview"
        assert transcoder.calls == [
            ("clip", 0, 35),
            ("overlay", settings.watermark_path, 1),
        ]

    async def test_duplicate_callback_is_ignored(self, finalizer, store, transcoder):
        self._generating(store)
        payload = parse_callback(_complete_callback())

        assert await finalizer.handle_callback(*payload)
        assert not await finalizer.handle_callback(*payload)
        assert len(transcoder.calls) == 2

    async def test_intermediate_callback_does_nothing(self, finalizer, store):
        job_id = self._generating(store)
        body = _complete_callback()
        body["data"]["callbackType"] = "first"

        assert not await finalizer.handle_callback(*parse_callback(body))
        assert store.job("music", job_id).status == MusicStatus.GENERATING.value

    async def test_failed_generation_callback_marks_error(self, finalizer, store):
        job_id = self._generating(store)
        body = {"code": 531, "msg": "Generation failed", "data": {"task_id": "task-123"}}

        await finalizer.handle_callback(*parse_callback(body))

        job = store.job("music", job_id)
        assert job.status == MusicStatus.ERROR.value
        assert job.error_message == "Generation failed"

    async def test_unknown_task_is_ignored(self, finalizer, store):
        assert not await finalizer.handle_callback("nope", "https://x/y.mp3", None)

    async def test_polling_retries_a_failed_finalize(self, settings, store, transcoder, clock):
        broken = FakeStorage(fail_download=True)
        job_id = self._generating(store)
        stage = FinalizeTrackStage(settings, store, broken, transcoder, clock)

        with pytest.raises(GenerationError):
            await stage.handle_callback("task-123", "https://cdn.provider/task-123.mp3", None)

        job = store.job("music", job_id)
        assert job.status == MusicStatus.GENERATING.value
        assert job.audio_source_url == "https://cdn.provider/task-123.mp3"
        assert job.attempts == 1

        broken.fail_download = False
        clock.advance(minutes=5)
        assert await stage.tick() == 1
        assert store.job("music", job_id).status == MusicStatus.PENDING_SEND.value

    async def test_polling_waits_for_the_callback(self, finalizer, store):
        job_id = self._generating(store)

        assert await finalizer.tick() == 0
        assert store.job("music", job_id).status == MusicStatus.GENERATING.value


class TestMusicDelivery:

    def _pending_send(self, store, **kwargs):
        data = {
            "status": MusicStatus.PENDING_SEND.value,
            "lyrics": LYRICS,
            "clip_url": "https://cdn.test/preview.mp3",
        }
        data.update(kwargs)
        return store.add_job("music", music_job(**data))

    async def test_cooldown_from_creation(self, settings, store, channel, provider, clock):
        lead_id = make_lead(store)
        job_id = self._pending_send(store, lead_id=lead_id)
        stage = MusicDeliveryStage(settings, store, channel, clock)

        clock.advance(minutes=14)
        assert await stage.tick() == 0
        assert provider.sent == []

        clock.advance(minutes=2)
        assert await stage.tick() == 1

        assert [kind for kind, _, _ in provider.sent] == ["text", "audio"]
        assert LYRICS in provider.sent[0][2]
        assert provider.sent[1][2] == "https://cdn.test/preview.mp3"

        job = store.job("music", job_id)
        assert job.status == MusicStatus.SENT.value
        assert job.sent_at == clock()
        lead = store.leads[lead_id]
        assert settings.music_completion_label in lead.labels
        assert lead.active_sequences[-1].trigger == settings.music_completion_trigger

    async def test_uses_job_phone_without_lead(self, settings, store, channel, provider, clock):
        self._pending_send(store, lead_phone="5512345678")
        clock.advance(minutes=20)

        await MusicDeliveryStage(settings, store, channel, clock).tick()

        assert {to for _, to, _ in provider.sent} == {"525512345678"}

    async def test_missing_clip_is_skipped(self, settings, store, channel, provider, clock):
        job_id = self._pending_send(store, lead_phone="525512345678", clip_url=None)
        clock.advance(minutes=20)

        assert await MusicDeliveryStage(settings, store, channel, clock).tick() == 0

        assert provider.sent == []
        assert store.job("music", job_id).status == MusicStatus.PENDING_SEND.value


class TestMusicFlow:

    async def test_full_pipeline_only_moves_forward(self, settings, store, channel, storage, transcoder, clock):
        generator = FakeGenerator(LYRICS, "borrador de estilo", STYLE)
        client = FakeMusicClient()
        finalizer = FinalizeTrackStage(settings, store, storage, transcoder, clock)
        stages = [
            MusicLyricsStage(settings, store, generator, clock),
            StylePromptStage(settings, store, generator, clock),
            SubmissionStage(settings, store, client, clock),
            finalizer,
            MusicDeliveryStage(settings, store, channel, clock),
        ]
        lead_id = make_lead(store)
        job_id = store.add_job("music", music_job(lead_id=lead_id))
        history = [store.job("music", job_id).status]

        for minute in range(20):
            for stage in stages:
                await stage.tick()
                history.append(store.job("music", job_id).status)
            if minute == 2:
                await finalizer.handle_callback(*parse_callback(_complete_callback()))
                history.append(store.job("music", job_id).status)
            clock.advance(minutes=1)

        for old, new in zip(history, history[1:]):
            assert is_forward_transition(old, new), f"{old} -> {new}"
        assert history[-1] == MusicStatus.SENT.value
        assert [s.value for s in MUSIC_FLOW if s.value in history] == [s.value for s in MUSIC_FLOW]


class TestTransitions:

    @pytest.mark.parametrize("old,new,allowed", [
        ("pending_lyrics", "pending_prompt", True),
        ("generating", "pending_send", True),
        ("pending_send", "generating", False),
        ("sent", "pending_lyrics", False),
        ("pending_generation", "error", True),
        ("generating", "error", True),
        ("sent", "error", False),
        ("error", "pending_generation", False),
    ])
    def test_is_forward_transition(self, old, new, allowed):
        assert is_forward_transition(old, new) is allowed


class TestBacklog:

    async def test_jobs_awaiting_callback_do_not_block_finalize(self, settings, store, storage, transcoder, clock):
        settings.batch_size = 1
        stage = FinalizeTrackStage(settings, store, storage, transcoder, clock)
        waiting = [
            store.add_job("music", music_job(
                status=MusicStatus.GENERATING.value, task_id=f"task-{i}", created_at=T0 - timedelta(hours=i + 1),
            ))
            for i in range(3)
        ]
        job_id = store.add_job("music", music_job(
            status=MusicStatus.GENERATING.value, task_id="task-ready",
            audio_source_url="https://cdn.provider/task-ready.mp3",
        ))

        assert await stage.tick() == 1

        assert store.job("music", job_id).status == MusicStatus.PENDING_SEND.value
        assert all(store.job("music", j).status == MusicStatus.GENERATING.value for j in waiting)

    async def test_incomplete_jobs_do_not_block_delivery(self, settings, store, channel, provider, clock):
        settings.batch_size = 2
        stage = MusicDeliveryStage(settings, store, channel, clock)
        for i in range(4):
            store.add_job("music", music_job(
                status=MusicStatus.PENDING_SEND.value, lyrics=LYRICS, clip_url=None,
                lead_phone="525500000001", created_at=T0 - timedelta(hours=i + 1),
            ))
        job_id = store.add_job("music", music_job(
            status=MusicStatus.PENDING_SEND.value, lyrics=LYRICS, clip_url="https://cdn.test/preview.mp3",
            lead_phone="525512345678",
        ))
        clock.advance(minutes=20)

        assert await stage.tick() == 1

        assert store.job("music", job_id).status == MusicStatus.SENT.value
        assert [kind for kind, _, _ in provider.sent] == ["text", "audio"]

    async def test_submission_skips_jobs_missing_a_style(self, settings, store, clock):
        settings.batch_size = 1
        client = FakeMusicClient()
        stage = SubmissionStage(settings, store, client, clock)
        blocked = store.add_job("music", music_job(
            status=MusicStatus.PENDING_GENERATION.value, lyrics=LYRICS, created_at=T0 - timedelta(hours=1),
        ))
        job_id = store.add_job("music", music_job(
            status=MusicStatus.PENDING_GENERATION.value, lyrics=LYRICS, style_prompt=STYLE,
        ))

        await stage.tick()

        assert store.job("music", job_id).task_id == "task-123"
        assert store.job("music", blocked).status == MusicStatus.PENDING_GENERATION.value
