"""GatedAudioTrack / LocalMedia / MediaCapture / SourcePlayback 테스트."""

from fractions import Fraction

import numpy as np
import pytest
from av import AudioFrame

from conftest import FakeTrack
from modules.session import media as media_module
from modules.session.media import CaptureError, LocalMedia, MediaCapture, SourcePlayback
from modules.session.tracks import GatedAudioTrack


class ToneTrack(FakeTrack):
    def __init__(self):
        super().__init__("audio")
        self.pts = 0

    async def recv(self):
        samples = np.full((1, 960), 1000, dtype=np.int16)
        frame = AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.sample_rate = 48000
        frame.pts = self.pts
        frame.time_base = Fraction(1, 48000)
        self.pts += 960
        return frame


class TestGatedAudioTrack:
    async def test_closed_gate_emits_silence_with_same_timing(self):
        track = GatedAudioTrack(ToneTrack())

        frame = await track.recv()

        assert not frame.to_ndarray().any()
        assert frame.samples == 960
        assert frame.pts == 0
        assert frame.sample_rate == 48000

    async def test_open_gate_passes_audio(self):
        track = GatedAudioTrack(ToneTrack())
        await track.recv()

        track.open = True
        frame = await track.recv()

        assert frame.to_ndarray().any()
        assert frame.pts == 960

    def test_stop_stops_source(self):
        source = ToneTrack()
        track = GatedAudioTrack(source)
        track.stop()
        assert source.readyState == "ended"


class TestLocalMedia:
    def test_receive_only_has_no_tracks(self):
        media = LocalMedia.receive_only()
        assert media.tracks() == {}
        assert media.is_live
        media.transmitting = True
        assert media.transmitting is False

    def test_stop_is_idempotent(self):
        media = LocalMedia(audio=GatedAudioTrack(FakeTrack("audio")), video=FakeTrack("video"))
        media.stop()
        media.stop()
        assert not media.is_live
        assert media.video.readyState == "ended"


class FakePlayer:
    def __init__(self, audio=None, video=None):
        self.audio = audio
        self.video = video


class PlayerFactory:
    """장치 경로별로 미리 만든 플레이어를 돌려주거나 예외를 던지는 MediaPlayer 대체."""

    def __init__(self, players):
        self.players = players
        self.opened = []

    def __call__(self, file, format=None, options=None):
        self.opened.append(file)
        outcome = self.players[file]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestMediaCapture:
    async def test_opens_audio_and_video(self, monkeypatch):
        capture = MediaCapture()
        audio, video = FakeTrack("audio"), FakeTrack("video")
        monkeypatch.setattr(media_module, "MediaPlayer", PlayerFactory({
            capture.config.AUDIO_DEVICE: FakePlayer(audio=audio),
            capture.config.VIDEO_DEVICE: FakePlayer(video=video),
        }))

        media = await capture.acquire(video=True)

        assert media.audio.track is audio
        assert media.video is video
        assert media.transmitting is False

    async def test_video_failure_releases_audio(self, monkeypatch):
        capture = MediaCapture()
        audio = FakeTrack("audio")
        monkeypatch.setattr(media_module, "MediaPlayer", PlayerFactory({
            capture.config.AUDIO_DEVICE: FakePlayer(audio=audio),
            capture.config.VIDEO_DEVICE: OSError("camera busy"),
        }))

        with pytest.raises(CaptureError):
            await capture.acquire(video=True)

        assert audio.readyState == "ended"

    async def test_missing_audio_track_releases_players(self, monkeypatch):
        capture = MediaCapture()
        stray, video = FakeTrack("video"), FakeTrack("video")
        monkeypatch.setattr(media_module, "MediaPlayer", PlayerFactory({
            capture.config.AUDIO_DEVICE: FakePlayer(video=stray),
            capture.config.VIDEO_DEVICE: FakePlayer(video=video),
        }))

        with pytest.raises(CaptureError):
            await capture.acquire(video=True)

        assert stray.readyState == "ended"
        assert video.readyState == "ended"


class TestSourcePlayback:
    def test_duck_notifies_only_on_change(self):
        changes = []
        playback = SourcePlayback(on_change=lambda source, volume: changes.append(volume))

        playback.duck(True)
        playback.duck(True)
        playback.duck(False)

        assert changes == [0.2, 1.0]
