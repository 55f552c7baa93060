#!/usr/bin/env python3
"""
Tests for the default collaborators: dubbing client, ffmpeg merger and
media fetcher. Network and subprocess calls are mocked.
"""

import sys
import json
import tempfile
import subprocess
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from autodub.core.constants import ErrorCode
from autodub.core.error_codes import JobError
from autodub.core.models_sqlite import JobChunk, PipelineConfig
from autodub.core.translate_chunk import DubbingClient
from autodub.core.merge import FfmpegMerger, concatenate_videos
from autodub.core.download_video import MediaFetcher, video_info_from_metadata


def make_response(status=200, payload=None, content=b"", text=""):
    resp = mock.MagicMock()
    resp.status_code = status
    resp.text = text
    resp.json.return_value = payload if payload is not None else {}
    resp.iter_content.return_value = [content] if content else []
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestDubbingClient(unittest.TestCase):
    """Test the submit / poll / download cycle against a mocked session."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.chunk = self.root / "chunk_001.mp4"
        self.chunk.write_bytes(b"video")
        self.session = mock.MagicMock()
        self.sleeps = []
        self.client = DubbingClient("secret-key", api_base="https://dub.test/v1",
                                    poll_interval=5, max_wait=20,
                                    session=self.session, sleep=self.sleeps.append)
        self.config = PipelineConfig(target_language='fr', source_language='en')

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_translate_happy_path(self):
        self.session.request.side_effect = [
            make_response(payload={'dubbing_id': 'd-1'}),
            make_response(payload={'status': 'dubbing'}),
            make_response(payload={'status': 'dubbed'}),
            make_response(content=b"mp3-bytes"),
        ]

        out = self.client.translate(self.chunk, self.root / "dubbed", 1, self.config)

        self.assertEqual(out, self.root / "dubbed" / "chunk_001_dubbed.mp3")
        self.assertEqual(out.read_bytes(), b"mp3-bytes")
        self.assertEqual(self.sleeps, [5])

        calls = self.session.request.call_args_list
        method, url = calls[0].args
        self.assertEqual((method, url), ('POST', "https://dub.test/v1/dubbing"))
        self.assertEqual(calls[0].kwargs['headers'], {"xi-api-key": "secret-key"})
        self.assertEqual(calls[0].kwargs['data'],
                         {'target_lang': 'fr', 'watermark': 'false', 'source_lang': 'en'})
        self.assertEqual(calls[1].args, ('GET', "https://dub.test/v1/dubbing/d-1"))
        self.assertEqual(calls[3].args, ('GET', "https://dub.test/v1/dubbing/d-1/audio/fr"))

    def test_rate_limit_backoff(self):
        self.session.request.side_effect = [
            make_response(status=429),
            make_response(status=429),
            make_response(payload={'status': 'dubbed'}),
        ]
        self.assertEqual(self.client.get_status("d-1"), {'status': 'dubbed'})
        self.assertEqual(len(self.sleeps), 2)
        self.assertTrue(1.8 <= self.sleeps[0] <= 2.2)
        self.assertTrue(3.6 <= self.sleeps[1] <= 4.4)

    def test_rate_limit_exhausted(self):
        self.session.request.return_value = make_response(status=429)
        with self.assertRaises(JobError) as ctx:
            self.client.get_status("d-1")
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)
        self.assertEqual(self.session.request.call_count, 5)

    def test_provider_failure_is_not_retryable(self):
        self.session.request.return_value = make_response(payload={'status': 'failed', 'error': 'no speech'})
        with self.assertRaises(JobError) as ctx:
            self.client.wait_for_completion("d-1")
        self.assertFalse(ctx.exception.retryable)
        self.assertIn("no speech", ctx.exception.message)

    def test_poll_timeout(self):
        self.session.request.return_value = make_response(payload={'status': 'dubbing'})
        with self.assertRaises(JobError) as ctx:
            self.client.wait_for_completion("d-1")
        self.assertEqual(ctx.exception.code, ErrorCode.DUBBING_TIMEOUT)
        self.assertEqual(self.sleeps, [5, 5, 5, 5])

    def test_http_errors(self):
        self.session.request.return_value = make_response(status=400, text="bad language")
        with self.assertRaises(JobError) as ctx:
            self.client.get_status("d-1")
        self.assertEqual(ctx.exception.code, ErrorCode.DUBBING_API)
        self.assertFalse(ctx.exception.retryable)
        self.assertNotIn("secret-key", ctx.exception.message)

        self.session.request.return_value = make_response(status=503)
        with self.assertRaises(JobError) as ctx:
            self.client.get_status("d-1")
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)

        self.session.request.side_effect = requests.exceptions.ConnectionError()
        with self.assertRaises(JobError) as ctx:
            self.client.get_status("d-1")
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)

    def test_missing_dubbing_id(self):
        self.session.request.return_value = make_response(payload={})
        with self.assertRaises(JobError):
            self.client.create_dubbing(self.chunk, self.config)

    def test_empty_audio(self):
        self.session.request.return_value = make_response(content=b"")
        with self.assertRaises(JobError):
            self.client.download_audio("d-1", "fr", self.root / "out.mp3")

    def test_missing_key(self):
        client = DubbingClient(None, session=self.session)
        with self.assertRaises(JobError) as ctx:
            client.translate(self.chunk, self.root, 0, self.config)
        self.assertFalse(ctx.exception.retryable)
        self.session.request.assert_not_called()


class TestFfmpegMerger(unittest.TestCase):
    """Test ffmpeg argument construction for the merge stage."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.config = PipelineConfig()

    def tearDown(self):
        self.tmpdir.cleanup()

    def _chunks(self, n):
        chunks = []
        for i in range(n):
            src = self.root / f"chunk_{i:03d}.mp4"
            dub = self.root / f"chunk_{i:03d}_dubbed.mp3"
            src.write_bytes(b"v")
            dub.write_bytes(b"a")
            chunks.append(JobChunk(job_id="job", idx=i, start_sec=i * 60.0, end_sec=(i + 1) * 60.0,
                                   source_path=str(src), dubbed_path=str(dub)))
        return chunks

    def test_merge_replaces_audio_then_concats_in_order(self):
        seen = []

        def fake_run(args, timeout=300, **kwargs):
            if "concat" in args:
                list_file = Path(args[args.index("-i") + 1])
                seen.append(list_file.read_text())
            else:
                seen.append(args)
            return completed()

        chunks = list(reversed(self._chunks(3)))
        with mock.patch("autodub.core.merge.run_subprocess_capture", side_effect=fake_run):
            out = FfmpegMerger().merge(chunks, self.root / "output", self.config)

        self.assertEqual(out, self.root / "output" / "final_dubbed_video.mp4")
        replace_calls, listing = seen[:3], seen[3]
        self.assertEqual([a[a.index("-i") + 1] for a in replace_calls],
                         [str(self.root / f"chunk_{i:03d}.mp4") for i in range(3)])
        self.assertIn("-shortest", replace_calls[0])
        lines = listing.splitlines()
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[0].startswith("file '") and lines[0].endswith("merged_000.mp4'"))
        self.assertTrue(lines[2].endswith("merged_002.mp4'"))
        self.assertFalse((self.root / "output" / "concat_list.txt").exists())

    def test_merge_requires_dubbed_files(self):
        chunks = self._chunks(2)
        chunks[1].dubbed_path = None
        with mock.patch("autodub.core.merge.run_subprocess_capture") as run:
            with self.assertRaises(JobError) as ctx:
                FfmpegMerger().merge(chunks, self.root / "output", self.config)
        self.assertEqual(ctx.exception.code, ErrorCode.MERGE_FAILED)
        run.assert_not_called()

    def test_ffmpeg_failure(self):
        with mock.patch("autodub.core.merge.run_subprocess_capture",
                        return_value=completed(returncode=1, stderr="Invalid data found")):
            with self.assertRaises(JobError) as ctx:
                FfmpegMerger().merge(self._chunks(2), self.root / "output", self.config)
        self.assertIn("Invalid data found", ctx.exception.message)

    def test_single_file_is_copied(self):
        src = self.root / "merged_000.mp4"
        src.write_bytes(b"only")
        with mock.patch("autodub.core.merge.run_subprocess_capture") as run:
            out = concatenate_videos([src], self.root / "final.mp4")
        self.assertEqual(out.read_bytes(), b"only")
        run.assert_not_called()

    def test_webm_reencodes(self):
        paths = [self.root / "a.mp4", self.root / "b.mp4"]
        with mock.patch("autodub.core.merge.run_subprocess_capture", return_value=completed()) as run:
            concatenate_videos(paths, self.root / "final.webm", output_format='webm')
        args = run.call_args.args[0]
        self.assertIn("libvpx-vp9", args)
        self.assertNotIn("copy", args)

    def test_nothing_to_concatenate(self):
        with self.assertRaises(JobError):
            concatenate_videos([], self.root / "final.mp4")


class TestMediaFetcher(unittest.TestCase):
    """Test direct streaming and the yt-dlp path."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dest = Path(self.tmpdir.name) / "source"
        self.session = mock.MagicMock()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_direct_url_is_streamed(self):
        self.session.get.return_value = make_response(content=b"movie")
        fetcher = MediaFetcher(session=self.session)
        with mock.patch("autodub.core.download_video.get_media_duration", return_value=150.0):
            path, info = fetcher.fetch("https://cdn.test/clips/intro.mp4?sig=1", self.dest)

        self.assertEqual(path, self.dest / "video.mp4")
        self.assertEqual(path.read_bytes(), b"movie")
        self.assertFalse((self.dest / "video.mp4.part").exists())
        self.assertEqual(info.title, "intro")
        self.assertEqual(info.duration, 150.0)
        self.assertEqual(info.file_size, 5)

    def test_direct_url_http_error(self):
        self.session.get.return_value = make_response(status=404)
        with self.assertRaises(JobError) as ctx:
            MediaFetcher(session=self.session).fetch("https://cdn.test/a.mp4", self.dest)
        self.assertEqual(ctx.exception.code, ErrorCode.DOWNLOAD_FAILED)

    def test_unreadable_media(self):
        self.session.get.return_value = make_response(content=b"<html>")
        with mock.patch("autodub.core.download_video.get_media_duration",
                        side_effect=JobError(ErrorCode.CHUNKING, "ffprobe failed")):
            with self.assertRaises(JobError) as ctx:
                MediaFetcher(session=self.session).fetch("https://cdn.test/a.mp4", self.dest)
        self.assertEqual(ctx.exception.code, ErrorCode.DOWNLOAD_FAILED)

    def test_page_url_uses_ytdlp(self):
        metadata = {'title': 'Talk', 'duration': 321, 'width': 1920, 'height': 1080, 'vcodec': 'avc1'}
        calls = []

        def fake_run(args, timeout=300, **kwargs):
            calls.append(args)
            if "--dump-json" in args:
                return completed(stdout=json.dumps(metadata))
            (self.dest / "video.mp4").write_bytes(b"movie")
            return completed()

        with mock.patch("autodub.core.download_video.run_subprocess_capture", side_effect=fake_run):
            path, info = MediaFetcher(video_quality='720p').fetch("https://videos.test/watch?v=1", self.dest)

        self.assertEqual(path, self.dest / "video.mp4")
        self.assertEqual((info.title, info.duration, info.resolution), ('Talk', 321.0, '1920x1080'))
        self.assertEqual(info.file_size, 5)
        download_args = calls[1]
        self.assertIn('bestvideo[height<=720]+bestaudio/best[height<=720]', download_args)

    def test_unsupported_url(self):
        with mock.patch("autodub.core.download_video.run_subprocess_capture",
                        return_value=completed(returncode=1, stderr="ERROR: Unsupported URL")):
            with self.assertRaises(JobError) as ctx:
                MediaFetcher().fetch("https://example.test/page", self.dest)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)

    def test_video_info_from_metadata(self):
        info = video_info_from_metadata({'id': 'abc', 'filesize_approx': 10})
        self.assertEqual(info.title, 'abc')
        self.assertEqual(info.duration, 0.0)
        self.assertEqual(info.file_size, 10)
        self.assertIsNone(info.resolution)


if __name__ == "__main__":
    unittest.main()
