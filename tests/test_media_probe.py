import json
import subprocess
import unittest
from pathlib import Path
from unittest import mock

from job_errors import ProbeError
from media_probe import MediaProbe, metadata_frame_count, parse_framerate, resolve_frame_count
from segments import plan_segments


def completed(payload, returncode=0, stderr=""):
    stdout = payload if isinstance(payload, str) else json.dumps(payload)
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


FULL_PAYLOAD = {
    "streams": [
        {
            "index": 0,
            "codec_type": "video",
            "codec_name": "h264",
            "width": 720,
            "height": 480,
            "pix_fmt": "yuv420p",
            "avg_frame_rate": "24000/1001",
            "r_frame_rate": "24000/1001",
            "display_aspect_ratio": "16:9",
            "sample_aspect_ratio": "32:27",
            "nb_frames": "2500",
            "extradata_hash": "SHA256:abc123",
        },
        {"index": 1, "codec_type": "audio", "codec_name": "aac"},
        {"index": 2, "codec_type": "data", "codec_name": "bin_data"},
    ],
    "format": {
        "filename": "/videos/show.mp4",
        "format_name": "mov,mp4,m4a,3gp,3g2,mj2",
        "duration": "104.270833",
        "size": "73400320",
        "bit_rate": "5631000",
    },
}


class TestParseFramerate(unittest.TestCase):
    def test_parses_rational(self):
        self.assertAlmostEqual(parse_framerate("30000/1001"), 29.97, places=2)

    def test_parses_plain_number(self):
        self.assertEqual(parse_framerate("25"), 25.0)

    def test_rejects_zero_denominator_and_garbage(self):
        for value in ("0/0", "", "abc", "-5"):
            with self.subTest(value=value):
                with self.assertRaises(ProbeError):
                    parse_framerate(value)


class TestMetadataFrameCount(unittest.TestCase):
    def test_ignores_duration(self):
        self.assertEqual(metadata_frame_count({"tags": {"NUMBER_OF_FRAMES": "750"}}), 750)
        self.assertEqual(metadata_frame_count({"duration": "10.0"}), 0)


class TestResolveFrameCount(unittest.TestCase):
    def test_prefers_nb_frames(self):
        stream = {"nb_frames": "1200", "tags": {"NUMBER_OF_FRAMES-eng": "999"}}
        self.assertEqual(resolve_frame_count(stream, {"duration": "10"}), 1200)

    def test_falls_back_to_tag(self):
        stream = {"tags": {"NUMBER_OF_FRAMES-eng": "34000"}}
        self.assertEqual(resolve_frame_count(stream, {"duration": "10"}), 34000)

    def test_falls_back_to_duration_with_assumed_rate(self):
        self.assertEqual(resolve_frame_count({}, {"duration": "60.0"}), 1500)
        self.assertEqual(resolve_frame_count({}, {"duration": "60.0"}, assumed_fps=30.0), 1800)

    def test_returns_zero_when_nothing_is_known(self):
        self.assertEqual(resolve_frame_count({"nb_frames": "N/A"}, {}), 0)


class TestMediaProbe(unittest.TestCase):
    def setUp(self):
        self.probe = MediaProbe("ffprobe")

    def test_probe_reads_all_fields(self):
        with mock.patch("media_probe.run_subprocess", return_value=completed(FULL_PAYLOAD)) as run_mock:
            info = self.probe.probe(Path("/videos/show.mp4"))

        cmd = run_mock.call_args[0][0]
        self.assertIn("-show_data_hash", cmd)
        self.assertEqual(info.frame_count, 2500)
        self.assertAlmostEqual(info.frame_rate, 23.976, places=3)
        self.assertEqual(info.frame_rate_expr, "24000/1001")
        self.assertEqual(info.display_aspect_ratio, "16:9")
        self.assertTrue(info.has_binary_data_stream)
        self.assertEqual((info.width, info.height), (720, 480))
        self.assertEqual(info.codec, "h264")
        self.assertEqual(info.bitrate, 5631000)
        self.assertEqual(info.size, 73400320)
        self.assertEqual(info.extradata_hash, "SHA256:abc123")

    def test_probe_without_data_stream_or_aspect(self):
        payload = json.loads(json.dumps(FULL_PAYLOAD))
        payload["streams"] = payload["streams"][:2]
        payload["streams"][0]["display_aspect_ratio"] = "0:1"
        with mock.patch("media_probe.run_subprocess", return_value=completed(payload)):
            info = self.probe.probe(Path("/videos/show.mp4"))

        self.assertFalse(info.has_binary_data_stream)
        self.assertIsNone(info.display_aspect_ratio)

    def test_probe_rejects_unparsable_output(self):
        with mock.patch("media_probe.run_subprocess", return_value=completed("not json")):
            with self.assertRaises(ProbeError):
                self.probe.probe(Path("/videos/show.mp4"))

    def test_probe_rejects_failed_invocation(self):
        result = completed("", returncode=1, stderr="No such file or directory")
        with mock.patch("media_probe.run_subprocess", return_value=result):
            with self.assertRaises(ProbeError) as ctx:
                self.probe.probe(Path("/videos/missing.mp4"))
        self.assertIn("No such file", str(ctx.exception))

    def test_probe_reports_missing_binary_as_probe_error(self):
        with mock.patch("media_probe.run_subprocess", side_effect=FileNotFoundError("ffprobe")):
            with self.assertRaises(ProbeError):
                self.probe.probe(Path("/videos/show.mp4"))

    def test_probe_requires_video_stream(self):
        payload = {"streams": [{"codec_type": "audio"}], "format": {}}
        with mock.patch("media_probe.run_subprocess", return_value=completed(payload)):
            with self.assertRaises(ProbeError):
                self.probe.probe(Path("/videos/audio.m4a"))

    def test_counts_packets_when_container_declares_no_frame_count(self):
        payload = json.loads(json.dumps(FULL_PAYLOAD))
        del payload["streams"][0]["nb_frames"]
        payload["streams"][0]["avg_frame_rate"] = "60/1"
        payload["format"]["duration"] = "10.0"
        responses = [completed(payload), completed({"streams": [{"nb_read_packets": "600"}]})]
        with mock.patch("media_probe.run_subprocess", side_effect=responses) as run_mock:
            info = self.probe.probe(Path("/videos/show.mkv"))

        self.assertEqual(info.frame_count, 600)
        self.assertIn("-count_packets", run_mock.call_args_list[1][0][0])
        self.assertEqual(sum(segment.size for segment in plan_segments(info.frame_count, 100)), 600)

    def test_raises_when_frame_count_cannot_be_established(self):
        payload = json.loads(json.dumps(FULL_PAYLOAD))
        del payload["streams"][0]["nb_frames"]
        responses = [completed(payload), completed({"streams": [{}]})]
        with mock.patch("media_probe.run_subprocess", side_effect=responses):
            with self.assertRaises(ProbeError):
                self.probe.probe(Path("/videos/show.mkv"))

    def test_discovery_skips_packet_count(self):
        payload = json.loads(json.dumps(FULL_PAYLOAD))
        del payload["streams"][0]["nb_frames"]
        with mock.patch("media_probe.run_subprocess", return_value=completed(payload)) as run_mock:
            info = self.probe.probe(Path("/videos/show.mkv"), exact_frame_count=False)

        self.assertEqual(run_mock.call_count, 1)
        self.assertEqual(info.frame_count, 0)

    def test_frame_count_raises_when_unknown(self):
        payload = {"streams": [{"codec_type": "video"}], "format": {}}
        with mock.patch("media_probe.run_subprocess", return_value=completed(payload)):
            with self.assertRaises(ProbeError):
                self.probe.frame_count(Path("/videos/show.mkv"))

    def test_count_frames_counts_packets_when_metadata_missing(self):
        responses = [
            completed({"streams": [{"codec_type": "video"}]}),
            completed({"streams": [{"nb_read_packets": "1000"}]}),
        ]
        with mock.patch("media_probe.run_subprocess", side_effect=responses) as run_mock:
            count = self.probe.count_frames(Path("/work/video_parts/0.mkv"))

        self.assertEqual(count, 1000)
        self.assertIn("-count_packets", run_mock.call_args_list[1][0][0])


if __name__ == "__main__":
    unittest.main()
