import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from finalizer import Finalizer, partial_output_path
from job_errors import FinalizeError
from job_state import JobContext
from segments import plan_segments


def ok(stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr=stderr)


class TestFinalizer(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.context = JobContext(self.root / "work", "mp4")
        self.context.ensure_dirs()
        self.segments = plan_segments(2500, 1000)
        for segment in self.segments:
            self.context.part_path(segment.index).write_bytes(b"part")
        self.sleeps = []
        self.finalizer = Finalizer("ffmpeg", self.context, sleep=self.sleeps.append)

    def tearDown(self):
        self._temp.cleanup()

    def test_playlist_lists_parts_in_index_order(self):
        playlist = self.finalizer.write_playlist(list(reversed(self.segments)))

        lines = playlist.read_text().splitlines()
        self.assertEqual(
            lines,
            [f"file '{self.context.part_path(i)}'" for i in range(3)],
        )

    def test_playlist_escapes_single_quotes(self):
        context = JobContext(self.root / "it's here", "mp4")
        context.ensure_dirs()
        context.part_path(0).write_bytes(b"part")
        playlist = Finalizer("ffmpeg", context).write_playlist(plan_segments(10, 10))

        self.assertIn(r"it'\''s here", playlist.read_text())

    def test_playlist_requires_every_part(self):
        self.context.part_path(1).unlink()
        with self.assertRaises(FinalizeError):
            self.finalizer.write_playlist(self.segments)

    def test_concat_retries_until_output_appears(self):
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            if len(calls) == 3:
                self.context.concat_path.write_bytes(b"video")
            return ok()

        with mock.patch("finalizer.run_subprocess", side_effect=fake_run), \
                mock.patch("finalizer.progress_write"):
            result = self.finalizer.concatenate(self.segments, "16:9")

        self.assertEqual(result, self.context.concat_path)
        self.assertEqual(len(calls), 3)
        self.assertEqual(self.sleeps, [1.0, 1.0])
        self.assertIn("-aspect", calls[0])
        self.assertEqual(calls[0][calls[0].index("-aspect") + 1], "16:9")

    def test_concat_gives_up_after_five_attempts(self):
        with mock.patch("finalizer.run_subprocess", return_value=ok()) as run_mock, \
                mock.patch("finalizer.progress_write"):
            with self.assertRaises(FinalizeError) as ctx:
                self.finalizer.concatenate(self.segments, None)

        self.assertEqual(run_mock.call_count, 5)
        self.assertEqual(len(self.sleeps), 4)
        self.assertIn("could not merge segments", str(ctx.exception))

    def test_concat_without_aspect_ratio(self):
        cmd = self.finalizer.build_concat_command(None)
        self.assertNotIn("-aspect", cmd)

    def test_remux_excludes_data_streams_when_present(self):
        cmd = self.finalizer.build_remux_command(
            Path("temp.mp4"),
            Path("in.mp4"),
            Path("out.mp4"),
            exclude_data_streams=True,
        )
        maps = [cmd[i + 1] for i, part in enumerate(cmd) if part == "-map"]
        self.assertEqual(maps, ["0:v", "1", "-1:v", "-1:d"])

    def test_remux_keeps_all_non_video_streams_by_default(self):
        cmd = self.finalizer.build_remux_command(
            Path("temp.mp4"),
            Path("in.mp4"),
            Path("out.mp4"),
            exclude_data_streams=False,
        )
        maps = [cmd[i + 1] for i, part in enumerate(cmd) if part == "-map"]
        self.assertEqual(maps, ["0:v", "1", "-1:v"])
        self.assertIn("-map_chapters", cmd)

    def test_empty_output_fails_validation(self):
        output = self.root / "out.mp4"
        output.write_bytes(b"")
        with self.assertRaises(FinalizeError) as ctx:
            self.finalizer.validate(output)
        self.assertIn("try running again", str(ctx.exception))

    def test_finalize_cleans_up_work_directory(self):
        output = self.root / "out.mp4"
        self.context.state_path.write_text("{}")

        def fake_run(cmd, **kwargs):
            Path(cmd[-5]).write_bytes(b"video")
            return ok()

        with mock.patch("finalizer.run_subprocess", side_effect=fake_run):
            result = self.finalizer.finalize(
                self.segments,
                self.root / "in.mp4",
                output,
                display_aspect_ratio=None,
                has_binary_data_stream=False,
            )

        self.assertEqual(result, output)
        self.assertTrue(output.exists())
        self.assertFalse(self.context.parts_dir.exists())
        self.assertFalse(self.context.state_path.exists())
        self.assertFalse(self.context.concat_path.exists())

    def test_failed_remux_keeps_parts_for_rerun(self):
        output = self.root / "out.mp4"

        def fake_run(cmd, **kwargs):
            if "concat" in cmd:
                self.context.concat_path.write_bytes(b"video")
                return ok()
            return subprocess.CompletedProcess(args=cmd, returncode=1, stdout="", stderr="mux error")

        with mock.patch("finalizer.run_subprocess", side_effect=fake_run):
            with self.assertRaises(FinalizeError):
                self.finalizer.finalize(
                    self.segments,
                    self.root / "in.mp4",
                    output,
                    display_aspect_ratio=None,
                    has_binary_data_stream=True,
                )

        self.assertTrue(self.context.part_path(0).exists())
        self.assertFalse(output.exists())

    def test_remux_writes_partial_file_before_commit(self):
        output = self.root / "out.mp4"
        remux_targets = []

        def fake_run(cmd, **kwargs):
            remux_targets.append(Path(cmd[-5]))
            Path(cmd[-5]).write_bytes(b"video")
            return ok()

        with mock.patch("finalizer.run_subprocess", side_effect=fake_run):
            self.finalizer.finalize(
                self.segments,
                self.root / "in.mp4",
                output,
                display_aspect_ratio=None,
                has_binary_data_stream=False,
            )

        self.assertEqual(remux_targets[-1], self.root / "out.partial.mp4")
        self.assertEqual(output.read_bytes(), b"video")
        self.assertFalse(partial_output_path(output).exists())

    def test_empty_remux_result_never_becomes_output(self):
        output = self.root / "out.mp4"

        def fake_run(cmd, **kwargs):
            if "concat" in cmd:
                self.context.concat_path.write_bytes(b"video")
            else:
                Path(cmd[-5]).write_bytes(b"")
            return ok()

        with mock.patch("finalizer.run_subprocess", side_effect=fake_run):
            with self.assertRaises(FinalizeError):
                self.finalizer.finalize(
                    self.segments,
                    self.root / "in.mp4",
                    output,
                    display_aspect_ratio=None,
                    has_binary_data_stream=False,
                )

        self.assertFalse(output.exists())
        self.assertFalse(partial_output_path(output).exists())
        self.assertTrue(self.context.part_path(2).exists())


if __name__ == "__main__":
    unittest.main()
