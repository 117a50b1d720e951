import random
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from job_errors import ProbeError
from job_state import JobContext
from segments import (
    Segment,
    find_unprocessed_segments,
    last_segment_size,
    plan_segments,
    segment_start_seconds,
)


def write_part(context: JobContext, index: int, frames: int) -> Path:
    """Write a fake part whose content is its frame count."""
    part = context.part_path(index)
    part.parent.mkdir(parents=True, exist_ok=True)
    part.write_text(str(frames))
    return part


def count_frames_from_text(path: Path) -> int:
    return int(path.read_text())


class TestPlanSegments(unittest.TestCase):
    def test_plan_matches_known_layout(self):
        self.assertEqual(
            plan_segments(2500, 1000),
            [Segment(0, 1000), Segment(1, 1000), Segment(2, 500)],
        )

    def test_exact_multiple_keeps_full_last_segment(self):
        plan = plan_segments(3000, 1000)
        self.assertEqual(len(plan), 3)
        self.assertEqual(plan[-1], Segment(2, 1000))
        self.assertEqual(last_segment_size(3000, 1000), 1000)

    def test_single_short_segment(self):
        self.assertEqual(plan_segments(7, 1000), [Segment(0, 7)])

    def test_sizes_sum_to_frame_count_and_plan_is_deterministic(self):
        rng = random.Random(1234)
        for _ in range(200):
            frame_count = rng.randint(1, 20000)
            segment_size = rng.randint(1, 3000)
            plan = plan_segments(frame_count, segment_size)
            self.assertEqual(sum(segment.size for segment in plan), frame_count)
            self.assertEqual([segment.index for segment in plan], list(range(len(plan))))
            self.assertTrue(all(segment.size > 0 for segment in plan))
            self.assertEqual(plan, plan_segments(frame_count, segment_size))

    def test_zero_frames_is_a_probe_failure(self):
        with self.assertRaises(ProbeError):
            plan_segments(0, 1000)

    def test_invalid_segment_size(self):
        with self.assertRaises(ValueError):
            plan_segments(100, 0)

    def test_segment_start_seconds(self):
        self.assertAlmostEqual(segment_start_seconds(Segment(2, 500), 1000, 25.0), 80.0)
        self.assertEqual(segment_start_seconds(Segment(0, 1000), 1000, 23.976), 0.0)

    def test_segment_dict_round_trip(self):
        segment = Segment(4, 321)
        self.assertEqual(Segment.from_dict(segment.to_dict()), segment)


class TestFindUnprocessedSegments(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.context = JobContext(Path(self._temp.name), "mp4")
        self.context.ensure_dirs()
        self.plan = plan_segments(2500, 1000)

    def tearDown(self):
        self._temp.cleanup()

    def test_no_parts_means_everything_is_unprocessed(self):
        unprocessed = find_unprocessed_segments(self.plan, self.context, count_frames_from_text)
        self.assertEqual(unprocessed, self.plan)

    def test_complete_parts_yield_empty_work_list(self):
        for segment in self.plan:
            write_part(self.context, segment.index, segment.size)

        unprocessed = find_unprocessed_segments(self.plan, self.context, count_frames_from_text)

        self.assertEqual(unprocessed, [])
        # Running the scan again over the finished set is still a no-op.
        self.assertEqual(
            find_unprocessed_segments(self.plan, self.context, count_frames_from_text),
            [],
        )

    def test_missing_middle_part_is_requeued_alone(self):
        for segment in self.plan:
            write_part(self.context, segment.index, segment.size)
        self.context.part_path(1).unlink()

        unprocessed = find_unprocessed_segments(self.plan, self.context, count_frames_from_text)

        self.assertEqual(unprocessed, [Segment(1, 1000)])
        self.assertTrue(self.context.part_path(0).exists())
        self.assertTrue(self.context.part_path(2).exists())

    def test_wrong_frame_count_deletes_part(self):
        write_part(self.context, 0, 1000)
        write_part(self.context, 1, 640)
        write_part(self.context, 2, 500)

        with mock.patch("segments.progress_write") as write_mock:
            unprocessed = find_unprocessed_segments(self.plan, self.context, count_frames_from_text)

        self.assertEqual(unprocessed, [Segment(1, 1000)])
        self.assertFalse(self.context.part_path(1).exists())
        message = write_mock.call_args[0][0]
        self.assertIn("removed invalid segment file [1] with 640 frame size", message)

    def test_unreadable_part_is_treated_as_invalid(self):
        write_part(self.context, 0, 1000)

        def broken_probe(path: Path) -> int:
            raise ProbeError("moov atom not found")

        with mock.patch("segments.progress_write"):
            unprocessed = find_unprocessed_segments([Segment(0, 1000)], self.context, broken_probe)

        self.assertEqual(unprocessed, [Segment(0, 1000)])
        self.assertFalse(self.context.part_path(0).exists())

    def test_partial_encoder_output_is_removed(self):
        partial = self.context.partial_part_path(2)
        partial.write_text("half written")

        unprocessed = find_unprocessed_segments(self.plan, self.context, count_frames_from_text)

        self.assertFalse(partial.exists())
        self.assertEqual(unprocessed, self.plan)


if __name__ == "__main__":
    unittest.main()
