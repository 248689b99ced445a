import threading
import unittest

import numpy as np
import pytest

from dotmesh.core.dot_pattern import parse_csv
from dotmesh.core.error_reporter import ErrorReporter
from dotmesh.core.errors import TaskCancelledError
from dotmesh.core.mesh_data import Mesh
from dotmesh.core.params import ConversionParams, Model3DParams
from dotmesh.core.task_runner import TaskRunner, parameter_grid

TIMEOUT = 10


class _Recorder:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def kinds(self):
        with self._lock:
            return [e.kind for e in self.events]


class TestTaskRunner(unittest.TestCase):
    def setUp(self):
        self.reporter = ErrorReporter()
        self.runner = TaskRunner(max_workers=2, reporter=self.reporter)

    def tearDown(self):
        self.runner.shutdown(wait=True, cancel_pending=True)

    def test_progress_then_success(self):
        recorder = _Recorder()

        def work(progress, value):
            progress(10)
            progress(150)
            return value * 2

        future = self.runner.submit("double", work, 21, on_event=recorder)

        self.assertEqual(future.result(timeout=TIMEOUT), 42)
        self.assertEqual(recorder.kinds(), ["progress", "progress", "success"])
        self.assertEqual([e.progress for e in recorder.events], [10, 100, 100])
        self.assertTrue(all(e.task_id == "double" for e in recorder.events))
        self.assertEqual(recorder.events[-1].result, 42)
        self.assertEqual(self.runner.active_tasks(), [])

    def test_failure_is_reported(self):
        recorder = _Recorder()

        def work(progress):
            raise ValueError("broken input")

        future = self.runner.submit("fail", work, on_event=recorder)

        with self.assertRaises(ValueError):
            future.result(timeout=TIMEOUT)
        self.assertEqual(recorder.kinds(), ["failure"])
        self.assertIsInstance(recorder.events[0].error, ValueError)
        self.assertEqual(len(self.reporter), 1)
        self.assertEqual(self.reporter.recent()[0].context, {"task_id": "fail"})

    def test_duplicate_task_id_is_rejected(self):
        release = threading.Event()

        def work(progress):
            release.wait(TIMEOUT)
            return "done"

        first = self.runner.submit("job", work)
        try:
            with self.assertRaises(ValueError):
                self.runner.submit("job", work)
        finally:
            release.set()
        self.assertEqual(first.result(timeout=TIMEOUT), "done")

        second = self.runner.submit("job", lambda progress: "again")
        self.assertEqual(second.result(timeout=TIMEOUT), "again")

    def test_cancel_resolves_future_and_stops_at_next_progress(self):
        recorder = _Recorder()
        started = threading.Event()
        release = threading.Event()
        reached_end = threading.Event()

        def work(progress):
            started.set()
            release.wait(TIMEOUT)
            progress(50)
            reached_end.set()
            return "finished"

        future = self.runner.submit("slow", work, on_event=recorder)
        self.assertTrue(started.wait(TIMEOUT))

        self.assertTrue(self.runner.cancel("slow"))
        self.assertFalse(self.runner.cancel("slow"))
        with self.assertRaises(TaskCancelledError):
            future.result(timeout=TIMEOUT)

        release.set()
        self.runner.shutdown(wait=True)

        self.assertFalse(reached_end.is_set())
        self.assertEqual(recorder.kinds(), ["cancelled"])
        self.assertEqual(self.runner.active_tasks(), [])
        self.assertEqual(len(self.reporter), 0)

    def test_cancellation_raised_by_work_is_a_failure(self):
        recorder = _Recorder()

        def work(progress):
            raise TaskCancelledError("other-task")

        future = self.runner.submit("inner", work, on_event=recorder)

        with self.assertRaises(TaskCancelledError):
            future.result(timeout=TIMEOUT)
        self.assertEqual(recorder.kinds(), ["failure"])
        self.assertEqual(self.runner.active_tasks(), [])
        self.assertEqual(len(self.reporter), 1)

    def test_cancel_unknown_task(self):
        self.assertFalse(self.runner.cancel("missing"))

    def test_mesh_generation_task(self):
        recorder = _Recorder()
        pattern = parse_csv("1,1\n1,0")
        future = self.runner.submit_mesh_generation(
            "mesh",
            pattern,
            Model3DParams(spacing=0.0),
            on_event=recorder,
        )

        mesh = future.result(timeout=TIMEOUT)
        self.assertIsInstance(mesh, Mesh)
        self.assertGreater(mesh.n_faces, 0)
        kinds = recorder.kinds()
        self.assertEqual(kinds[-1], "success")
        self.assertIn("progress", kinds)

    def test_image_conversion_task(self):
        future = self.runner.submit_image_conversion(
            "image",
            np.full((4, 4), 255, dtype=np.uint8),
            ConversionParams(target_width=2, target_height=2),
        )
        pattern = future.result(timeout=TIMEOUT)
        self.assertEqual(pattern.active_count, 4)


def test_run_batches_isolates_failures():
    reporter = ErrorReporter()

    def square(x):
        if x == 3:
            raise ValueError("three")
        return x * x

    with TaskRunner(max_workers=2, reporter=reporter) as runner:
        results = runner.run_batches([1, 2, 3, 4, 5], square, batch_size=2)

    assert [r.index for r in results] == [0, 1, 2, 3, 4]
    assert [r.result for r in results if r.ok] == [1, 4, 16, 25]
    assert isinstance(results[2].error, ValueError)
    assert len(reporter) == 1


def test_run_batches_rejects_bad_batch_size():
    with TaskRunner(max_workers=1) as runner:
        with pytest.raises(ValueError):
            runner.run_batches([1], lambda x: x, batch_size=0)


@pytest.mark.parametrize("workers", [0, -2])
def test_runner_rejects_bad_worker_count(workers):
    with pytest.raises(ValueError):
        TaskRunner(max_workers=workers)


def test_parameter_grid():
    grid = parameter_grid(Model3DParams(), cube_size=[1.0, 2.0], spacing=[0.0, 0.5])

    assert len(grid) == 4
    assert {(p.cube_size, p.spacing) for p in grid} == {(1.0, 0.0), (1.0, 0.5), (2.0, 0.0), (2.0, 0.5)}
    assert parameter_grid(Model3DParams()) == [Model3DParams()]
    with pytest.raises(ValueError):
        parameter_grid(Model3DParams(), colour=["red"])
