import sys
import threading
import time
import unittest

from minipr.errors import ExternalToolError
from minipr.ltr.process import run_process


def py(code):
    return [sys.executable, "-c", code]


class TestRunProcess(unittest.TestCase):
    def test_collects_output_lines(self):
        seen = []
        result = run_process(py("print('Fold 1 | 0.1 | 0.2'); print('done')"), timeout=30, on_stdout_line=seen.append)
        self.assertEqual(result.returncode, 0)
        self.assertEqual(seen, ["Fold 1 | 0.1 | 0.2", "done"])
        self.assertEqual(result.stdout_tail, seen)
        self.assertEqual(result.stderr_tail, [])

    def test_output_tail_is_bounded(self):
        seen = []
        result = run_process(
            py("for i in range(50): print(i)"), timeout=30, on_stdout_line=seen.append, max_tail_lines=10
        )
        self.assertEqual(len(seen), 50)
        self.assertEqual(result.stdout_tail, [str(i) for i in range(40, 50)])

    def test_non_zero_exit(self):
        code = "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"
        with self.assertRaises(ExternalToolError) as ctx:
            run_process(py(code), timeout=30)
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertIn("boom", ctx.exception.stderr)

        result = run_process(py(code), timeout=30, check=False)
        self.assertEqual(result.returncode, 3)
        self.assertEqual(result.stderr_tail, ["boom"])

    def test_timeout_kills_process(self):
        started = time.monotonic()
        with self.assertRaises(ExternalToolError) as ctx:
            run_process(py("import time; time.sleep(30)"), timeout=0.5)
        self.assertIn("timed out", str(ctx.exception))
        self.assertLess(time.monotonic() - started, 15)

    def test_cancel_event(self):
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            with self.assertRaises(ExternalToolError) as ctx:
                run_process(py("import time; time.sleep(30)"), cancel_event=cancel)
        finally:
            timer.cancel()
        self.assertIn("cancelled", str(ctx.exception))

    def test_launch_failure(self):
        with self.assertRaises(ExternalToolError) as ctx:
            run_process(["/nonexistent/ranklib-binary", "-v"])
        self.assertEqual(ctx.exception.command, ["/nonexistent/ranklib-binary", "-v"])


if __name__ == "__main__":
    unittest.main()
