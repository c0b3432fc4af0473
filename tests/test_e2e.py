"""Very bare-bones HTTP end-to-end tests."""

import os
import signal
import socket
import subprocess
import sys
import time
import unittest
import urllib.error
import urllib.request

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
HELLO = os.path.join(ROOT, "tests", "hello.py")
HOST = "127.0.0.1"


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((HOST, 0))
        return sock.getsockname()[1]


def spawn(port, *args):
    """Runs tests/hello.py, which serves through the given entry point."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [ROOT, env.get("PYTHONPATH")]))
    return subprocess.Popen(
        [sys.executable, HELLO, HOST, str(port), *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
    )


def wait_for_http(origin, process):
    """Returns when the origin starts talking HTTP."""
    attempt = 1
    max_attempts = 50
    while True:
        try:
            return urllib.request.urlopen(origin + "/", timeout=5)
        except (urllib.error.URLError, ConnectionError):
            pass

        if process.poll() is not None:
            raise AssertionError(f"server exited early with {process.returncode}")

        if attempt >= max_attempts:
            raise AssertionError(f"did not connect in {max_attempts} attempts")
        attempt += 1

        time.sleep(0.1)


class EndToEnd(unittest.TestCase):
    def test_serve_and_interrupt(self):
        port = free_port()
        origin = f"http://{HOST}:{port}"
        process = spawn(port)

        try:
            with wait_for_http(origin, process) as response:
                self.assertEqual(response.status, 200)
                self.assertEqual(response.headers["Content-Type"], "text/plain")
                self.assertEqual(response.read(), b"jenkins test 1 - road\n")

            request = urllib.request.Request(origin + "/any/path", method="DELETE")
            with urllib.request.urlopen(request, timeout=5) as response:
                self.assertEqual(response.status, 200)
                self.assertEqual(response.read(), b"jenkins test 1 - road\n")
        finally:
            process.send_signal(signal.SIGINT)
            try:
                stdout, stderr = process.communicate(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.communicate()
                raise

        self.assertEqual(process.returncode, 0, stderr)
        self.assertEqual(stdout.splitlines()[0], f"Server running at {origin}/")

    def test_run_prints_startup_notice(self):
        port = free_port()
        origin = f"http://{HOST}:{port}"
        process = spawn(port, "run")

        try:
            with wait_for_http(origin, process) as response:
                self.assertEqual(response.status, 200)
        finally:
            # respond.run does not handle the interrupt, so no exit code check
            process.send_signal(signal.SIGINT)
            try:
                stdout, _ = process.communicate(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.communicate()
                raise

        self.assertEqual(stdout.splitlines()[0], f"Server running at {origin}/")

    def test_bind_failure_exits_non_zero(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((HOST, 0))
            sock.listen()
            port = sock.getsockname()[1]

            process = spawn(port)
            try:
                stdout, stderr = process.communicate(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.communicate()
                raise

        self.assertEqual(process.returncode, 1)
        self.assertEqual(stdout, "")
        self.assertIn(f"cannot listen on {HOST}:{port}", stderr)


if __name__ == "__main__":
    unittest.main()
