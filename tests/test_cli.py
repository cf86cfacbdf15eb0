"""Tests for CLI command wiring and output contracts."""

import json
import socket
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from typer.testing import CliRunner

from filebridge.cli import _build_parameters, _parse_param_pairs, app, is_port_in_use


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _closed_port_url() -> str:
    return f"ws://127.0.0.1:{_free_port()}/"


class PortProbeTests(unittest.TestCase):
    """Ensure the pre-serve port check works for every loopback host."""

    def test_detects_listening_ipv4_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen()
            self.assertTrue(is_port_in_use("127.0.0.1", s.getsockname()[1]))

    def test_free_port(self) -> None:
        self.assertFalse(is_port_in_use("127.0.0.1", _free_port()))

    def test_ipv6_loopback_does_not_raise(self) -> None:
        self.assertFalse(is_port_in_use("::1", _free_port()))


class CliParameterTests(unittest.TestCase):
    """Ensure --param and --params-json merge predictably."""

    def test_pairs_keep_string_values(self) -> None:
        params = _parse_param_pairs(["path=/tmp/a=b", "timeout=1500"])
        self.assertEqual(params, {"path": "/tmp/a=b", "timeout": "1500"})

    def test_pair_without_separator_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            _parse_param_pairs(["path"])

    def test_pairs_override_json(self) -> None:
        params = _build_parameters(["path=/b"], '{"path": "/a", "replace_all": true}')
        self.assertEqual(params, {"path": "/b", "replace_all": True})

    def test_json_must_be_object(self) -> None:
        with self.assertRaises(ValueError):
            _build_parameters(None, "[1, 2]")


class CliCommandTests(unittest.TestCase):
    """Ensure commands print stable status lines and exit codes."""

    def setUp(self) -> None:
        self.runner = CliRunner()
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        self.config_path = self.root / "executor.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_config_set_and_show(self) -> None:
        result = self.runner.invoke(
            app,
            [
                "config-set",
                "--allow",
                str(self.root),
                "--port",
                "9001",
                "--config",
                str(self.config_path),
            ],
        )
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("CONFIG SET: OK", result.output)

        shown = self.runner.invoke(app, ["config-show", "--json", "--config", str(self.config_path)])
        self.assertEqual(shown.exit_code, 0, shown.output)
        payload = json.loads(shown.output)
        self.assertEqual(payload["allowed_paths"], [str(self.root)])
        self.assertEqual(payload["port"], 9001)
        self.assertFalse(payload["unrestricted"])

    def test_config_set_rejects_inconsistent_timeouts(self) -> None:
        result = self.runner.invoke(
            app,
            [
                "config-set",
                "--command-timeout-ms",
                "600000",
                "--config",
                str(self.config_path),
            ],
        )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("CONFIG SET: FAIL", result.output)
        self.assertFalse(self.config_path.exists())

    def test_serve_refuses_empty_allow_list(self) -> None:
        result = self.runner.invoke(app, ["serve", "--config", str(self.config_path)])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("SERVE: FAIL", result.output)
        self.assertIn("--unrestricted", result.output)

    def test_serve_rejects_non_loopback_host(self) -> None:
        result = self.runner.invoke(
            app,
            ["serve", "--host", "0.0.0.0", "--allow", str(self.root), "--config", str(self.config_path)],
        )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("SERVE: FAIL", result.output)

    def test_serve_accepts_ipv6_loopback(self) -> None:
        served = []

        async def fake_serve(config) -> None:
            served.append(config)

        port = _free_port()
        with mock.patch("filebridge.cli._serve", fake_serve), mock.patch(
            "filebridge.cli._configure_logging"
        ):
            result = self.runner.invoke(
                app,
                [
                    "serve",
                    "--host",
                    "::1",
                    "--port",
                    str(port),
                    "--allow",
                    str(self.root),
                    "--config",
                    str(self.config_path),
                ],
            )
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(served[0].host, "::1")
        self.assertEqual(served[0].port, port)

    def test_serve_reports_listen_failure(self) -> None:
        async def failing_serve(config) -> None:
            raise OSError("address unavailable")

        with mock.patch("filebridge.cli._serve", failing_serve), mock.patch(
            "filebridge.cli._configure_logging"
        ):
            result = self.runner.invoke(
                app,
                [
                    "serve",
                    "--port",
                    str(_free_port()),
                    "--allow",
                    str(self.root),
                    "--config",
                    str(self.config_path),
                ],
            )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("SERVE: FAIL", result.output)
        self.assertIn("address unavailable", result.output)

    def test_call_unknown_tool(self) -> None:
        result = self.runner.invoke(app, ["call", "format_disk"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("CALL: FAIL", result.output)

    def test_call_without_executor_reports_transport_error(self) -> None:
        result = self.runner.invoke(
            app,
            ["call", "read_file", "--param", "path=/tmp/a", "--url", _closed_port_url()],
        )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("CALL: FAIL", result.output)
        self.assertIn("TRANSPORT_ERROR", result.output)

    def test_status_without_executor(self) -> None:
        result = self.runner.invoke(app, ["status", "--url", _closed_port_url()])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("STATUS: DISCONNECTED", result.output)


if __name__ == "__main__":
    unittest.main()
