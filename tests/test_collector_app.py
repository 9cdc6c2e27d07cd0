"""Tests for the scrape endpoint and the CLI entry point."""

import os
import socket
import threading
import time

import pytest
from fastapi.testclient import TestClient

from tailpoint import cli
from tailpoint.collector_app import create_app
from tailpoint.config import Settings
from tailpoint.follower import Follower
from tailpoint.logformat import compile_format
from tailpoint.metrics import AccessRecord, MetricRegistry

FORMAT = '$status "$request" $request_time'


@pytest.fixture
def metrics():
    return MetricRegistry({"instance": "test"})


class TestScrapeEndpoint:
    """Tests for GET on the telemetry path."""

    def test_metrics_exposition(self, metrics):
        metrics.observe(AccessRecord(status="200", request="GET / HTTP/1.1", request_time=0.2))
        app = create_app(Settings(telemetry_path="/metrics"), metrics, compile_format(FORMAT))

        with TestClient(app) as client:
            resp = client.get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert (
            'nginx_http_response_count_total{instance="test",status="200",method="GET"} 1.0'
            in resp.text
        )
        assert "nginx_parse_errors_total 0.0" in resp.text

    def test_custom_path_and_not_found(self, metrics):
        app = create_app(Settings(telemetry_path="/probe/metrics"), metrics, compile_format(FORMAT))

        with TestClient(app) as client:
            assert client.get("/probe/metrics").status_code == 200
            assert client.get("/metrics").status_code == 404
            assert client.get("/").status_code == 404
            assert client.post("/probe/metrics").status_code == 405

    def test_lines_flow_through_to_scrape(self, tmp_path, metrics):
        log = tmp_path / "access.log"
        log.write_text("")
        follower = Follower(str(log), poll_interval=0.02).start()
        app = create_app(Settings(), metrics, compile_format(FORMAT), follower)

        try:
            with TestClient(app) as client:
                with log.open("a") as f:
                    f.write('200 "GET /a HTTP/1.1" 0.01\n')
                    f.write("garbage\n")
                    f.write('503 "POST /b HTTP/1.1" 1.5\n')

                body = ""
                deadline = time.monotonic() + 5
                while time.monotonic() < deadline:
                    body = client.get("/metrics").text
                    if 'status="503",method="POST"} 1.0' in body:
                        break
                    time.sleep(0.02)
        finally:
            follower.stop()

        assert 'nginx_http_response_count_total{instance="test",status="200",method="GET"} 1.0' in body
        assert 'nginx_http_response_count_total{instance="test",status="503",method="POST"} 1.0' in body
        assert "nginx_parse_errors_total 1.0" in body


class TestMain:
    """Tests for fatal startup conditions."""

    def test_bad_format_is_config_error(self, tmp_path):
        log = tmp_path / "access.log"
        log.write_text("")
        assert cli.main(["-f", str(log), "--format", "$a$b"]) == cli.EXIT_CONFIG

    def test_bad_flag_value_is_config_error(self, tmp_path):
        assert cli.main(["--web.telemetry-path", "nope"]) == cli.EXIT_CONFIG

    def test_clashing_label_is_config_error(self, tmp_path):
        log = tmp_path / "access.log"
        log.write_text("")
        assert cli.main(["-f", str(log), "-l", "method=x"]) == cli.EXIT_CONFIG

    def test_missing_log_file(self, tmp_path):
        assert cli.main(["-f", str(tmp_path / "missing.log")]) == cli.EXIT_RUNTIME

    def test_module_logger_name(self):
        assert cli.logger.name == "tailpoint.cli"


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestRunFatal:
    """Tests for runtime-fatal conditions of cli.run."""

    def test_follower_termination_stops_server(self, tmp_path):
        log = tmp_path / "access.log"
        log.write_text("")
        settings = Settings(
            filename=str(log),
            format=FORMAT,
            listen_address=f"127.0.0.1:{free_port()}",
            poll_interval=0.05,
            reopen_timeout=0.2,
        )
        timer = threading.Timer(0.5, os.remove, args=(str(log),))
        timer.start()
        try:
            start = time.monotonic()
            rc = cli.run(settings)
        finally:
            timer.cancel()

        assert rc == cli.EXIT_RUNTIME
        assert time.monotonic() - start < 10

    def test_bind_failure_is_runtime_error(self, tmp_path):
        log = tmp_path / "access.log"
        log.write_text("")
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]

            rc = cli.main(["-f", str(log), "--web.listen-address", f"127.0.0.1:{port}"])

        assert rc == cli.EXIT_RUNTIME
